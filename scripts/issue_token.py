#!/usr/bin/env python3
"""
Bearer Token Utility (development)

The identity provider issues tokens in production; this signs one locally
with JWT_SECRET_KEY so the API can be exercised by hand.

Usage:
    python scripts/issue_token.py driver-42
    python scripts/issue_token.py ops-admin --role admin --minutes 60
"""
import argparse
import sys

from smartpark.auth import Role, create_access_token
from smartpark.config import get_settings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Issue a bearer token")
    parser.add_argument("user_id", help="Caller id placed in the sub claim")
    parser.add_argument("--role", choices=[r.value for r in Role], default=Role.DRIVER.value)
    parser.add_argument("--minutes", type=int, default=None, help="Token lifetime (default from settings)")
    args = parser.parse_args(argv)

    settings = get_settings()
    token = create_access_token(
        args.user_id,
        Role(args.role),
        settings.jwt_secret_key,
        settings.jwt_algorithm,
        args.minutes or settings.access_token_expire_minutes,
    )

    print(token)
    print(f'\nUsage:\n  curl -H "Authorization: Bearer {token}" http://localhost:8000/reservations', file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
