"""
Authentication primitives
Bearer tokens for drivers/admins (issued by the identity provider) and
bcrypt-hashed credentials for devices
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import bcrypt
import jwt

from .exceptions import AuthError

logger = logging.getLogger(__name__)

DEVICE_KEY_PREFIX = "dk_"
MAX_DEVICE_KEY_BYTES = 72


class Role(str, Enum):
    ADMIN = "admin"
    DRIVER = "driver"


@dataclass(frozen=True)
class Caller:
    """Identity resolved from a bearer token"""
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


# ============================================================
# JWT Token Functions
# ============================================================

def create_access_token(
    user_id: str,
    role: Role,
    secret_key: str,
    algorithm: str = "HS256",
    expires_minutes: int = 60 * 24,
) -> str:
    """
    Create a JWT access token

    Claims: sub (caller id), role, iat, exp
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": Role(role).value,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, secret_key, algorithm=algorithm)


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> Caller:
    """
    Decode and validate a JWT access token

    Raises:
        AuthError: expired, malformed, or missing claims
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        logger.warning("Expired JWT token")
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {e}")
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    role = payload.get("role", Role.DRIVER.value)
    if not user_id:
        raise AuthError("Token has no subject")
    try:
        return Caller(user_id=str(user_id), role=Role(role))
    except ValueError:
        raise AuthError(f"Unknown role: {role}")


# ============================================================
# Device Credentials
# ============================================================

def generate_device_key() -> str:
    """High-entropy device secret (256 bits)"""
    return DEVICE_KEY_PREFIX + secrets.token_urlsafe(32)


def hash_device_key(api_key: str, rounds: int = 10) -> str:
    """
    Hash a device key using bcrypt

    Returns:
        Salted bcrypt hash suitable for database storage
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(api_key.encode("utf-8"), salt).decode("utf-8")


def verify_device_key(api_key: Optional[str], key_hash: Optional[str],
                      decoy_hash: Optional[str] = None) -> bool:
    """
    Verify a device key against its bcrypt hash

    bcrypt.checkpw compares in constant time. When the device is unknown
    (no key_hash) the key is still checked against decoy_hash so unknown and
    known devices take the same time to reject.
    """
    presented = (api_key or "").encode("utf-8")
    # bcrypt rejects secrets over 72 bytes; issued keys are far shorter
    if len(presented) > MAX_DEVICE_KEY_BYTES:
        logger.warning(f"Device key of {len(presented)} bytes rejected")
        return False
    try:
        if not key_hash:
            if decoy_hash:
                bcrypt.checkpw(presented, decoy_hash.encode("utf-8"))
            return False
        return bcrypt.checkpw(presented, key_hash.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Device key check failed: {e}")
        return False
