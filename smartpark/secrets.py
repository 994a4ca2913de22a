"""
Secret loading for the service credentials

Lookup order for a secret such as "service_api_key":
1. <secrets dir>/service_api_key (Docker or Kubernetes secret mount)
2. file named by SERVICE_API_KEY_FILE
3. SERVICE_API_KEY
4. the default passed by the caller

The secrets dir is /run/secrets unless SMARTPARK_SECRETS_DIR overrides it.
Values are never logged, only the source they came from.
"""
import os
from pathlib import Path
from typing import Iterator, Optional, Tuple
import structlog

logger = structlog.get_logger()

DEFAULT_SECRETS_DIR = "/run/secrets"

# Secrets the API process needs; reported at startup by source
SERVICE_SECRETS = ("jwt_secret_key", "service_api_key")


def _secrets_dir() -> Path:
    return Path(os.getenv("SMARTPARK_SECRETS_DIR", DEFAULT_SECRETS_DIR))


def _lookups(name: str) -> Iterator[Tuple[str, Optional[str]]]:
    """Yield (source, value) for each place the secret may live, in priority order"""
    mounted = _secrets_dir() / name
    if mounted.is_file():
        yield "mounted", mounted.read_text().strip()

    env_name = name.upper()
    file_path = os.getenv(f"{env_name}_FILE")
    if file_path:
        path = Path(file_path)
        if not path.is_file():
            raise FileNotFoundError(f"{env_name}_FILE points to a missing file: {file_path}")
        yield "file", path.read_text().strip()

    yield "env", os.getenv(env_name)


def resolve_secret(secret_name: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (value, source) for the first non-empty lookup, or (None, None)"""
    name = secret_name.lower().replace("-", "_")
    for source, value in _lookups(name):
        if value:
            return value, source
    return None, None


def load_secret(
    secret_name: str,
    default: Optional[str] = None,
    required: bool = False
) -> Optional[str]:
    """
    Load a secret, falling back to default

    Raises:
        ValueError: required=True, nothing found and no default
        FileNotFoundError: <NAME>_FILE names a file that does not exist
    """
    value, source = resolve_secret(secret_name)
    if value is not None:
        logger.debug("secret_loaded", secret=secret_name, source=source)
        return value

    if default is not None:
        return default
    if required:
        raise ValueError(f"Required secret '{secret_name}' is not configured")
    return None


def log_secret_sources():
    """Startup report: where each service secret comes from, never its value"""
    for name in SERVICE_SECRETS:
        _, source = resolve_secret(name)
        logger.info("secret_source", secret=name, source=source or "default")
