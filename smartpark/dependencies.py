"""
FastAPI dependencies: service container, caller identity, service key
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from .auth import Caller, decode_access_token
from .config import Settings
from .database import Database
from .events import ChangeFeed
from .exceptions import AuthError, ForbiddenError
from .notifications import NotificationDispatcher
from .registry import DeviceRegistry, SlotRegistry
from .reservations import ReservationEngine
from .sweeper import ExpirySweeper
from .telemetry import TelemetryReconciler

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)
SERVICE_KEY_HEADER = APIKeyHeader(name="X-Service-Key", auto_error=False)


@dataclass
class ServiceContainer:
    """Everything built in the lifespan and shared by request handlers"""
    settings: Settings
    database: Database
    feed: ChangeFeed
    notifier: NotificationDispatcher
    engine: ReservationEngine
    reconciler: TelemetryReconciler
    slots: SlotRegistry
    devices: DeviceRegistry
    sweeper: ExpirySweeper
    redis: Optional[Any] = None


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_caller(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    services: ServiceContainer = Depends(get_services),
) -> Caller:
    """
    Resolve the caller from the bearer token

    Raises:
        AuthError: 401 when the token is missing or invalid
    """
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required. Provide a Bearer token.")

    caller = decode_access_token(
        credentials.credentials,
        services.settings.jwt_secret_key,
        services.settings.jwt_algorithm,
    )
    request.state.user_id = caller.user_id
    return caller


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        logger.warning(f"User {caller.user_id} role {caller.role.value} insufficient for admin")
        raise ForbiddenError("Requires admin role")
    return caller


async def require_service_key(
    service_key: Optional[str] = Security(SERVICE_KEY_HEADER),
    services: ServiceContainer = Depends(get_services),
) -> None:
    """Internal callers (scheduler, ops tooling) present X-Service-Key"""
    expected = services.settings.service_api_key
    if not expected or not service_key or not hmac.compare_digest(service_key.encode(), expected.encode()):
        raise AuthError("Invalid service key")
