"""
API Routers
"""
from .reservations import router as reservations_router
from .slots import router as slots_router
from .devices import router as devices_router
from .internal import router as internal_router
from .changes import router as changes_router

__all__ = ["reservations_router", "slots_router", "devices_router", "internal_router", "changes_router"]
