"""
Custom exceptions for the reservation core
Each kind carries the HTTP status it maps to at the API boundary
"""
from typing import Optional, Any


class ParkingException(Exception):
    """Base exception for all parking-related errors"""

    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details
        }


# ============================================================
# Credential / Access Exceptions
# ============================================================

class AuthError(ParkingException):
    """Missing or invalid credential (bearer token or device key)"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message=message, error_code="AUTHENTICATION_ERROR")


class ForbiddenError(ParkingException):
    """Authenticated, but not allowed to act on this resource"""

    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message=message, error_code="FORBIDDEN")


# ============================================================
# Domain Exceptions
# ============================================================

class NotFoundError(ParkingException):
    """Record not found"""

    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)}
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(ParkingException):
    """Uniqueness violation: slot or user already holds an open reservation"""

    status_code = 409

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message=message, error_code="CONFLICT", details=details)


class InvalidStateError(ParkingException):
    """Operation not valid for the entity's current status"""

    status_code = 400

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="INVALID_STATE",
            details={"current_state": current_state}
        )
        self.current_state = current_state


class ValidationError(ParkingException):
    """Malformed input"""

    status_code = 400

    def __init__(self, field: str, message: str):
        super().__init__(
            message=f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "error": message}
        )
        self.field = field


# ============================================================
# Infrastructure Exceptions
# ============================================================

class DatabaseError(ParkingException):
    """Database unavailable or failed; rendered as a generic 500"""

    status_code = 500

    def __init__(self, message: str = "Database error"):
        super().__init__(message=message, error_code="DATABASE_ERROR")


# Messages used by the engine for the two open-reservation conflicts
USER_HAS_OPEN_RESERVATION = "user already has active reservation"
SLOT_ALREADY_RESERVED = "slot already reserved"
