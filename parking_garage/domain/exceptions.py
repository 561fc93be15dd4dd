# File: parking_garage/domain/exceptions.py
"""
Error taxonomy for the Parking Garage system

Every failure raised by the domain, the application services and the
persistence gateway is one of these classes. Each carries:
1. status_code - the HTTP status an outer surface should answer with
2. code - a stable machine-readable identifier (e.g. ALREADY_OCCUPIED)
3. details - optional structured context (field errors, identifiers)

The command handler is the only place where these are turned into
response dictionaries; everything below it raises.
"""

from typing import Any, Dict, Optional


# ============================================================================
# BASE ERROR
# ============================================================================

class ParkingGarageError(Exception):
    """Base class for all parking garage errors"""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"
    error_name: str = "Internal Server Error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize as the {error, message, code, details} response body"""
        return {
            "error": self.error_name,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# ============================================================================
# CONCRETE ERRORS
# ============================================================================

class ValidationError(ParkingGarageError):
    """Input violates a field invariant or a state transition rule"""

    status_code = 400
    default_code = "VALIDATION_ERROR"
    error_name = "Validation Error"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        if field and details is None:
            details = {"field": field}
        super().__init__(message, details=details)
        self.field = field


class NotFoundError(ParkingGarageError):
    """Referenced entity does not exist"""

    status_code = 404
    default_code = "NOT_FOUND"
    error_name = "Not Found"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} with identifier '{identifier}' not found",
            details={"resource": resource, "identifier": str(identifier)},
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(ParkingGarageError):
    """Operation conflicts with the current state of the garage"""

    status_code = 409
    default_code = "CONFLICT"
    error_name = "Conflict"


class DatabaseError(ParkingGarageError):
    """Persistence failure; the message never exposes driver internals"""

    status_code = 500
    default_code = "DATABASE_ERROR"
    error_name = "Database Error"

    def __init__(self, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Database operation failed: {operation}", details=details)
        self.operation = operation


# Conflict codes raised by the occupancy workflow and the entity services
ALREADY_OCCUPIED = "ALREADY_OCCUPIED"
ALREADY_AVAILABLE = "ALREADY_AVAILABLE"
CAR_NOT_CHECKED_IN = "CAR_NOT_CHECKED_IN"
CAR_ALREADY_CHECKED_IN = "CAR_ALREADY_CHECKED_IN"
CAR_ALREADY_CHECKED_OUT = "CAR_ALREADY_CHECKED_OUT"
CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
DUPLICATE = "DUPLICATE"
HAS_DEPENDENTS = "HAS_DEPENDENTS"
SPOT_OCCUPIED = "SPOT_OCCUPIED"
CAR_CHECKED_IN = "CAR_CHECKED_IN"
INTEGRITY_ERROR = "INTEGRITY_ERROR"
