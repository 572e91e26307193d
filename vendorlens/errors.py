"""
Error taxonomy for vendor resolution.

Every error carries a short machine-readable code and the HTTP status the API
boundary answers with. ``to_dict`` renders the failure half of the response
envelope.
"""

from typing import Any, Optional


class VendorError(Exception):
    """Base exception for all vendor resolution errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(VendorError):
    """Malformed or oversized input (400)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None,
    ):
        super().__init__(code=code, message=message, status_code=400, details=details)


class InvalidId(ValidationError):
    def __init__(self, identifier: str):
        super().__init__(
            message="Invalid mapping ID",
            code="INVALID_ID",
            details={"id": identifier},
        )


class Unauthorized(VendorError):
    """No authenticated caller (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(code="UNAUTHORIZED", message=message, status_code=401)


class Forbidden(VendorError):
    """Authenticated, but not the owner of the resource (403)."""

    def __init__(self, message: str = "You can only modify your own vendor mappings"):
        super().__init__(code="FORBIDDEN", message=message, status_code=403)


class NotFound(VendorError):
    """Mapping id does not exist (404)."""

    def __init__(self, identifier: str):
        super().__init__(
            code="MAPPING_NOT_FOUND",
            message="Vendor mapping not found",
            status_code=404,
            details={"id": identifier},
        )


class Conflict(VendorError):
    """Caller already owns a mapping for the same vendor text (409)."""

    def __init__(self, message: str = "Vendor mapping already exists for this text"):
        super().__init__(code="MAPPING_EXISTS", message=message, status_code=409)


class PersistenceError(VendorError):
    """Store read/write failure, including unique-constraint races."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: str = "PERSISTENCE_ERROR",
        details: Optional[dict] = None,
    ):
        self.operation = operation
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details=details,
        )


class ResolutionFailed(VendorError):
    """Oracle unreachable, timed out, or returned no usable candidate (400)."""

    def __init__(self, message: str = "Vendor resolution failed"):
        super().__init__(code="RESOLUTION_FAILED", message=message, status_code=400)


class InternalError(VendorError):
    """Anything uncategorized. The message never includes internal detail."""

    def __init__(self, message: str = "An unexpected error occurred"):
        super().__init__(code="INTERNAL_ERROR", message=message, status_code=500)
