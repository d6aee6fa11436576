"""
Operation error taxonomy.

Every public operation fails with one of five codes:
- invalid-argument: missing or malformed input, raised before any mutation
- not-found: referenced entity does not exist
- permission-denied: entity exists but belongs to another user
- failed-precondition: valid request blocked by a business rule
- internal: unexpected failure, including store errors
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Error codes exposed at the RPC boundary."""

    INVALID_ARGUMENT = "invalid-argument"
    NOT_FOUND = "not-found"
    PERMISSION_DENIED = "permission-denied"
    FAILED_PRECONDITION = "failed-precondition"
    INTERNAL = "internal"


class OperationError(Exception):
    """Base exception for reconciliation operation errors."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str, code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"{self.code.value}: {message}")

    def to_dict(self) -> dict:
        """Structured error payload for callers."""
        return {"code": self.code.value, "message": self.message}


class InvalidArgumentError(OperationError):
    """A required field is missing or malformed."""

    code = ErrorCode.INVALID_ARGUMENT


class NotFoundError(OperationError):
    """Referenced entity does not exist."""

    code = ErrorCode.NOT_FOUND


class PermissionDeniedError(OperationError):
    """Entity exists but is not owned by the caller."""

    code = ErrorCode.PERMISSION_DENIED


class FailedPreconditionError(OperationError):
    """Request is valid but blocked by a business rule."""

    code = ErrorCode.FAILED_PRECONDITION


class InternalError(OperationError):
    """Unexpected failure."""

    code = ErrorCode.INTERNAL
