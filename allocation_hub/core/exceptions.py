"""Custom exception hierarchy."""

from typing import Any, Optional


class AppError(Exception):
    """Base exception for application errors."""

    code = "APP_ERROR"

    def __init__(
        self,
        message: str,
        original_error: Exception = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        if code:
            self.code = code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class DatabaseError(AppError):
    """Raised when a database operation fails for one item of a batch."""

    code = "DATABASE_ERROR"


class ValidationError(AppError):
    """Raised when input validation fails.

    In batch contexts this is reported against the offending row or id and
    never aborts the remaining items.
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        original_error: Exception = None,
        code: Optional[str] = None,
        row: Optional[int] = None,
        field: Optional[str] = None,
    ):
        super().__init__(message, original_error=original_error, code=code)
        self.row = row
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.row is not None:
            data["row"] = self.row
        if self.field is not None:
            data["field"] = self.field
        return data


class MalformedKeyError(ValidationError):
    """Raised when a natural key (reference, date) cannot be canonicalized."""

    code = "MALFORMED_KEY"


class MalformedFileError(ValidationError):
    """Raised when an uploaded file cannot be read at all.

    Unlike row-level errors this aborts the whole operation before any item
    is processed.
    """

    code = "MALFORMED_FILE"


class NotFoundError(AppError):
    """Raised when a referenced record does not exist."""

    code = "NOT_FOUND"


class AuthorizationError(AppError):
    """Raised when the acting identity lacks the required capability."""

    code = "FORBIDDEN"


class InvalidTransitionError(AppError):
    """Raised when a workflow transition is not permitted from the current state."""

    code = "INVALID_TRANSITION"

    def __init__(self, message: str, current_status: Optional[str] = None, target_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status
        self.target_status = target_status


class ConcurrentModificationError(AppError):
    """Raised when a conditional write lost the race against another writer.

    The caller should refetch the record and retry.
    """

    code = "CONCURRENT_MODIFICATION"


class AmbiguousMatchError(AppError):
    """An external reference maps to more than one policy.

    The resolver reports this as a flagged result rather than raising it.
    """

    code = "AMBIGUOUS_MATCH"

    def __init__(self, reference: str, candidates: list[str]):
        super().__init__(
            f"External reference {reference} maps to {len(candidates)} policies: {', '.join(candidates)}"
        )
        self.reference = reference
        self.candidates = candidates


class DependencyUnavailableError(AppError):
    """Raised when the policy index or transaction store cannot be reached."""

    code = "DEPENDENCY_UNAVAILABLE"
