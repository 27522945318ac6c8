"""
Error taxonomy for the lending engine.

Business-rule violations are raised inside a unit of work (so the unit rolls
back) and converted into a failed OperationResult at the engine boundary.
Integrity alarms and dependency failures are logged and metered, never shown
to borrowers.
"""
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class LendingError(Exception):
    """
    Base exception for every user-facing lending error.

    Carries:
    - Error code (for client handling)
    - User message (safe to show to users)
    - HTTP status code (for API responses)
    """

    error_code = "lending_error"
    http_status = 500

    def __init__(self, user_message: str, **details: Any):
        super().__init__(user_message)
        self.user_message = user_message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.user_message,
                "type": self.__class__.__name__,
            }
        }


class ValidationError(LendingError):
    """Bad input such as a confirmation mismatch or a missing field."""

    error_code = "validation_error"
    http_status = 400


class NotFoundError(LendingError):
    """Book, user, request or record does not exist."""

    error_code = "not_found"
    http_status = 404


class RestrictedError(LendingError):
    """Borrowing privileges are locked because of unpaid fines."""

    error_code = "borrowing_restricted"
    http_status = 403


class ConflictError(LendingError):
    """The operation conflicts with the current state of a record."""

    error_code = "conflict"
    http_status = 409


class NotAvailableError(ConflictError):
    error_code = "not_available"

    def __init__(self, user_message: str = "Book is no longer available", **details: Any):
        super().__init__(user_message, **details)


class AlreadyProcessedError(ConflictError):
    error_code = "already_processed"

    def __init__(self, user_message: str = "Request has already been processed", **details: Any):
        super().__init__(user_message, **details)


class DuplicateRequestError(ConflictError):
    error_code = "duplicate_request"


class TransactionUnsupported(Exception):
    """The backing store cannot run multi-statement transactions."""

    pass


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Typed outcome of an engine operation."""

    ok: bool
    value: Optional[T] = None
    error: Optional[LendingError] = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: LendingError) -> "OperationResult[T]":
        return cls(ok=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    @property
    def message(self) -> Optional[str]:
        return self.error.user_message if self.error else None
