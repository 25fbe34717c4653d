"""
Error kinds for the notification pipeline.

Every error the core raises carries an ErrorKind. Callers branch on the
kind, never on the message text.
"""
import asyncio
import enum

from sqlalchemy.exc import SQLAlchemyError


class ErrorKind(str, enum.Enum):
    """Closed set of error kinds."""
    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"
    INFRASTRUCTURE = "infrastructure"


class NotifyError(Exception):
    """Base error for the notification pipeline."""
    kind: ErrorKind = ErrorKind.INFRASTRUCTURE


class QueueValidationError(NotifyError, ValueError):
    """Rejected enqueue request. Never enters the queue."""
    kind = ErrorKind.VALIDATION


class DeliveryValidationError(NotifyError, ValueError):
    """Rejected delivery record."""
    kind = ErrorKind.VALIDATION


class NotificationValidationError(NotifyError, ValueError):
    """Rejected notification record."""
    kind = ErrorKind.VALIDATION


class SendError(NotifyError):
    """Send channel failure."""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientSendError(SendError):
    """Timeout or temporary provider error. Worth retrying."""
    kind = ErrorKind.TRANSIENT


class PermanentSendError(SendError):
    """Invalid address or hard bounce. Retrying will not help."""
    kind = ErrorKind.PERMANENT


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception to its ErrorKind."""
    if isinstance(exc, NotifyError):
        return exc.kind
    if isinstance(exc, (SQLAlchemyError, OSError, asyncio.TimeoutError)):
        return ErrorKind.INFRASTRUCTURE
    return ErrorKind.TRANSIENT
