import asyncio
from typing import Optional

from bson.errors import InvalidId
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    DuplicateKeyError,
    NetworkTimeout,
    ServerSelectionTimeoutError,
)


CONFLICT = "conflict"
NOT_FOUND = "not_found"
TRANSIENT = "transient"
VALIDATION = "validation"


class ServiceError(Exception):

    kind = TRANSIENT

    def __init__(self, message: str, kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind == TRANSIENT


class ConflictError(ServiceError):

    kind = CONFLICT


class NotFoundError(ServiceError):

    kind = NOT_FOUND


class TransientError(ServiceError):

    kind = TRANSIENT


class RequestTimeout(TransientError):
    pass


class ValidationError(ServiceError):

    kind = VALIDATION


_TRANSIENT_DRIVER_ERRORS = (
    AutoReconnect,
    NetworkTimeout,
    ConnectionFailure,
    ServerSelectionTimeoutError,
    asyncio.TimeoutError,
    OSError,
)


def classify_exception(exc: BaseException) -> ServiceError:
    """Map a driver or runtime exception onto the service error taxonomy."""
    if isinstance(exc, ServiceError):
        return exc
    if isinstance(exc, DuplicateKeyError):
        return ConflictError(str(exc) or "Duplicate key")
    if isinstance(exc, _TRANSIENT_DRIVER_ERRORS):
        return TransientError(str(exc) or exc.__class__.__name__)
    if isinstance(exc, (InvalidId, ValueError)):
        return ValidationError(str(exc) or "Invalid input")
    return TransientError(str(exc) or exc.__class__.__name__)
