from typing import Any, Literal, Union

from pydantic import BaseModel

from social_sync.utils.errors import ServiceError, classify_exception


class Ok(BaseModel):

    status: Literal["ok"] = "ok"
    value: Any = None


class Conflict(BaseModel):

    status: Literal["conflict"] = "conflict"
    message: str = "Already exists"


class NotFound(BaseModel):

    status: Literal["not_found"] = "not_found"
    message: str = "Not found"


class Err(BaseModel):

    status: Literal["error"] = "error"
    kind: str
    message: str


MutationResult = Union[Ok, Conflict, NotFound, Err]


def is_success(result: MutationResult) -> bool:
    """Conflict and not-found mean the entity is already in the requested state."""
    return not isinstance(result, Err)


def from_exception(exc: BaseException) -> MutationResult:
    error: ServiceError = classify_exception(exc)
    if error.kind == "conflict":
        return Conflict(message=error.message)
    if error.kind == "not_found":
        return NotFound(message=error.message)
    return Err(kind=error.kind, message=error.message)
