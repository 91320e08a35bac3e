"""Tagged results returned by the domain services.

Services never raise for expected failures. They return either a
:class:`Success` carrying the payload (and any outbound effects to perform
after the transaction commits) or a :class:`Failure` carrying an
:class:`ErrorKind` and a human readable message. Routes turn failures into
HTTP errors with :func:`unwrap`.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Generic, TypeVar, Union

from fastapi import HTTPException, status

T = TypeVar("T")


class ErrorKind(enum.Enum):
    validation = "validation"
    unauthorized = "unauthorized"
    forbidden = "forbidden"
    not_found = "not_found"
    conflict = "conflict"
    internal = "internal"


ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.validation: status.HTTP_400_BAD_REQUEST,
    ErrorKind.unauthorized: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.forbidden: status.HTTP_403_FORBIDDEN,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.internal: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@dataclass(frozen=True, slots=True)
class Success(Generic[T]):
    value: T
    effects: tuple = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class Failure:
    kind: ErrorKind
    message: str


ServiceResult = Union[Success[T], Failure]


def validation_error(message: str) -> Failure:
    return Failure(ErrorKind.validation, message)


def not_found(message: str) -> Failure:
    return Failure(ErrorKind.not_found, message)


def conflict(message: str) -> Failure:
    return Failure(ErrorKind.conflict, message)


def forbidden(message: str = "You do not have permission to perform this action") -> Failure:
    return Failure(ErrorKind.forbidden, message)


def unwrap(result: "ServiceResult[T]") -> Success[T]:
    """Return the success variant or raise the matching ``HTTPException``."""

    if isinstance(result, Failure):
        raise HTTPException(status_code=ERROR_STATUS_CODES[result.kind], detail=result.message)
    return result
