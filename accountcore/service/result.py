"""Explicit success/failure values returned by every account operation.

Operations hand back ``Ok(value)`` or ``Err(kind, message, detail)`` instead
of raising; only the HTTP layer turns an ``Err`` into a response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    INVALID_CREDENTIAL = "invalid_credential"
    UNAUTHENTICATED = "unauthenticated"
    REVOKED = "revoked"
    NOT_FOUND = "not_found"
    INVALID_TOKEN = "invalid_token"
    FORBIDDEN = "forbidden"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def err(kind: ErrorKind, message: str, **detail: Any) -> Err:
    return Err(kind, message, dict(detail))
