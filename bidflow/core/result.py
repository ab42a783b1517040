"""
Domain Results
==============

Engine operations return a ``Result`` instead of raising for expected
business failures (bad input, wrong actor, missing row, lost race, gateway
decline). The HTTP boundary is the only place a ``DomainError`` is turned
into a status code; see ``bidflow.api.responses``.

Usage::

    result = await bid_engine.submit_bid(...)
    if not result.ok:
        return error_response(result.error)
    bid = result.value
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    GATEWAY = "gateway"
    INTERNAL = "internal"


@dataclass(frozen=True)
class DomainError:
    """A bounded, expected failure of a domain operation."""
    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def validation(cls, message: str, **details: Any) -> DomainError:
        return cls(ErrorKind.VALIDATION, message, details)

    @classmethod
    def forbidden(cls, message: str, **details: Any) -> DomainError:
        return cls(ErrorKind.FORBIDDEN, message, details)

    @classmethod
    def not_found(cls, message: str, **details: Any) -> DomainError:
        return cls(ErrorKind.NOT_FOUND, message, details)

    @classmethod
    def conflict(cls, message: str, **details: Any) -> DomainError:
        return cls(ErrorKind.CONFLICT, message, details)

    @classmethod
    def gateway(cls, message: str, **details: Any) -> DomainError:
        return cls(ErrorKind.GATEWAY, message, details)


class ResultUnwrapError(RuntimeError):
    """Raised when ``Result.unwrap`` is called on a failure."""


@dataclass(frozen=True)
class Result(Generic[T]):
    value: T | None = None
    error: DomainError | None = None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: DomainError) -> Result[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ResultUnwrapError(f"{self.error.kind.value}: {self.error.message}")
        return self.value  # type: ignore[return-value]


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a listing plus the total row count."""
    items: list[T]
    total: int
    page: int
    page_size: int
