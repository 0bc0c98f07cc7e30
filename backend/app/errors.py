"""
Error taxonomy for the cash core.

Services raise `CashError` with a closed `ErrorKind`; the HTTP status is only
derived at the boundary (`main.py` exception handler).
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    SCOPE_DENIED = "scope_denied"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.SCOPE_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
}


class CashError(Exception):
    def __init__(self, kind: ErrorKind, message: str, **context: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context

    @property
    def status(self) -> int:
        return STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        out: dict = {"detail": self.message, "kind": self.kind.value}
        if self.context:
            out["context"] = self.context
        return out

    def __repr__(self) -> str:
        return f"CashError({self.kind.value}, {self.message!r})"


class DuplicateKeyError(CashError):
    """A unique constraint fired; `constraint` is the violated constraint name."""

    def __init__(self, constraint: Optional[str], message: Optional[str] = None) -> None:
        super().__init__(
            ErrorKind.CONFLICT,
            message or f"duplicate key ({constraint or 'unknown constraint'})",
            constraint=constraint,
        )
        self.constraint = constraint or ""

    def matches(self, *names: str) -> bool:
        return any(n and n == self.constraint for n in names)


def bad_request(message: str, **context: Any) -> CashError:
    return CashError(ErrorKind.VALIDATION, message, **context)


def scope_denied(message: str, **context: Any) -> CashError:
    return CashError(ErrorKind.SCOPE_DENIED, message, **context)


def not_found(message: str, **context: Any) -> CashError:
    return CashError(ErrorKind.NOT_FOUND, message, **context)


def conflict(message: str, **context: Any) -> CashError:
    return CashError(ErrorKind.CONFLICT, message, **context)
