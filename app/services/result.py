"""Outcome of a domain operation that fails for expected reasons.

A wrong verification code or a taken email is a value, not an exception.
Callers branch on ``error_code``; ``error`` holds the detail for the reply
(minutes left, attempts left) or for the log.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, code: str = "unknown") -> "Result[T]":
        return cls(ok=False, error=error, error_code=code)
