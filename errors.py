"""
Error taxonomy and result values for ledger operations.

Ledger mutations never raise for expected failures. They return a Result
carrying either the value or an ErrorInfo describing what went wrong, so
callers (HTTP routes, admin tooling) branch on data rather than exceptions.
"""

import logging
from functools import wraps
from typing import Any, Callable, Generic, Optional, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerError(Exception):
    kind = "ledger_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Bad input: negative stock or price, invalid quantity, illegal status transition."""
    kind = "validation_error"


class NotFound(LedgerError):
    kind = "not_found"


class OutOfStock(LedgerError):
    kind = "out_of_stock"


class StorageError(LedgerError):
    """Backing store read/write failure, including corrupt stored JSON."""
    kind = "storage_error"


class ErrorInfo(BaseModel):
    kind: str
    message: str


class Result(BaseModel, Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorInfo] = None
    note: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None, note: Optional[str] = None) -> "Result":
        return cls(ok=True, value=value, note=note)

    @classmethod
    def failure(cls, exc: LedgerError) -> "Result":
        return cls(ok=False, error=ErrorInfo(kind=exc.kind, message=exc.message))

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error else None


def as_result(func: Callable[..., Any]) -> Callable[..., Result]:
    """Wrap a ledger method so LedgerError becomes a failed Result.

    A method may return a Result itself (to attach a note); any other return
    value is wrapped in a successful Result.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            out = func(*args, **kwargs)
        except LedgerError as exc:
            if isinstance(exc, StorageError):
                logger.error("%s failed: %s", func.__qualname__, exc.message)
            else:
                logger.info("%s rejected (%s): %s", func.__qualname__, exc.kind, exc.message)
            return Result.failure(exc)
        if isinstance(out, Result):
            return out
        return Result.success(out)
    return wrapper
