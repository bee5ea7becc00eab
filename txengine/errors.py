"""
Error taxonomy for the transaction engine.

Every failure the engine surfaces to callers derives from EngineError so that
applications can catch engine failures without also catching their own bugs:

- DatabaseConnectionError: cannot connect, or the connection was lost.
- PoolClosedError: the pool was shut down while (or before) acquiring.
- TransactionConflictError: serialization failure or deadlock; retried by the
  executor and only surfaced when a retry limit is configured.
- BackendError: any other driver failure, passed through opaquely.
- ParsingError: a result row does not fit the requested target type.
- TransactionClosedError / StreamClosedError: a handle or a result stream was
  used after its transaction attempt ended.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence


class EngineError(Exception):
    """Base class for all engine errors."""


class DatabaseConnectionError(EngineError):
    """Cannot establish a physical connection, or it was interrupted."""


class PoolClosedError(DatabaseConnectionError):
    """Raised by acquire() once the pool has been shut down."""

    def __init__(self, message: str = "connection pool is closed") -> None:
        super().__init__(message)


class TransactionConflictError(EngineError):
    """Serialization failure or deadlock signalled by the driver."""


class BackendError(EngineError):
    """
    Opaque driver-specific failure.

    The original exception is kept both as ``cause`` and as ``__cause__`` when
    raised with ``raise BackendError(exc) from exc``.
    """

    def __init__(self, cause: Any) -> None:
        self.cause = cause
        super().__init__(str(cause))


class ParsingError(EngineError):
    """
    A result row could not be converted into the requested type.

    Indicates either a mismatching schema or an incorrect query.
    """

    def __init__(self, values: Sequence[Any], expected: str, reason: Optional[str] = None) -> None:
        self.values = tuple(values)
        self.expected = expected
        self.reason = reason
        message = f"cannot parse row {self.values!r} as {expected}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class TransactionClosedError(EngineError):
    """A transaction handle was used after its attempt finished."""

    def __init__(self, message: str = "transaction handle used outside its transaction") -> None:
        super().__init__(message)


class StreamClosedError(TransactionClosedError):
    """A result stream was read after its transaction committed or rolled back."""

    def __init__(self, message: str = "result stream used outside its transaction") -> None:
        super().__init__(message)


__all__ = [
    "EngineError",
    "DatabaseConnectionError",
    "PoolClosedError",
    "TransactionConflictError",
    "BackendError",
    "ParsingError",
    "TransactionClosedError",
    "StreamClosedError",
]
