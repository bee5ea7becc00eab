"""
Driver contract for txengine.

A driver owns everything below the engine: the wire protocol, native
connections, server-side preparation and transaction control statements. The
engine only ever passes back the native connection object the driver handed
out from ``connect()``.

Drivers must classify their failures into the engine taxonomy:
DatabaseConnectionError, TransactionConflictError or BackendError.
"""

from __future__ import annotations

from typing import Any, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from txengine.domain.models import StatementSignature


@runtime_checkable
class RowBatchSource(Protocol):
    """
    Result of one statement execution.

    Attributes
    ----------
    rowcount : int
        Rows affected (or returned so far); -1 when unknown.
    """

    rowcount: int

    def fetch(self, size: int) -> List[Tuple[Any, ...]]:
        """Return up to ``size`` more rows; an empty list once exhausted."""
        ...


@runtime_checkable
class Driver(Protocol):
    """Operations the engine requires from a database backend."""

    def connect(self) -> Any:
        """Open a new native connection."""
        ...

    def disconnect(self, connection: Any) -> None:
        """Close a native connection; server-side prepared statements go with it."""
        ...

    def prepare(self, connection: Any, handle: bytes, signature: StatementSignature) -> None:
        """Prepare ``signature`` on the server under the name ``handle``."""
        ...

    def execute(
        self,
        connection: Any,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> RowBatchSource:
        """Execute a prepared handle, or the raw text when ``handle`` is None."""
        ...

    def stream(
        self,
        connection: Any,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> RowBatchSource:
        """
        Like execute(), but rows are retrieved from the server as they are
        fetched. Running another statement on the connection must not lose
        the rows the stream has not handed out yet.
        """
        ...

    def begin_transaction(self, connection: Any, write_access: bool) -> None:
        ...

    def finish_transaction(self, connection: Any, commit: bool) -> None:
        ...


__all__ = ["Driver", "RowBatchSource"]
