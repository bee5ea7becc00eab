"""
PostgreSQL driver built on psycopg 3.

Connections run in autocommit mode so that transaction boundaries are always
explicit: the executor decides when to BEGIN, and single statements outside a
transaction commit on their own.

Prepared statements use SQL-level ``PREPARE``/``EXECUTE`` under the handle
names assigned by the engine's registry. ``EXECUTE`` arguments are bound
client-side (ClientCursor) since the server does not accept bind parameters on
utility statements; unprepared statements use server-side binding through a
RawCursor so both paths accept ``$n`` placeholders.

Queries that feed a result stream are read with ``Cursor.stream()``: rows come
off the socket as the stream is consumed. A connection carries at most one open
stream. Before any other statement runs on it, the rest of that stream is read
into memory (or, ahead of a rollback, cancelled and discarded).

Includes retry logic for transient connection failures using tenacity.
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Generator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.postgres import types as pg_types
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from txengine.config import IsolationLevel, Settings, build_dsn, get_settings
from txengine.domain.models import StatementSignature
from txengine.errors import (
    BackendError,
    DatabaseConnectionError,
    EngineError,
    TransactionConflictError,
)
from txengine.utils.logging import get_logger

log = get_logger(__name__)

# serialization_failure, deadlock_detected
CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})
# Class 08: connection exception (08000, 08001, 08003, 08006, ...)
CONNECTION_SQLSTATE_CLASS = "08"

_ISOLATION_LEVELS = {
    "serializable": "SERIALIZABLE",
    "repeatable read": "REPEATABLE READ",
    "read committed": "READ COMMITTED",
}


def classify_error(exc: psycopg.Error, connection: Optional[psycopg.Connection] = None) -> EngineError:
    """Map a psycopg error onto the engine taxonomy."""
    sqlstate = exc.sqlstate
    if sqlstate in CONFLICT_SQLSTATES:
        return TransactionConflictError(str(exc))
    if sqlstate and sqlstate.startswith(CONNECTION_SQLSTATE_CLASS):
        return DatabaseConnectionError(str(exc))
    if isinstance(exc, (errors.AdminShutdown, psycopg.InterfaceError)):
        return DatabaseConnectionError(str(exc))
    if isinstance(exc, psycopg.OperationalError) and sqlstate is None:
        return DatabaseConnectionError(str(exc))
    if connection is not None and connection.broken:
        return DatabaseConnectionError(str(exc))
    return BackendError(exc)


@contextmanager
def _translated(connection: Optional[psycopg.Connection] = None) -> Generator[None, None, None]:
    try:
        yield
    except psycopg.Error as exc:
        raise classify_error(exc, connection) from exc


class BufferedRows:
    """RowBatchSource over a result that was read in full when executed."""

    def __init__(self, rows: Sequence[Tuple[Any, ...]], rowcount: int) -> None:
        self._rows: Deque[Tuple[Any, ...]] = deque(rows)
        self.rowcount = rowcount

    def fetch(self, size: int) -> List[Tuple[Any, ...]]:
        return [self._rows.popleft() for _ in range(min(size, len(self._rows)))]


class StreamingRows:
    """
    RowBatchSource over a psycopg result stream.

    ``fetch`` pulls rows from the server on demand. ``rowcount`` counts the
    rows handed out so far.
    """

    def __init__(
        self, cursor: psycopg.Cursor, rows: Generator[Tuple[Any, ...], None, None]
    ) -> None:
        self._cursor = cursor
        self._rows = rows
        self._buffer: Deque[Tuple[Any, ...]] = deque()
        self._done = False
        self.rowcount = 0

    @property
    def done(self) -> bool:
        return self._done

    def prime(self) -> None:
        """Read the first row so the query is sent and its errors surface now."""
        with _translated(self._cursor.connection):
            first = next(self._rows, None)
        if first is None:
            self._finish()
        else:
            self._buffer.append(first)

    def fetch(self, size: int) -> List[Tuple[Any, ...]]:
        batch = [self._buffer.popleft() for _ in range(min(size, len(self._buffer)))]
        missing = size - len(batch)
        if missing and not self._done:
            with _translated(self._cursor.connection):
                more = list(itertools.islice(self._rows, missing))
            if len(more) < missing:
                self._finish()
            batch.extend(more)
        self.rowcount += len(batch)
        return batch

    def detach(self) -> None:
        """Read the rest of the result into memory, freeing the connection."""
        if self._done:
            return
        with _translated(self._cursor.connection):
            self._buffer.extend(self._rows)
        self._finish()

    def discard(self) -> None:
        """Abandon the rest of the result; psycopg cancels the running query."""
        if self._done:
            return
        self._done = True
        with _translated(self._cursor.connection):
            self._rows.close()
            self._cursor.close()

    def _finish(self) -> None:
        self._done = True
        self._cursor.close()


class PsycopgDriver:
    """
    Driver implementation for PostgreSQL via psycopg.

    Parameters
    ----------
    dsn : str
        libpq connection string or URL.
    isolation_level : str
        Isolation level used by BEGIN; serializable by default so concurrent
        modifications surface as retryable conflicts.
    connect_attempts : int
        Attempts made by connect() before a connection error is surfaced.
    """

    def __init__(
        self,
        dsn: str,
        isolation_level: IsolationLevel = "serializable",
        connect_attempts: int = 3,
    ) -> None:
        if isolation_level not in _ISOLATION_LEVELS:
            raise ValueError(
                f"Unknown isolation level '{isolation_level}'. "
                f"Available: {', '.join(_ISOLATION_LEVELS)}"
            )
        self._dsn = dsn
        self._isolation = sql.SQL(_ISOLATION_LEVELS[isolation_level])
        self._connect_attempts = connect_attempts
        # Open stream per connection, keyed by id(connection).
        self._streams: Dict[int, StreamingRows] = {}
        self._streams_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PsycopgDriver":
        settings = settings or get_settings()
        return cls(
            build_dsn(settings),
            isolation_level=settings.isolation_level,
            connect_attempts=settings.connect_attempts,
        )

    def connect(self) -> psycopg.Connection:
        """
        Open an autocommit connection, retrying transient failures with
        exponential backoff.

        Raises
        ------
        DatabaseConnectionError
            If every attempt fails.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(DatabaseConnectionError),
            reraise=True,
        )
        return retrying(self._connect_once)

    def _connect_once(self) -> psycopg.Connection:
        try:
            return psycopg.connect(self._dsn, autocommit=True)
        except psycopg.Error as exc:
            log.debug("Connection attempt failed", extra={"error": str(exc)})
            raise DatabaseConnectionError(str(exc)) from exc

    def disconnect(self, connection: psycopg.Connection) -> None:
        with self._streams_lock:
            self._streams.pop(id(connection), None)
        connection.close()

    def prepare(
        self, connection: psycopg.Connection, handle: bytes, signature: StatementSignature
    ) -> None:
        query = sql.SQL("PREPARE {name}{types} AS {body}").format(
            name=sql.Identifier(handle.decode("ascii")),
            types=self._declared_types(signature.param_types),
            body=sql.SQL(signature.text),
        )
        self._settle(connection, keep=True)
        with _translated(connection):
            connection.execute(query).close()

    def execute(
        self,
        connection: psycopg.Connection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> BufferedRows:
        """Run a statement to completion and close its cursor."""
        self._settle(connection, keep=True)
        cursor, query, args = self._cursor_for(connection, handle, signature, params)
        with _translated(connection), cursor:
            cursor.execute(query, args)
            rows = cursor.fetchall() if cursor.description is not None else []
            return BufferedRows(rows, cursor.rowcount)

    def stream(
        self,
        connection: psycopg.Connection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> StreamingRows:
        """Start a query whose rows are read from the server as they are fetched."""
        self._settle(connection, keep=True)
        cursor, query, args = self._cursor_for(connection, handle, signature, params)
        source = StreamingRows(cursor, cursor.stream(query, args))
        source.prime()
        if not source.done:
            with self._streams_lock:
                self._streams[id(connection)] = source
        return source

    def begin_transaction(self, connection: psycopg.Connection, write_access: bool) -> None:
        query = sql.SQL("BEGIN ISOLATION LEVEL {level} {mode}").format(
            level=self._isolation,
            mode=sql.SQL("READ WRITE" if write_access else "READ ONLY"),
        )
        self._settle(connection, keep=True)
        with _translated(connection):
            connection.execute(query).close()

    def finish_transaction(self, connection: psycopg.Connection, commit: bool) -> None:
        # Cancelling a stream aborts the transaction, so only do it ahead of ROLLBACK.
        self._settle(connection, keep=commit)
        with _translated(connection):
            connection.execute(sql.SQL("COMMIT" if commit else "ROLLBACK")).close()

    def _settle(self, connection: psycopg.Connection, keep: bool) -> None:
        """Free the connection from the stream still open on it, if any."""
        with self._streams_lock:
            source = self._streams.pop(id(connection), None)
        if source is None:
            return
        if keep:
            source.detach()
        else:
            source.discard()

    def _cursor_for(
        self,
        connection: psycopg.Connection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> Tuple[psycopg.Cursor, Any, Optional[Tuple[Any, ...]]]:
        args = tuple(params) or None
        if handle is None:
            return psycopg.RawCursor(connection), signature.text, args
        return psycopg.ClientCursor(connection), self._execute_query(handle, len(params)), args

    @staticmethod
    def _execute_query(handle: bytes, arity: int) -> sql.Composable:
        name = sql.Identifier(handle.decode("ascii"))
        if not arity:
            return sql.SQL("EXECUTE {}").format(name)
        placeholders = sql.SQL(", ").join(sql.Placeholder() for _ in range(arity))
        return sql.SQL("EXECUTE {}({})").format(name, placeholders)

    @staticmethod
    def _declared_types(param_types: Sequence[int]) -> sql.Composable:
        """Explicit parameter types, or none at all when any is unknown."""
        names = []
        for oid in param_types:
            info = pg_types.get(oid) if oid else None
            if info is None:
                return sql.SQL("")
            names.append(sql.SQL(info.name))
        if not names:
            return sql.SQL("")
        return sql.SQL(" ({})").format(sql.SQL(", ").join(names))


__all__ = [
    "BufferedRows",
    "CONFLICT_SQLSTATES",
    "PsycopgDriver",
    "StreamingRows",
    "classify_error",
]
