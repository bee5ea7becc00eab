"""
Transaction executor for txengine.

Runs a unit of work on a pooled connection:

    executor = TransactionExecutor(pool)

    # A single operation runs directly, with no BEGIN/COMMIT.
    rows = executor.read(Select(Statement("SELECT id, name FROM users WHERE id = $1", (7,))))

    # A callable always runs inside a transaction and is retried from scratch
    # on serialization conflicts.
    def transfer(tx: WriteTransaction) -> int:
        tx.update(Statement("UPDATE accounts SET balance = balance - $1 WHERE id = $2", (10, 1)))
        return tx.update(Statement("UPDATE accounts SET balance = balance + $1 WHERE id = $2", (10, 2)))

    executor.write(transfer)

The handle passed to a callable is only valid for the attempt it was created
for, and so are the ResultStreams it produces: using either after the attempt
ends raises TransactionClosedError / StreamClosedError.
"""

from __future__ import annotations

import abc
import functools
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Deque,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, stop_never, wait_none

from txengine.domain.codec import Codec, DefaultCodec, RowTarget
from txengine.domain.models import Statement, StatementSignature
from txengine.errors import (
    BackendError,
    DatabaseConnectionError,
    EngineError,
    StreamClosedError,
    TransactionClosedError,
    TransactionConflictError,
)
from txengine.infrastructure.driver import Driver, RowBatchSource
from txengine.infrastructure.pool import ConnectionPool, PooledConnection
from txengine.utils.logging import get_logger

log = get_logger(__name__)

R = TypeVar("R")
T = TypeVar("T")

DEFAULT_FETCH_BATCH_SIZE = 256


class _Scope:
    """Liveness flag shared by everything created during one attempt."""

    __slots__ = ("open",)

    def __init__(self) -> None:
        self.open = True

    def close(self) -> None:
        self.open = False


class ResultStream(Generic[T]):
    """
    Forward-only, lazily fetched sequence of decoded rows.

    Rows are pulled from the driver in batches as the stream is consumed.
    The stream belongs to the transaction attempt that produced it; reading
    it afterwards raises StreamClosedError, even for rows already fetched.
    """

    def __init__(
        self,
        source: RowBatchSource,
        codec: Codec,
        into: RowTarget,
        scope: _Scope,
        batch_size: int,
    ) -> None:
        self._source = source
        self._codec = codec
        self._into = into
        self._scope = scope
        self._batch_size = batch_size
        self._buffer: Deque[Tuple[Any, ...]] = deque()
        self._exhausted = False

    def __iter__(self) -> "ResultStream[T]":
        return self

    def __next__(self) -> T:
        if not self._scope.open:
            raise StreamClosedError()
        if not self._buffer:
            if self._exhausted:
                raise StopIteration
            batch = _guard(self._source.fetch, self._batch_size)
            if not batch:
                self._exhausted = True
                raise StopIteration
            self._buffer.extend(batch)
        return self._codec.decode_row(self._buffer.popleft(), self._into)

    def all(self) -> List[T]:
        """Consume the remaining rows into a list."""
        return list(self)

    def first(self) -> Optional[T]:
        """Return the next row, or None when the stream is exhausted."""
        return next(self, None)


def _guard(call: Callable[..., R], *args: Any) -> R:
    """Invoke a driver operation, wrapping failures outside the taxonomy."""
    try:
        return call(*args)
    except EngineError:
        raise
    except Exception as exc:
        raise BackendError(exc) from exc


class _Session:
    """Statement execution against one checked-out connection for one attempt."""

    def __init__(
        self,
        conn: PooledConnection,
        driver: Driver,
        codec: Codec,
        scope: _Scope,
        batch_size: int,
    ) -> None:
        self._conn = conn
        self._driver = driver
        self._codec = codec
        self._scope = scope
        self._batch_size = batch_size

    def run(
        self, statement: Statement, cacheable: bool = True, streaming: bool = False
    ) -> RowBatchSource:
        if not self._scope.open:
            raise TransactionClosedError()
        type_ids, params = self._codec.encode_params(statement.params)
        signature = StatementSignature(statement.text, type_ids)
        native = self._conn.native

        def on_miss(handle: bytes) -> Tuple[bool, Optional[bytes]]:
            if not (cacheable and statement.preparable):
                return False, None
            _guard(self._driver.prepare, native, handle, signature)
            log.debug("Prepared statement", extra={"handle": handle.decode("ascii")})
            return True, handle

        handle = self._conn.registry.resolve(signature, on_miss, lambda existing: existing)
        call = self._driver.stream if streaming else self._driver.execute
        return _guard(call, native, handle, signature, params)

    def select(self, statement: Statement, into: RowTarget) -> ResultStream[Any]:
        source = self.run(statement, streaming=True)
        return ResultStream(source, self._codec, into, self._scope, self._batch_size)

    def update(self, statement: Statement) -> int:
        return self.run(statement).rowcount

    def insert(self, statement: Statement) -> Optional[int]:
        rows = _guard(self.run(statement).fetch, 1)
        if not rows or not rows[0]:
            return None
        return rows[0][0]

    def create(self, statement: Statement) -> None:
        # Schema statements cannot be prepared server-side.
        self.run(statement, cacheable=False)


# Transaction handles, one class per privilege level.


class ReadTransaction:
    """Handle for read transactions: only ``select`` is available."""

    def __init__(self, session: _Session) -> None:
        self._session = session

    def select(self, statement: Statement, into: RowTarget = tuple) -> ResultStream[Any]:
        """Execute a query and stream its rows decoded into ``into``."""
        return self._session.select(statement, into)


class WriteTransaction(ReadTransaction):
    """Adds ``update`` and ``insert`` (UPDATE, INSERT, DELETE)."""

    def update(self, statement: Statement) -> int:
        """Execute and return the number of affected rows."""
        return self._session.update(statement)

    def insert(self, statement: Statement) -> Optional[int]:
        """Execute and return the first returned column (e.g. ``RETURNING id``)."""
        return self._session.insert(statement)


class AdminTransaction(WriteTransaction):
    """Adds ``create`` for CREATE, ALTER, DROP and TRUNCATE."""

    def create(self, statement: Statement) -> None:
        self._session.create(statement)


TransactionHandle = Union[ReadTransaction, WriteTransaction, AdminTransaction]


# Operations: self-describing single statements.


class Operation(abc.ABC, Generic[R]):
    """A single statement execution that can run outside a transaction."""

    mutates: bool = True

    @abc.abstractmethod
    def apply(self, session: _Session) -> R:  # pragma: no cover - interface only
        raise NotImplementedError


@dataclass(frozen=True)
class Select(Operation[List[Any]]):
    """Run a query and return all decoded rows."""

    statement: Statement
    into: RowTarget = tuple
    mutates = False

    def apply(self, session: _Session) -> List[Any]:
        return session.select(self.statement, self.into).all()


@dataclass(frozen=True)
class Update(Operation[int]):
    statement: Statement

    def apply(self, session: _Session) -> int:
        return session.update(self.statement)


@dataclass(frozen=True)
class Insert(Operation[Optional[int]]):
    statement: Statement

    def apply(self, session: _Session) -> Optional[int]:
        return session.insert(self.statement)


@dataclass(frozen=True)
class Create(Operation[None]):
    statement: Statement

    def apply(self, session: _Session) -> None:
        session.create(self.statement)


Work = Union[Operation[Any], Sequence[Operation[Any]], Callable[[Any], Any]]


def plan(
    work: Work, write_access: bool, level: Type[ReadTransaction]
) -> Tuple[bool, Callable[[_Session], Any]]:
    """
    Decide from the shape of ``work`` whether it needs a transaction wrapper.

    Returns ``(in_transaction, runner)``. A lone operation runs directly,
    except a mutating one under read-only access, which is wrapped in a
    read-only transaction so that the server rejects it. Two or more
    operations, or any callable, always run inside a transaction.
    """
    if isinstance(work, Operation):
        return work.mutates and not write_access, work.apply
    if isinstance(work, (list, tuple)):
        operations = list(work)
        for operation in operations:
            if not isinstance(operation, Operation):
                raise TypeError(f"Expected Operation, got {type(operation).__name__}")
        if len(operations) == 1:
            in_transaction, runner = plan(operations[0], write_access, level)
            return in_transaction, lambda session: [runner(session)]
        return len(operations) > 1, lambda session: [op.apply(session) for op in operations]
    if callable(work):
        return True, lambda session: work(level(session))
    raise TypeError(f"Unsupported unit of work: {type(work).__name__}")


class TransactionExecutor:
    """
    Executes units of work on a connection pool.

    Parameters
    ----------
    pool : ConnectionPool
        Source of connections; the pool's driver is used for every call.
    codec : Codec, optional
        Parameter/row conversion. Defaults to DefaultCodec.
    fetch_batch_size : int
        Rows fetched per round trip by result streams.
    conflict_retry_limit : int, optional
        Maximum attempts for a conflicting transaction. None retries until the
        transaction goes through.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        codec: Optional[Codec] = None,
        fetch_batch_size: int = DEFAULT_FETCH_BATCH_SIZE,
        conflict_retry_limit: Optional[int] = None,
    ) -> None:
        if fetch_batch_size < 1:
            raise ValueError("fetch_batch_size must be at least 1")
        self._pool = pool
        self._driver: Driver = pool.driver
        self._codec = codec or DefaultCodec()
        self._batch_size = fetch_batch_size
        self._conflict_retry_limit = conflict_retry_limit

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def read(self, work: Work) -> Any:
        """Run ``work`` with read-only access; callables get a ReadTransaction."""
        return self.transaction(work, write_access=False, level=ReadTransaction)

    def write(self, work: Work) -> Any:
        """Run ``work`` with write access; callables get a WriteTransaction."""
        return self.transaction(work, write_access=True, level=WriteTransaction)

    def admin(self, work: Work) -> Any:
        """Like write(), but callables may also run schema statements."""
        return self.transaction(work, write_access=True, level=AdminTransaction)

    def transaction(
        self,
        work: Work,
        write_access: bool,
        level: Type[ReadTransaction] = AdminTransaction,
    ) -> Any:
        """
        Run a unit of work and return its result.

        Conflicts are retried from scratch, on the direct path as well as in
        transactions; any other exception rolls the transaction back and
        propagates unchanged. Every attempt checks a connection out and
        returns it before the next one starts, so an attempt that leaves its
        connection broken is retried on a healthy one (usually the same
        connection comes back, idle reuse being most-recent-first).
        """
        in_transaction, runner = plan(work, write_access, level)
        if in_transaction:
            attempt = functools.partial(self._run_attempt, runner=runner, write_access=write_access)
        else:
            attempt = functools.partial(self._run_direct, runner=runner)
        return self._retrying()(self._on_connection, attempt)

    def _on_connection(self, attempt: Callable[[PooledConnection], R]) -> R:
        with self._pool.connection() as conn:
            try:
                return attempt(conn)
            except DatabaseConnectionError:
                conn.broken = True
                raise

    def _retrying(self) -> Retrying:
        stop = stop_never if self._conflict_retry_limit is None else stop_after_attempt(
            self._conflict_retry_limit
        )
        return Retrying(
            retry=retry_if_exception_type(TransactionConflictError),
            stop=stop,
            wait=wait_none(),
            before_sleep=_log_conflict,
            reraise=True,
        )

    def _session(self, conn: PooledConnection, scope: _Scope) -> _Session:
        return _Session(conn, self._driver, self._codec, scope, self._batch_size)

    def _run_direct(self, conn: PooledConnection, runner: Callable[[_Session], R]) -> R:
        scope = _Scope()
        try:
            return runner(self._session(conn, scope))
        finally:
            scope.close()

    def _run_attempt(
        self, conn: PooledConnection, runner: Callable[[_Session], R], write_access: bool
    ) -> R:
        scope = _Scope()
        try:
            _guard(self._driver.begin_transaction, conn.native, write_access)
            result = runner(self._session(conn, scope))
            _guard(self._driver.finish_transaction, conn.native, True)
            return result
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            scope.close()

    def _rollback(self, conn: PooledConnection) -> None:
        """Roll back without masking the error that caused it."""
        try:
            self._driver.finish_transaction(conn.native, False)
        except Exception:  # noqa: BLE001 - the original error is the one to surface
            conn.broken = True
            log.warning(
                "Rollback failed; discarding connection",
                extra={"stripe": conn.stripe},
                exc_info=True,
            )


def _log_conflict(retry_state: Any) -> None:
    log.debug(
        "Transaction conflict, retrying",
        extra={"attempt": retry_state.attempt_number},
    )


__all__ = [
    "AdminTransaction",
    "Create",
    "Insert",
    "Operation",
    "ReadTransaction",
    "ResultStream",
    "Select",
    "TransactionExecutor",
    "TransactionHandle",
    "Update",
    "Work",
    "WriteTransaction",
    "plan",
]
