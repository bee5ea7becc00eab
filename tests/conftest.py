"""
Pytest configuration for txengine.

Provides fixtures for:
- An in-memory fake driver that records every call, enforces read-only
  transactions, tracks committed effects and raises scripted failures
- Pools and executors wired to the fake driver
- Settings and DSN for PostgreSQL integration tests
"""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, Generator, List, Optional, Sequence, Tuple

import psycopg
import pytest

from txengine.config import Settings, build_dsn
from txengine.domain.models import PoolSettings, StatementSignature
from txengine.errors import BackendError
from txengine.infrastructure.pool import ConnectionPool
from txengine.transaction import TransactionExecutor


class FakeRows:
    """RowBatchSource over a list of rows, counting fetch round trips."""

    def __init__(self, rows: Sequence[Tuple[Any, ...]], rowcount: Optional[int] = None) -> None:
        self._rows = list(rows)
        self.rowcount = len(self._rows) if rowcount is None else rowcount
        self.fetches = 0

    def fetch(self, size: int) -> List[Tuple[Any, ...]]:
        self.fetches += 1
        batch, self._rows = self._rows[:size], self._rows[size:]
        return batch


class FakeNativeConnection:
    def __init__(self, ident: int) -> None:
        self.ident = ident
        self.prepared: Dict[bytes, StatementSignature] = {}
        self.in_transaction = False
        self.read_only = False
        self.pending: List[Tuple[str, Tuple[Any, ...]]] = []
        self.closed = False


class FakeDriver:
    """
    In-memory Driver.

    - ``results[text]`` supplies rows for SELECT (and INSERT ... RETURNING).
    - ``failures[text]`` is a queue of exceptions raised by execute() or
      stream(), one per call. Both record their calls, under their own names.
    - ``prepare_failures[text]`` likewise for prepare().
    - ``connect_failures``, ``commit_failures`` and ``rollback_failures`` are
      queues consumed by the matching operations.
    - Mutations outside a transaction are committed immediately; inside one
      they are committed by finish_transaction(commit=True) only.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.connections: List[FakeNativeConnection] = []
        self.disconnected: List[FakeNativeConnection] = []
        self.committed: List[Tuple[str, Tuple[Any, ...]]] = []
        self.results: Dict[str, List[Tuple[Any, ...]]] = {}
        self.failures: Dict[str, List[BaseException]] = {}
        self.prepare_failures: Dict[str, List[BaseException]] = {}
        self.connect_failures: List[BaseException] = []
        self.commit_failures: List[BaseException] = []
        self.rollback_failures: List[BaseException] = []
        self.sources: List[FakeRows] = []
        self._lock = threading.Lock()

    def kinds(self) -> List[str]:
        return [call[0] for call in self.calls]

    def connect(self) -> FakeNativeConnection:
        with self._lock:
            self.calls.append(("connect",))
            if self.connect_failures:
                raise self.connect_failures.pop(0)
            conn = FakeNativeConnection(len(self.connections))
            self.connections.append(conn)
            return conn

    def disconnect(self, connection: FakeNativeConnection) -> None:
        with self._lock:
            connection.closed = True
            self.disconnected.append(connection)

    def prepare(
        self, connection: FakeNativeConnection, handle: bytes, signature: StatementSignature
    ) -> None:
        self.calls.append(("prepare", handle, signature.text))
        queue = self.prepare_failures.get(signature.text)
        if queue:
            raise queue.pop(0)
        assert handle not in connection.prepared, "handle reused on the same connection"
        connection.prepared[handle] = signature

    def execute(
        self,
        connection: FakeNativeConnection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> FakeRows:
        return self._run("execute", connection, handle, signature, params)

    def stream(
        self,
        connection: FakeNativeConnection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> FakeRows:
        return self._run("stream", connection, handle, signature, params)

    def _run(
        self,
        kind: str,
        connection: FakeNativeConnection,
        handle: Optional[bytes],
        signature: StatementSignature,
        params: Sequence[Any],
    ) -> FakeRows:
        self.calls.append((kind, handle, signature.text, tuple(params)))
        if handle is not None:
            assert connection.prepared[handle] == signature
        queue = self.failures.get(signature.text)
        if queue:
            raise queue.pop(0)

        verb = signature.text.split(None, 1)[0].upper()
        rows = self.results.get(signature.text, [])
        if verb == "SELECT":
            source = FakeRows(rows)
            self.sources.append(source)
            return source
        if connection.in_transaction and connection.read_only:
            raise BackendError(f"cannot execute {verb} in a read-only transaction")
        effect = (signature.text, tuple(params))
        if connection.in_transaction:
            connection.pending.append(effect)
        else:
            self.committed.append(effect)
        return FakeRows(rows, rowcount=1)

    def begin_transaction(self, connection: FakeNativeConnection, write_access: bool) -> None:
        self.calls.append(("begin", write_access))
        connection.in_transaction = True
        connection.read_only = not write_access

    def finish_transaction(self, connection: FakeNativeConnection, commit: bool) -> None:
        self.calls.append(("commit",) if commit else ("rollback",))
        if not commit and self.rollback_failures:
            raise self.rollback_failures.pop(0)
        if commit and self.commit_failures:
            connection.pending.clear()
            connection.in_transaction = False
            raise self.commit_failures.pop(0)
        if commit:
            self.committed.extend(connection.pending)
        connection.pending.clear()
        connection.in_transaction = False


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def pool(fake_driver: FakeDriver) -> Generator[ConnectionPool, None, None]:
    pool = ConnectionPool(fake_driver, PoolSettings(stripes=1, stripe_size=2, idle_timeout=60))
    try:
        yield pool
    finally:
        pool.shutdown()


@pytest.fixture
def executor(pool: ConnectionPool) -> TransactionExecutor:
    return TransactionExecutor(pool, fetch_batch_size=2)


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "txengine"),
        log_level="DEBUG",
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    return build_dsn(test_settings)


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            conn.execute("SELECT 1;").fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture
def postgres_dsn(test_dsn: str, db_connection_available: bool) -> str:
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")
    return test_dsn
