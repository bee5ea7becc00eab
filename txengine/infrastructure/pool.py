"""
Striped connection pool.

Connections are spread over a fixed number of independent stripes, each with
its own capacity, idle list and wait queue (a ``threading.Condition``). An
acquirer is assigned a stripe round-robin and only ever waits on that stripe:
idle connections in other stripes do not satisfy it. This keeps lock
contention per stripe at the cost of balancing.

A daemon reaper thread closes connections that stayed idle longer than the
configured timeout. ``shutdown()`` closes idle connections, fails every
pending and future acquisition with PoolClosedError, and closes in-use
connections as they are released.
"""

from __future__ import annotations

import itertools
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Deque, Generator, List, Optional

from txengine.domain.models import PoolSettings
from txengine.errors import PoolClosedError
from txengine.infrastructure.driver import Driver
from txengine.infrastructure.registry import PreparedStatementRegistry
from txengine.utils.logging import get_logger

log = get_logger(__name__)


class PooledConnection:
    """
    A physical connection checked in and out of the pool.

    Owns the driver-native connection and the prepared statement registry
    whose handles are only valid on it.
    """

    __slots__ = ("native", "stripe", "registry", "last_used", "broken")

    def __init__(self, native: Any, stripe: int) -> None:
        self.native = native
        self.stripe = stripe
        self.registry = PreparedStatementRegistry()
        self.last_used = time.monotonic()
        self.broken = False

    def __repr__(self) -> str:
        return (
            f"PooledConnection(stripe={self.stripe}, prepared={len(self.registry)}, "
            f"broken={self.broken})"
        )


@dataclass(frozen=True)
class StripeStats:
    index: int
    size: int
    idle: int
    waiting: int


class _Stripe:
    def __init__(self, index: int, capacity: int) -> None:
        self.index = index
        self.capacity = capacity
        self.idle: Deque[PooledConnection] = deque()
        # Live connections, including ones in use and ones being opened.
        self.size = 0
        self.waiting = 0
        self.cond = threading.Condition(threading.Lock())


class ConnectionPool:
    """
    Bounded, striped pool of driver connections.

    Parameters
    ----------
    driver : Driver
        Opens and closes the native connections.
    settings : PoolSettings
        Stripe count, per-stripe capacity and idle timeout.

    Example
    -------
        with ConnectionPool(driver, PoolSettings(stripes=2, stripe_size=5)) as pool:
            with pool.connection() as conn:
                ...
    """

    def __init__(self, driver: Driver, settings: Optional[PoolSettings] = None) -> None:
        self._driver = driver
        self._settings = settings or PoolSettings()
        self._stripes = [
            _Stripe(index, self._settings.stripe_size) for index in range(self._settings.stripes)
        ]
        self._next_stripe = itertools.count()
        self._closed = False
        self._stop_reaper = threading.Event()
        self._reaper = threading.Thread(
            target=self._reap_loop, name="txengine-pool-reaper", daemon=True
        )
        self._reaper.start()
        log.debug(
            "Connection pool started",
            extra={
                "stripes": self._settings.stripes,
                "stripe_size": self._settings.stripe_size,
                "idle_timeout": self._settings.idle_timeout,
            },
        )

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self) -> PooledConnection:
        """
        Check out a connection, blocking while the selected stripe is full.

        Raises
        ------
        PoolClosedError
            If the pool is (or becomes, while waiting) shut down.
        DatabaseConnectionError
            If opening a new connection fails. The reserved slot is freed, so
            later acquisitions retry independently.
        """
        stripe = self._stripes[next(self._next_stripe) % len(self._stripes)]
        with stripe.cond:
            while True:
                if self._closed:
                    raise PoolClosedError()
                if stripe.idle:
                    return stripe.idle.pop()
                if stripe.size < stripe.capacity:
                    stripe.size += 1
                    break
                stripe.waiting += 1
                try:
                    stripe.cond.wait()
                finally:
                    stripe.waiting -= 1

        try:
            native = self._driver.connect()
        except BaseException:
            with stripe.cond:
                stripe.size -= 1
                stripe.cond.notify()
            raise

        conn = PooledConnection(native, stripe.index)
        if self._closed:
            self._discard(conn)
            raise PoolClosedError()
        log.debug("Opened connection", extra={"stripe": stripe.index})
        return conn

    def release(self, conn: PooledConnection) -> None:
        """Return a connection; broken ones are closed instead of reused."""
        stripe = self._stripes[conn.stripe]
        with stripe.cond:
            if not (self._closed or conn.broken):
                conn.last_used = time.monotonic()
                stripe.idle.append(conn)
                stripe.cond.notify()
                return
        self._discard(conn)

    @contextmanager
    def connection(self) -> Generator[PooledConnection, None, None]:
        """
        Scoped acquisition: the connection is released on every exit path.
        """
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    def shutdown(self) -> None:
        """Close the pool. Safe to call more than once."""
        idle: List[PooledConnection] = []
        self._closed = True
        for stripe in self._stripes:
            with stripe.cond:
                idle.extend(stripe.idle)
                stripe.size -= len(stripe.idle)
                stripe.idle.clear()
                stripe.cond.notify_all()
        self._stop_reaper.set()
        self._reaper.join(timeout=5.0)
        for conn in idle:
            self._disconnect(conn)
        log.debug("Connection pool shut down", extra={"closed_connections": len(idle)})

    def stats(self) -> List[StripeStats]:
        result = []
        for stripe in self._stripes:
            with stripe.cond:
                result.append(
                    StripeStats(
                        index=stripe.index,
                        size=stripe.size,
                        idle=len(stripe.idle),
                        waiting=stripe.waiting,
                    )
                )
        return result

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _discard(self, conn: PooledConnection) -> None:
        stripe = self._stripes[conn.stripe]
        with stripe.cond:
            stripe.size -= 1
            stripe.cond.notify()
        self._disconnect(conn)

    def _disconnect(self, conn: PooledConnection) -> None:
        try:
            self._driver.disconnect(conn.native)
        except Exception:  # noqa: BLE001 - closing is best-effort, the slot is already freed
            log.warning(
                "Failed to close connection", extra={"stripe": conn.stripe}, exc_info=True
            )

    def _reap_loop(self) -> None:
        interval = min(1.0, max(0.1, self._settings.idle_timeout / 2))
        while not self._stop_reaper.wait(interval):
            self.reap()

    def reap(self) -> int:
        """Close connections idle for longer than the timeout; returns how many."""
        deadline = time.monotonic() - self._settings.idle_timeout
        expired: List[PooledConnection] = []
        for stripe in self._stripes:
            with stripe.cond:
                keep = deque(conn for conn in stripe.idle if conn.last_used > deadline)
                if len(keep) == len(stripe.idle):
                    continue
                expired.extend(conn for conn in stripe.idle if conn.last_used <= deadline)
                stripe.size -= len(stripe.idle) - len(keep)
                stripe.idle = keep
                stripe.cond.notify_all()
        for conn in expired:
            self._disconnect(conn)
        if expired:
            log.debug("Reaped idle connections", extra={"count": len(expired)})
        return len(expired)


__all__ = ["ConnectionPool", "PooledConnection", "StripeStats"]
