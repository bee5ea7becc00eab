"""
Infrastructure package for txengine.

Centralizes connection concerns: the driver contract, the PostgreSQL driver,
the striped connection pool and the per-connection prepared statement
registry. Keep this layer focused on I/O and resource management, decoupled
from transaction semantics.
"""

from txengine.infrastructure.driver import Driver, RowBatchSource
from txengine.infrastructure.pool import ConnectionPool, PooledConnection, StripeStats
from txengine.infrastructure.postgres import PsycopgDriver
from txengine.infrastructure.registry import PreparedStatementRegistry

__all__ = [
    "ConnectionPool",
    "Driver",
    "PooledConnection",
    "PreparedStatementRegistry",
    "PsycopgDriver",
    "RowBatchSource",
    "StripeStats",
]
