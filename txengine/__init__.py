"""
txengine - client-side transaction engine for relational databases.

The package provides:

- A striped connection pool with blocking acquisition and idle-connection reaping
- Per-connection prepared statement registries with monotonic handles
- A transaction executor that runs single statements directly, wraps multi-statement
  work in transactions and retries serialization conflicts
- Result streams bound to the lifetime of the transaction that produced them
- A psycopg-based PostgreSQL driver and a pydantic-aware row codec
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from txengine.config import Settings, build_dsn, get_settings
from txengine.domain import Codec, DefaultCodec, PoolSettings, Statement, StatementSignature
from txengine.errors import (
    BackendError,
    DatabaseConnectionError,
    EngineError,
    ParsingError,
    PoolClosedError,
    StreamClosedError,
    TransactionClosedError,
    TransactionConflictError,
)
from txengine.infrastructure import (
    ConnectionPool,
    Driver,
    PooledConnection,
    PreparedStatementRegistry,
    PsycopgDriver,
    RowBatchSource,
)
from txengine.transaction import (
    AdminTransaction,
    Create,
    Insert,
    ReadTransaction,
    ResultStream,
    Select,
    TransactionExecutor,
    Update,
    WriteTransaction,
)
from txengine.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "build_dsn",
    "get_settings",
    "PoolSettings",
    # Statements and conversion
    "Codec",
    "DefaultCodec",
    "Statement",
    "StatementSignature",
    # Errors
    "BackendError",
    "DatabaseConnectionError",
    "EngineError",
    "ParsingError",
    "PoolClosedError",
    "StreamClosedError",
    "TransactionClosedError",
    "TransactionConflictError",
    # Connections
    "ConnectionPool",
    "Driver",
    "PooledConnection",
    "PreparedStatementRegistry",
    "PsycopgDriver",
    "RowBatchSource",
    # Transactions
    "AdminTransaction",
    "Create",
    "Insert",
    "ReadTransaction",
    "ResultStream",
    "Select",
    "TransactionExecutor",
    "Update",
    "WriteTransaction",
    # Logging
    "configure_logging",
    "get_logger",
]
