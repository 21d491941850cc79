"""
Snowflake connection management and the relational store gateway.

Provides the connection factory, a RelationalStore wrapper for
transactional multi-statement work and batched inserts, and a mock
connection with real commit/rollback semantics for local development.

Most code never touches this module directly - it goes through
AssetRepository, which owns the SQL.
"""

import base64
import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Iterable, Optional, Protocol, Sequence

from ...core.errors import ConfigurationError, PersistenceError

logger = logging.getLogger(__name__)


class SnowflakeConnection(Protocol):
    """
    Protocol for DB-API connections.

    Using a protocol means tests can provide a mock without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...
    def rollback(self) -> None: ...
    def autocommit(self, mode: bool) -> None: ...
    def close(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_base64: Optional[str] = None
    database: str = "FIELDCAPTURE"
    schema: str = "UPLOADS"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None
    login_timeout: int = 30
    network_timeout: int = 60


def _der_private_key(pem_bytes: bytes) -> bytes:
    """
    Convert a PEM private key into the DER bytes snowflake-connector expects.
    """
    from cryptography.hazmat.primitives import serialization

    private_key = serialization.load_pem_private_key(
        pem_bytes,
        password=None,  # No password on the key
    )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


def _load_private_key(config: SnowflakeConfig) -> Optional[bytes]:
    """Load the key-pair credential from a file or a base64 setting."""
    if config.private_key_path:
        with open(config.private_key_path, 'rb') as key_file:
            return _der_private_key(key_file.read())
    if config.private_key_base64:
        return _der_private_key(base64.b64decode(config.private_key_base64))
    return None


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports both password and key-pair authentication. Only failures to
    connect are translated to PersistenceError; exceptions raised by the
    caller inside the with block pass through untouched.

    Usage:
        with get_snowflake_connection(config) as conn:
            store = RelationalStore(conn)
    """
    import snowflake.connector

    connect_params = {
        'account': config.account,
        'user': config.user,
        'database': config.database,
        'schema': config.schema,
        'warehouse': config.warehouse,
        'role': config.role,
        'login_timeout': config.login_timeout,
        'network_timeout': config.network_timeout,
    }

    private_key = _load_private_key(config)
    if private_key is not None:
        logger.info("Using key-pair authentication for Snowflake")
        connect_params['private_key'] = private_key
    elif config.password:
        logger.info("Using password authentication for Snowflake")
        connect_params['password'] = config.password
    else:
        raise ConfigurationError("Database credentials are not configured")

    try:
        conn = snowflake.connector.connect(**connect_params)
    except snowflake.connector.errors.Error as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise PersistenceError("Database connection failed")

    logger.debug(
        "Established Snowflake connection",
        extra={
            "account": config.account,
            "database": config.database,
            "schema": config.schema,
        }
    )

    try:
        yield conn
    finally:
        try:
            conn.close()
            logger.debug("Closed Snowflake connection")
        except Exception as e:
            logger.warning(
                "Error closing Snowflake connection",
                extra={"error": str(e)}
            )


# ---------------------------------------------------------------------------
# Relational Store Gateway
# ---------------------------------------------------------------------------

class RelationalStore:
    """
    Thin gateway over a DB-API connection.

    transaction() turns auto-commit off for its duration and either commits
    everything executed inside it or rolls all of it back. insert_batch()
    sends a parameterized insert for many rows as one executemany call.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """
        Run a block of statements atomically.

        Yields a cursor. Any exception raised in the block rolls the whole
        transaction back and is re-raised to the caller.
        """
        self._conn.autocommit(False)
        cursor = self._conn.cursor()
        try:
            yield cursor
            self._conn.commit()
            logger.debug("Transaction committed")
        except BaseException:
            self._rollback()
            raise
        finally:
            try:
                cursor.close()
            finally:
                self._restore_autocommit()

    @contextmanager
    def read(self) -> Generator[Any, None, None]:
        """Yield a cursor for read-only statements."""
        cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def execute(self, cursor, statement: str, params: Optional[Sequence] = None) -> int:
        """Execute one statement and return the affected row count."""
        cursor.execute(statement, params)
        return cursor.rowcount or 0

    def insert_batch(self, cursor, statement: str, rows: Iterable[Sequence]) -> int:
        """
        Insert many rows with a single batched call.

        Returns the number of rows sent. An empty batch is not sent at all.
        """
        batch = list(rows)
        if not batch:
            return 0
        cursor.executemany(statement, batch)
        return len(batch)

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
            logger.warning("Transaction rolled back")
        except Exception as e:
            # The server discards uncommitted work when the session ends
            logger.error(
                "Rollback failed",
                extra={"error": str(e)}
            )

    def _restore_autocommit(self) -> None:
        try:
            self._conn.autocommit(True)
        except Exception as e:
            logger.warning(
                "Could not restore auto-commit",
                extra={"error": str(e)}
            )


# ---------------------------------------------------------------------------
# Mock Connection for Local Development
# ---------------------------------------------------------------------------

class MockDatabaseError(Exception):
    """Raised by the mock connection for constraint violations and injected faults."""
    pass


class MockSnowflakeCursor:
    """
    Mock Snowflake cursor for testing.

    Implements just enough of the cursor interface to support
    AssetRepository without a real database. Statements are recognized by
    table name and verb; parameters are positional, in the order the
    repository binds them.
    """

    def __init__(self, connection: 'MockSnowflakeConnection') -> None:
        self._conn = connection
        self._results: list = []
        self._rowcount: int = 0

    def execute(self, query: str, params: Optional[Sequence] = None) -> 'MockSnowflakeCursor':
        """Execute a query against mock storage."""
        logger.debug(
            "Mock cursor execute",
            extra={"query": query[:100]}
        )

        query_upper = " ".join(query.upper().split())
        self._results = []
        self._rowcount = 0

        if query_upper.startswith('CREATE'):
            return self

        if query_upper.startswith('SELECT 1'):
            self._results = [(1,)]
            return self

        if query_upper.startswith('SELECT'):
            tables = self._conn._tables_for_read()
            self._conn._maybe_fail(query_upper)
            if 'FROM ASSETS' in query_upper:
                row = tables['assets'].get(str(params[0]))
                self._results = [row] if row else []
            elif 'FROM TELEMETRY_POINTS' in query_upper:
                rows = [row for row in tables['telemetry_points'] if row[0] == str(params[0])]
                self._results = sorted(rows, key=lambda row: row[1])
            return self

        # Writes wait for any other thread's open transaction
        with self._conn._lock:
            tables = self._conn._tables_for_write()
            self._conn._maybe_fail(query_upper)
            if 'MERGE INTO ASSETS' in query_upper:
                self._merge_asset(tables, params)
            elif 'INSERT INTO TELEMETRY_POINTS' in query_upper:
                self._insert_point(tables, params)

        return self

    def executemany(self, query: str, seq_of_params: Iterable[Sequence]) -> 'MockSnowflakeCursor':
        """Execute a statement once per parameter set, as one batch."""
        total = 0
        for params in seq_of_params:
            self.execute(query, params)
            total += self._rowcount
        self._rowcount = total
        return self

    def _merge_asset(self, tables: dict, params: Sequence) -> None:
        """Insert-if-absent keyed on asset_id."""
        asset_id = str(params[0])
        if asset_id in tables['assets']:
            self._rowcount = 0
            return
        tables['assets'][asset_id] = tuple(params[1:])
        self._rowcount = 1

    def _insert_point(self, tables: dict, params: Sequence) -> None:
        asset_id = str(params[0])
        if asset_id not in tables['assets']:
            raise MockDatabaseError(f"Foreign key violation: asset {asset_id} does not exist")
        tables['telemetry_points'].append(tuple(params))
        self._rowcount = 1

    def fetchone(self):
        """Fetch one row from results."""
        if not self._results:
            return None
        return self._results[0]

    def fetchall(self) -> list:
        """Fetch all rows from results."""
        return list(self._results)

    def close(self) -> None:
        """Close cursor (no-op for mock)."""
        pass

    @property
    def rowcount(self) -> int:
        """Return number of rows affected."""
        return self._rowcount


class MockSnowflakeConnection:
    """
    Mock Snowflake connection for local development.

    Stores rows in memory. With auto-commit off, writes go to a working
    copy that commit() publishes and rollback() discards, so atomicity can
    be tested without a real database.

    One instance may be shared across threads. Turning auto-commit off
    takes a lock that is held until it is turned back on, so transactions
    run one at a time and other threads read only committed rows.

    Not suitable for production, but perfect for:
    - Local development
    - Unit tests
    - CI/CD environments
    """

    def __init__(self) -> None:
        # assets: {asset_id: row}, telemetry_points: [row, ...]
        self._storage: dict[str, Any] = {
            'assets': {},
            'telemetry_points': [],
        }
        self._working: Optional[dict[str, Any]] = None
        self._lock = threading.RLock()
        self._owner: Optional[int] = None
        self._fail_on: Optional[str] = None
        self.commit_count = 0
        self.rollback_count = 0

        logger.info("Initialized mock Snowflake connection (in-memory)")

    def cursor(self) -> MockSnowflakeCursor:
        """Create a mock cursor."""
        return MockSnowflakeCursor(self)

    @property
    def _autocommit(self) -> bool:
        return not self._in_transaction()

    def autocommit(self, mode: bool) -> None:
        if not mode:
            if not self._in_transaction():
                self._lock.acquire()
                self._owner = threading.get_ident()
            return
        if not self._in_transaction():
            return
        if self._working is not None:
            # Switching auto-commit back on commits pending work, as Snowflake does
            self.commit()
        self._end_transaction()

    def commit(self) -> None:
        if self._working is not None:
            self._storage = self._working
            self._working = None
        self.commit_count += 1
        logger.debug("Mock connection commit")

    def rollback(self) -> None:
        self._working = None
        self.rollback_count += 1
        logger.debug("Mock connection rollback")

    def close(self) -> None:
        """Close connection, discarding uncommitted work."""
        if self._in_transaction():
            self._working = None
            self._end_transaction()
        logger.debug("Mock connection close")

    def _in_transaction(self) -> bool:
        return self._owner == threading.get_ident()

    def _end_transaction(self) -> None:
        self._owner = None
        self._lock.release()

    def _tables_for_write(self) -> dict[str, Any]:
        if not self._in_transaction():
            return self._storage
        if self._working is None:
            self._working = copy.deepcopy(self._storage)
        return self._working

    def _tables_for_read(self) -> dict[str, Any]:
        if self._in_transaction() and self._working is not None:
            return self._working
        return self._storage

    def _maybe_fail(self, query_upper: str) -> None:
        if self._fail_on and self._fail_on in query_upper:
            self._fail_on = None
            raise MockDatabaseError("Injected failure")

    # Helper methods for testing
    def _fail_next(self, table: str) -> None:
        """Make the next statement touching table raise (for rollback tests)."""
        self._fail_on = table.upper()

    def _count(self, table: str) -> int:
        """Committed row count for a table (for test assertions)."""
        return len(self._storage[table])

    def _clear(self) -> None:
        """Clear all mock storage (for test cleanup)."""
        self._storage = {'assets': {}, 'telemetry_points': []}
        self._working = None


@contextmanager
def get_mock_snowflake_connection() -> Generator[MockSnowflakeConnection, None, None]:
    """
    Provide mock Snowflake connection for local development.

    Returns a connection that stores data in memory.
    """
    conn = MockSnowflakeConnection()
    try:
        yield conn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

@contextmanager
def create_snowflake_connection(
    config: Optional[SnowflakeConfig] = None,
    mock_mode: bool = False,
) -> Generator[SnowflakeConnection, None, None]:
    """
    Create Snowflake connection based on configuration.

    Args:
        config: Snowflake configuration (required if not mock_mode)
        mock_mode: If True, return mock connection for testing

    Yields:
        SnowflakeConnection implementation (real or mock)
    """
    if mock_mode:
        with get_mock_snowflake_connection() as conn:
            yield conn
    else:
        if config is None:
            raise ConfigurationError("Database is not configured")

        with get_snowflake_connection(config) as conn:
            yield conn
