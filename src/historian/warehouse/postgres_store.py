"""
PostgreSQL-backed historized table.

Layout (one table per snapshot target):

    surrogate_key  BIGSERIAL PRIMARY KEY
    natural_key    TEXT         -- JSON text of the natural key value
    record         JSONB        -- full row as of the interval
    record_hash    VARCHAR(32)  -- md5 of the tracked values
    valid_from     TIMESTAMPTZ  -- inclusive
    valid_to       TIMESTAMPTZ  -- exclusive, NULL while current
    is_current     BOOLEAN
    run_id, created_at, updated_at

Writers serialize on a transaction-scoped advisory lock keyed by the table
name; a partial unique index guarantees a single open interval per key.
"""

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import psycopg2
from psycopg2 import errors, sql
from psycopg2.extras import Json, RealDictCursor

from historian.config import warehouse_connection_params
from historian.exceptions import WriteConflictError
from historian.records import HistorizedRecord, json_default
from historian.utils.logging_config import get_logger
from historian.warehouse.store import HistoryStore, StoreState, StoreTransaction

logger = get_logger(__name__)

_CONFLICT_ERRORS = (
    errors.LockNotAvailable,
    errors.UniqueViolation,
    errors.SerializationFailure,
    errors.DeadlockDetected,
)


def _dumps(value: Any) -> str:
    return json.dumps(value, default=json_default)


def encode_key(natural_key: Any) -> str:
    """Natural key as stored in the natural_key column."""
    return _dumps(natural_key)


def decode_key(stored: str) -> Any:
    return json.loads(stored)


def connect_warehouse(max_retries: int = 5, retry_delay: float = 5):
    """Connect to the warehouse database, retrying on OperationalError."""
    for attempt in range(max_retries):
        try:
            connection = psycopg2.connect(**warehouse_connection_params())
            connection.autocommit = False
            logger.info("Successfully connected to warehouse_db")
            return connection
        except psycopg2.OperationalError as e:
            logger.warning(f"Connection attempt {attempt + 1} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay)
            else:
                logger.error("Failed to connect to warehouse after all retries")
                raise


class _PostgresTransaction(StoreTransaction):

    def __init__(self, cursor, store: "PostgresHistoryStore", run_id: str):
        self.cursor = cursor
        self.store = store
        self.run_id = run_id

    def close_interval(self, natural_key, expected_valid_from, valid_to):
        self.cursor.execute(sql.SQL("""
            UPDATE {table}
            SET valid_to = %s, is_current = FALSE, updated_at = CURRENT_TIMESTAMP
            WHERE natural_key = %s AND is_current = TRUE AND valid_from = %s
            RETURNING surrogate_key
        """).format(table=self.store.table), (valid_to, encode_key(natural_key), expected_valid_from))

        closed = self.cursor.fetchone()
        if not closed:
            raise WriteConflictError(
                f"Open interval of key {natural_key!r} changed concurrently or no longer exists",
                keys=[natural_key],
            )
        logger.debug(f"Closed record {closed[0]} for key {natural_key!r}")

    def open_interval(self, record):
        self.cursor.execute(sql.SQL("""
            INSERT INTO {table} (
                natural_key, record, record_hash, valid_from, valid_to, is_current, run_id
            ) VALUES (%s, %s, %s, %s, NULL, TRUE, %s)
            RETURNING surrogate_key
        """).format(table=self.store.table), (
            encode_key(record.natural_key),
            Json(record.attributes, dumps=_dumps),
            record.record_hash,
            record.valid_from,
            self.run_id,
        ))

        surrogate_key = self.cursor.fetchone()[0]
        logger.debug(f"Opened record {surrogate_key} for key {record.natural_key!r}")
        return HistorizedRecord(
            natural_key=record.natural_key,
            attributes=record.attributes,
            valid_from=record.valid_from,
            record_hash=record.record_hash,
            surrogate_key=surrogate_key,
            run_id=self.run_id,
        )

    def history(self):
        # Same connection, so the uncommitted writes of this transaction are visible
        with self.store.connection.cursor(cursor_factory=RealDictCursor) as cursor:
            return self.store._select_history(cursor)


class PostgresHistoryStore(HistoryStore):
    """
    Historized table in the warehouse database.

    Args:
        table_name: Target table, optionally schema-qualified ("snapshots.customers_history")
        connection: Existing psycopg2 connection; one is opened from the
            WAREHOUSE_DB_* environment when omitted
        conn_manager: Optional DatabaseConnectionManager that closes the
            connection on graceful shutdown
    """

    def __init__(self, table_name: str, connection=None, conn_manager=None):
        super().__init__(table_name)
        parts = table_name.split('.')
        self.table = sql.Identifier(*parts)
        self._base_name = parts[-1]
        self.connection = connection or connect_warehouse()
        self.connection.autocommit = False
        if conn_manager is not None:
            conn_manager.add_connection(self.connection)

    def _name(self, suffix: str) -> sql.Identifier:
        return sql.Identifier(f"{self._base_name}_{suffix}")

    def ensure_table(self) -> None:
        """Create the historized table, its constraints and indexes if missing."""
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(sql.SQL("""
                    CREATE TABLE IF NOT EXISTS {table} (
                        surrogate_key BIGSERIAL PRIMARY KEY,
                        natural_key TEXT NOT NULL,
                        record JSONB NOT NULL,
                        record_hash VARCHAR(32),
                        valid_from TIMESTAMPTZ NOT NULL,
                        valid_to TIMESTAMPTZ,
                        is_current BOOLEAN NOT NULL DEFAULT TRUE,
                        run_id VARCHAR(100),
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,

                        CONSTRAINT {valid_time_check}
                            CHECK (valid_to IS NULL OR valid_to > valid_from),
                        CONSTRAINT {current_check}
                            CHECK (is_current = (valid_to IS NULL))
                    );

                    CREATE UNIQUE INDEX IF NOT EXISTS {current_unique}
                        ON {table} (natural_key) WHERE is_current;
                    CREATE INDEX IF NOT EXISTS {key_valid_from}
                        ON {table} (natural_key, valid_from);
                    CREATE INDEX IF NOT EXISTS {run_id_idx}
                        ON {table} (run_id);
                """).format(
                    table=self.table,
                    valid_time_check=self._name('valid_time_check'),
                    current_check=self._name('current_check'),
                    current_unique=self._name('current_unique'),
                    key_valid_from=self._name('key_valid_from'),
                    run_id_idx=self._name('run_id'),
                ))
            self.connection.commit()
            logger.info(f"Created/verified historized table {self.table_name}")
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to create historized table {self.table_name}: {e}")
            raise

    def _row_to_record(self, row) -> HistorizedRecord:
        return HistorizedRecord(
            natural_key=decode_key(row['natural_key']),
            attributes=row['record'],
            valid_from=row['valid_from'],
            valid_to=row['valid_to'],
            record_hash=row['record_hash'],
            surrogate_key=row['surrogate_key'],
            run_id=row['run_id'],
        )

    def load_state(self) -> StoreState:
        state = StoreState()
        try:
            with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql.SQL("""
                    SELECT surrogate_key, natural_key, record, record_hash,
                           valid_from, valid_to, run_id
                    FROM {table}
                    WHERE is_current = TRUE
                """).format(table=self.table))
                for row in cursor.fetchall():
                    record = self._row_to_record(row)
                    state.current[record.natural_key] = record
                    state.columns.update(record.attributes)

                cursor.execute(sql.SQL("""
                    SELECT natural_key, MAX(valid_to) AS closed_at
                    FROM {table}
                    GROUP BY natural_key
                    HAVING bool_and(NOT is_current)
                """).format(table=self.table))
                for row in cursor.fetchall():
                    state.closed_until[decode_key(row['natural_key'])] = row['closed_at']
            # End the read-only transaction so writers are not held up by it
            self.connection.commit()
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to read current intervals from {self.table_name}: {e}")
            raise
        return state

    def _select_history(self, cursor, natural_key: Any = None) -> List[HistorizedRecord]:
        query = sql.SQL("""
            SELECT surrogate_key, natural_key, record, record_hash,
                   valid_from, valid_to, run_id
            FROM {table}
            {where}
            ORDER BY natural_key, valid_from
        """)
        params: Optional[tuple] = None
        where = sql.SQL('')
        if natural_key is not None:
            where = sql.SQL('WHERE natural_key = %s')
            params = (encode_key(natural_key),)

        cursor.execute(query.format(table=self.table, where=where), params)
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def history(self, natural_key: Any = None) -> List[HistorizedRecord]:
        try:
            with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                records = self._select_history(cursor, natural_key)
            self.connection.commit()
            return records
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to read history from {self.table_name}: {e}")
            raise

    @contextmanager
    def transaction(self, run_id: str, lock_timeout: float) -> Iterator[StoreTransaction]:
        try:
            with self.connection:
                with self.connection.cursor() as cursor:
                    cursor.execute(
                        "SELECT set_config('lock_timeout', %s, true)",
                        (f"{int(lock_timeout * 1000)}ms",),
                    )
                    cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (self.table_name,))
                    yield _PostgresTransaction(cursor, self, run_id)
        except _CONFLICT_ERRORS as e:
            logger.warning(f"Write conflict on {self.table_name}: {e}")
            raise WriteConflictError(f"Concurrent write on {self.table_name}: {e}") from e
        except psycopg2.Error as e:
            logger.error(f"Transaction on {self.table_name} rolled back: {e}")
            raise

    def close(self) -> None:
        if self.connection and not self.connection.closed:
            self.connection.close()
            logger.info(f"Closed warehouse connection for {self.table_name}")
