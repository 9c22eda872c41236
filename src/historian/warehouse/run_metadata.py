"""
Snapshot run metadata.

Records every run (status, change counts, attempts, failure kind and the
natural keys it implicated) for monitoring and debugging.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor

from historian.records import json_default
from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


class RunLog:
    """Keeps run records in memory; the base for persistent ledgers."""

    def __init__(self):
        self.runs: List[Dict[str, Any]] = []

    def start_run(self, snapshot_name: str, run_id: str, target_table: str, started_at: datetime) -> None:
        self.runs.append({
            'snapshot_name': snapshot_name,
            'run_id': run_id,
            'target_table': target_table,
            'start_time': started_at,
            'end_time': None,
            'status': 'running',
        })

    def finish_run(self, run_id: str, **fields: Any) -> None:
        for run in reversed(self.runs):
            if run['run_id'] == run_id:
                run.update(fields)
                if run['end_time'] is None:
                    run['end_time'] = datetime.now(timezone.utc)
                return
        logger.warning(f"No run record found for {run_id}")

    def last_run(self, snapshot_name: str) -> Optional[Dict[str, Any]]:
        for run in reversed(self.runs):
            if run['snapshot_name'] == snapshot_name:
                return dict(run)
        return None


class PostgresRunLog(RunLog):
    """Run ledger stored in the snapshot_run_metadata table of the warehouse."""

    TABLE = 'snapshot_run_metadata'

    def __init__(self, connection):
        super().__init__()
        self.connection = connection
        self._create_metadata_table()

    def _create_metadata_table(self) -> None:
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(sql.SQL("""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id BIGSERIAL PRIMARY KEY,
                        snapshot_name VARCHAR(100) NOT NULL,
                        run_id VARCHAR(100) NOT NULL UNIQUE,
                        target_table VARCHAR(200) NOT NULL,
                        start_time TIMESTAMPTZ NOT NULL,
                        end_time TIMESTAMPTZ,
                        status VARCHAR(20) NOT NULL DEFAULT 'running',
                        records_in INTEGER DEFAULT 0,
                        inserted INTEGER DEFAULT 0,
                        updated INTEGER DEFAULT 0,
                        deleted INTEGER DEFAULT 0,
                        unchanged INTEGER DEFAULT 0,
                        attempts INTEGER DEFAULT 0,
                        error_kind VARCHAR(50),
                        error_message TEXT,
                        implicated_keys JSONB,
                        created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,

                        CONSTRAINT snapshot_run_metadata_status_check
                            CHECK (status IN ('running', 'completed', 'failed'))
                    );

                    CREATE INDEX IF NOT EXISTS idx_snapshot_run_metadata_name
                        ON {table}(snapshot_name);
                    CREATE INDEX IF NOT EXISTS idx_snapshot_run_metadata_start_time
                        ON {table}(start_time);
                """).format(table=sql.Identifier(self.TABLE)))
            self.connection.commit()
            logger.info("Created/verified snapshot_run_metadata table")
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to create snapshot_run_metadata table: {e}")
            raise

    def start_run(self, snapshot_name, run_id, target_table, started_at):
        super().start_run(snapshot_name, run_id, target_table, started_at)
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(sql.SQL("""
                    INSERT INTO {table} (snapshot_name, run_id, target_table, start_time, status)
                    VALUES (%s, %s, %s, %s, 'running')
                """).format(table=sql.Identifier(self.TABLE)),
                    (snapshot_name, run_id, target_table, started_at))
            self.connection.commit()
            logger.debug(f"Started run record {run_id} for {snapshot_name}")
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to record start of run {run_id}: {e}")
            raise

    def finish_run(self, run_id, **fields):
        super().finish_run(run_id, **fields)
        columns = {
            name: value for name, value in fields.items()
            if name in ('status', 'end_time', 'records_in', 'inserted', 'updated', 'deleted',
                        'unchanged', 'attempts', 'error_kind', 'error_message', 'implicated_keys')
        }
        columns.setdefault('end_time', datetime.now(timezone.utc))
        if 'implicated_keys' in columns:
            columns['implicated_keys'] = Json(
                columns['implicated_keys'], dumps=lambda v: json.dumps(v, default=json_default)
            )

        assignments = sql.SQL(', ').join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        )
        try:
            with self.connection.cursor() as cursor:
                cursor.execute(sql.SQL("UPDATE {table} SET {assignments} WHERE run_id = %s").format(
                    table=sql.Identifier(self.TABLE), assignments=assignments,
                ), (*columns.values(), run_id))
            self.connection.commit()
            logger.debug(f"Finished run record {run_id}: {fields.get('status')}")
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to update run record {run_id}: {e}")
            raise

    def last_run(self, snapshot_name):
        try:
            with self.connection.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(sql.SQL("""
                    SELECT * FROM {table}
                    WHERE snapshot_name = %s
                    ORDER BY start_time DESC
                    LIMIT 1
                """).format(table=sql.Identifier(self.TABLE)), (snapshot_name,))
                row = cursor.fetchone()
            self.connection.commit()
            return dict(row) if row else None
        except psycopg2.Error as e:
            self.connection.rollback()
            logger.error(f"Failed to get last run for {snapshot_name}: {e}")
            raise
