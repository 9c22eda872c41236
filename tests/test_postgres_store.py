"""
Integration tests against a live warehouse database.

Connection settings come from WAREHOUSE_DB_*; every test is skipped when the
database is unreachable. Each test works on its own throwaway table.
"""

import uuid
from decimal import Decimal

import psycopg2
import pytest

from conftest import ts
from historian.config import warehouse_connection_params
from historian.exceptions import WriteConflictError
from historian.ingest.sources import PostgresQuerySource
from historian.quality.checks import history_suite
from historian.records import HistorizedRecord
from historian.warehouse.postgres_store import PostgresHistoryStore
from historian.warehouse.run_metadata import PostgresRunLog

pytestmark = pytest.mark.postgres


@pytest.fixture
def pg_connection():
    try:
        conn = psycopg2.connect(connect_timeout=3, **warehouse_connection_params())
    except psycopg2.OperationalError as e:
        pytest.skip(f"warehouse database unavailable: {e}")
    yield conn
    conn.close()


@pytest.fixture
def pg_store(pg_connection):
    table = f"historian_test_{uuid.uuid4().hex[:10]}"
    store = PostgresHistoryStore(table, connection=pg_connection)
    store.ensure_table()
    yield store
    pg_connection.rollback()
    with pg_connection.cursor() as cursor:
        cursor.execute(f"DROP TABLE IF EXISTS {table}")
    pg_connection.commit()


@pytest.fixture
def pg_runner(make_runner, make_config, pg_store):
    config = make_config(target_table=pg_store.table_name, invalidate_hard_deletes=True)
    return make_runner(config, target_store=pg_store)


class TestPostgresHistoryStore:

    def test_runs_build_valid_history(self, pg_runner, pg_store, clock):
        pg_runner.run([
            {"id": 1, "name": "Alice", "updated_at": ts(1)},
            {"id": 2, "name": "Bob", "updated_at": ts(1)},
        ])
        pg_runner.run([{"id": 1, "name": "Alice B", "updated_at": ts(2)}])

        history = pg_store.history()
        assert [(r.natural_key, r.valid_from, r.valid_to) for r in history] == [
            (1, ts(1), ts(2)),
            (1, ts(2), None),
            (2, ts(1), clock.now),
        ]
        history_suite().enforce(history, target=pg_store.table_name)

    def test_rerun_after_json_round_trip_writes_nothing(self, pg_runner):
        batch = [{"id": 1, "amount": Decimal("10.50"), "seen_at": ts(0.5), "updated_at": ts(1)}]
        pg_runner.run(batch)

        result = pg_runner.run(batch)

        assert result.writes == 0
        assert result.counts["UNCHANGED"] == 1

    def test_state_reports_closed_keys(self, pg_runner, pg_store, clock):
        pg_runner.run([{"id": 1, "name": "Alice", "updated_at": ts(1)}])
        pg_runner.run([])

        state = pg_store.load_state()

        assert state.current == {}
        assert state.closed_until == {1: clock.now}

    def test_failed_transaction_rolls_back_every_operation(self, pg_runner, pg_store):
        pg_runner.run([{"id": 1, "name": "Alice", "updated_at": ts(1)}])
        before = pg_store.history()

        with pytest.raises(WriteConflictError):
            with pg_store.transaction("manual", lock_timeout=1.0) as tx:
                tx.close_interval(1, ts(1), ts(2))
                tx.open_interval(HistorizedRecord(1, {"id": 1, "name": "Alice B"}, ts(2)))
                tx.close_interval(2, ts(1), ts(2))

        assert pg_store.history() == before

    def test_second_open_interval_is_a_conflict(self, pg_runner, pg_store):
        pg_runner.run([{"id": 1, "name": "Alice", "updated_at": ts(1)}])

        with pytest.raises(WriteConflictError):
            with pg_store.transaction("manual", lock_timeout=1.0) as tx:
                tx.open_interval(HistorizedRecord(1, {"id": 1, "name": "Twin"}, ts(3)))

        assert len(pg_store.history(1)) == 1


def test_postgres_run_log_records_runs(pg_connection, make_config, make_runner, pg_store):
    run_log = PostgresRunLog(pg_connection)
    config = make_config(name=f"pg_snapshot_{uuid.uuid4().hex[:8]}", target_table=pg_store.table_name)
    runner = make_runner(config, target_store=pg_store)
    runner.run_log = run_log

    result = runner.run([{"id": 7, "name": "Grace", "updated_at": ts(1)}])
    last = run_log.last_run(config.name)

    with pg_connection.cursor() as cursor:
        cursor.execute("DELETE FROM snapshot_run_metadata WHERE run_id = %s", (result.run_id,))
    pg_connection.commit()

    assert last["run_id"] == result.run_id
    assert last["status"] == "completed"
    assert last["inserted"] == 1
    assert last["implicated_keys"] == []


def test_query_source_feeds_a_run(pg_connection, pg_runner, pg_store):
    source_table = f"historian_source_{uuid.uuid4().hex[:10]}"
    with pg_connection.cursor() as cursor:
        cursor.execute(f"""
            CREATE TABLE {source_table} (id INTEGER, name TEXT, updated_at TIMESTAMPTZ);
            INSERT INTO {source_table} VALUES
                (1, 'Alice', '2024-01-01T01:00:00Z'),
                (2, 'Bob', '2024-01-01T02:00:00Z');
        """)
    pg_connection.commit()

    try:
        source = PostgresQuerySource.from_table(pg_connection, source_table, ["id", "name", "updated_at"])
        rows = source.fetch()
        pg_connection.commit()
        result = pg_runner.run(rows)
    finally:
        with pg_connection.cursor() as cursor:
            cursor.execute(f"DROP TABLE IF EXISTS {source_table}")
        pg_connection.commit()

    assert result.counts["NEW"] == 2
    assert {r.natural_key: r.valid_from for r in pg_store.history()} == {1: ts(1), 2: ts(2)}
