"""Tests for loading snapshot batches from a directory of JSON files."""

import json
from contextlib import contextmanager

import pytest

from historian.exceptions import ValidationError, WriteConflictError
from historian.runner import BatchFileLoader
from historian.utils.signal_handler import GracefulShutdownHandler


def write_batch(directory, name, rows):
    path = directory / name
    path.write_text(json.dumps({"changes": rows}))
    return path


@pytest.fixture
def batch_dir(tmp_path):
    directory = tmp_path / "batches"
    directory.mkdir()
    return directory


@pytest.fixture
def loader(runner, batch_dir):
    return BatchFileLoader(runner, batch_dir)


class TestBatchFileLoader:

    def test_loads_files_in_name_order(self, loader, batch_dir, store):
        write_batch(batch_dir, "changes_002.json", [
            {"id": 1, "name": "Alice B", "updated_at": "2024-01-01T02:00:00Z"},
        ])
        write_batch(batch_dir, "changes_001.json", [
            {"id": 1, "name": "Alice", "updated_at": "2024-01-01T01:00:00Z"},
        ])

        results = loader.load_pending()

        assert [r.counts["NEW"] for r in results] == [1, 0]
        assert [r.counts["CHANGED"] for r in results] == [0, 1]
        assert [r.attributes["name"] for r in store.history(1)] == ["Alice", "Alice B"]

    def test_run_id_names_the_file_and_batch(self, loader, batch_dir):
        rows = [{"id": 1, "name": "Alice", "updated_at": "2024-01-01T01:00:00Z"}]
        write_batch(batch_dir, "changes_001.json", rows)

        [result] = loader.load_pending()

        prefix = f"customers_snapshot_changes_001_{loader.batch_id(rows)[:8]}_"
        assert result.run_id.startswith(prefix)
        assert len(result.run_id) == len(prefix) + 6

    def test_processed_files_are_skipped(self, loader, batch_dir):
        write_batch(batch_dir, "changes_001.json", [
            {"id": 1, "name": "Alice", "updated_at": "2024-01-01T01:00:00Z"},
        ])
        loader.load_pending()

        assert loader.pending_files() == []
        assert loader.load_pending() == []
        entries = loader.processed_log.read_text().splitlines()
        assert len(entries) == 1
        assert entries[0].startswith("changes_001.json|")

    def test_batch_id_ignores_row_order(self, loader):
        rows = [
            {"id": 1, "updated_at": "2024-01-01T01:00:00Z"},
            {"id": 2, "updated_at": "2024-01-01T02:00:00Z"},
        ]

        assert loader.batch_id(rows) == loader.batch_id(list(reversed(rows)))

    def test_failing_file_stops_processing(self, loader, batch_dir, store):
        write_batch(batch_dir, "changes_001.json", [{"id": 1, "name": "Alice"}])
        write_batch(batch_dir, "changes_002.json", [
            {"id": 2, "name": "Bob", "updated_at": "2024-01-01T01:00:00Z"},
        ])

        with pytest.raises(ValidationError):
            loader.load_pending()

        assert [p.name for p in loader.pending_files()] == ["changes_001.json", "changes_002.json"]
        assert store.history() == []

    def test_stops_when_shutdown_requested(self, runner, batch_dir, store):
        shutdown_handler = GracefulShutdownHandler(__name__)
        loader = BatchFileLoader(runner, batch_dir, shutdown_handler=shutdown_handler)
        write_batch(batch_dir, "changes_001.json", [
            {"id": 1, "name": "Alice", "updated_at": "2024-01-01T01:00:00Z"},
        ])
        shutdown_handler.request_shutdown("for test")

        assert loader.load_pending() == []
        assert store.history() == []
        assert len(loader.pending_files()) == 1

    def test_failed_file_can_be_reloaded(self, loader, batch_dir, store, run_log, monkeypatch):
        write_batch(batch_dir, "changes_001.json", [
            {"id": 1, "name": "Alice", "updated_at": "2024-01-01T01:00:00Z"},
        ])
        commit = store.transaction
        attempts = []

        # The first three write attempts (one run's whole retry budget) hit a busy table
        @contextmanager
        def busy_then_free(run_id, lock_timeout):
            attempts.append(run_id)
            if len(attempts) <= 3:
                raise WriteConflictError("table busy")
            with commit(run_id, lock_timeout) as tx:
                yield tx

        monkeypatch.setattr(store, "transaction", busy_then_free)

        with pytest.raises(WriteConflictError):
            loader.load_pending()
        [result] = loader.load_pending()

        failed_run, loaded_run = run_log.runs
        assert failed_run["status"] == "failed"
        assert loaded_run["status"] == "completed"
        assert failed_run["run_id"] != loaded_run["run_id"]
        assert result.run_id == loaded_run["run_id"]
        assert loader.pending_files() == []
        assert len(store.history(1)) == 1
