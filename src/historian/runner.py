"""
Snapshot Runner

One call to SnapshotRunner.run() is one snapshot run for one target table:

    IDLE -> NORMALIZING -> DIFFING -> WRITING -> IDLE
              \\              \\          \\
               +--------------+----------+--> FAILED

A run commits all of its classified changes or none of them. Write conflicts
with another writer are retried in full (re-read, re-diff, re-write) with
exponential backoff; rerunning is safe because unchanged keys produce no
writes.

BatchFileLoader drives the runner from a directory of JSON batch files,
skipping files it has already loaded.
"""

import hashlib
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from historian.config import SnapshotConfig
from historian.exceptions import HistorianError, RunInProgressError, WriteConflictError
from historian.ingest.normalizer import normalize_records
from historian.ingest.sources import read_json_batch
from historian.quality.checks import CheckSuite, CheckTarget
from historian.records import json_default
from historian.utils.logging_config import get_logger
from historian.utils.signal_handler import GracefulShutdownHandler
from historian.warehouse.diff_engine import diff_snapshot
from historian.warehouse.run_metadata import RunLog
from historian.warehouse.store import HistoryStore
from historian.warehouse.writer import HistorizationWriter

logger = get_logger(__name__)


class RunState(str, Enum):
    IDLE = "IDLE"
    NORMALIZING = "NORMALIZING"
    DIFFING = "DIFFING"
    WRITING = "WRITING"
    FAILED = "FAILED"


@dataclass
class SnapshotResult:
    """Outcome of one snapshot run."""

    run_id: str
    snapshot_name: str
    target_table: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: str = "running"
    state: RunState = RunState.IDLE
    records_in: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    stale_keys: List[Any] = field(default_factory=list)
    attempts: int = 0
    conflicts: int = 0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    implicated_keys: List[Any] = field(default_factory=list)

    @property
    def writes(self) -> int:
        return sum(self.counts.get(kind, 0) for kind in ("NEW", "CHANGED", "DELETED"))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotRunner:
    """
    Runs snapshots of one target table.

    Args:
        config: Snapshot configuration
        store: Historized table backend
        run_log: Optional ledger receiving one record per run
        clock: Returns the run execution timestamp (aware datetime)
        sleep: Used for retry backoff
    """

    # Target table -> {run_id: state} of the runs in progress, shared by every
    # runner in the process
    _active_runs: Dict[str, Dict[str, RunState]] = {}
    _registry_lock = threading.Lock()

    def __init__(
        self,
        config: SnapshotConfig,
        store: HistoryStore,
        run_log: Optional[RunLog] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.run_log = run_log
        self.clock = clock
        self.sleep = sleep
        self.writer = HistorizationWriter(store, config)
        declared = CheckSuite.from_declarations(config.tests)
        self.input_checks = declared.for_target(CheckTarget.ROWS)
        self.history_checks = declared.for_target(CheckTarget.HISTORY)
        self.state = RunState.IDLE
        self.store.ensure_table()

    def _set_state(self, state: RunState, result: SnapshotResult) -> None:
        self.state = state
        result.state = state
        target = self.config.target_table
        with self._registry_lock:
            runs = self._active_runs.setdefault(target, {})
            if state in (RunState.IDLE, RunState.FAILED):
                runs.pop(result.run_id, None)
                if not runs:
                    self._active_runs.pop(target, None)
            else:
                runs[result.run_id] = state
        logger.debug(f"Run {result.run_id} on {self.config.target_table}: {state.value}")

    def _claim_target(self, result: SnapshotResult) -> None:
        target = self.config.target_table
        with self._registry_lock:
            runs = self._active_runs.setdefault(target, {})
            if RunState.WRITING in runs.values():
                raise RunInProgressError(
                    f"A run for {target} is currently writing; refusing to start {result.run_id}"
                )
            runs[result.run_id] = RunState.NORMALIZING
        self.state = result.state = RunState.NORMALIZING

    @classmethod
    def active_states(cls, target_table: str) -> Dict[str, RunState]:
        """States of the runs currently in progress for a target table, by run id."""
        with cls._registry_lock:
            return dict(cls._active_runs.get(target_table, {}))

    def run(self, raw_rows: Iterable[Mapping[str, Any]], run_id: Optional[str] = None) -> SnapshotResult:
        """
        Execute one snapshot run.

        Args:
            raw_rows: Current-state rows from the source, possibly several per key
            run_id: Optional identifier (generated when omitted)

        Returns:
            SnapshotResult with status 'completed'

        Raises:
            HistorianError: on any failure. The result, with status 'failed',
                error_kind and implicated_keys, is attached as error.result.
                The historized table is left as it was before the run.
        """
        started_at = self.clock()
        run_id = run_id or f"{self.config.name}_{started_at.strftime('%Y%m%d_%H%M%S_%f')}_{uuid.uuid4().hex[:6]}"
        result = SnapshotResult(
            run_id=run_id,
            snapshot_name=self.config.name,
            target_table=self.config.target_table,
            started_at=started_at,
        )

        self._claim_target(result)
        logger.info(f"Starting snapshot run {run_id} for {self.config.target_table}")

        try:
            if self.run_log is not None:
                self.run_log.start_run(self.config.name, run_id, self.config.target_table, started_at)

            rows = normalize_records(raw_rows, self.config)
            result.records_in = len(rows)
            if self.input_checks:
                self.input_checks.enforce(rows, self.config.unique_key, target=self.config.name)

            self._diff_and_write(rows, result, executed_at=started_at)
        except HistorianError as e:
            self._fail(result, e)
            e.result = result
            raise
        except Exception as e:
            self._fail(result, e)
            raise

        result.status = "completed"
        result.finished_at = self.clock()
        self._set_state(RunState.IDLE, result)
        self._record_finish(result)
        logger.info(
            f"Snapshot run {run_id} completed: new={result.counts.get('NEW', 0)}, "
            f"changed={result.counts.get('CHANGED', 0)}, deleted={result.counts.get('DELETED', 0)}, "
            f"unchanged={result.counts.get('UNCHANGED', 0)}, attempts={result.attempts}"
        )
        return result

    def _diff_and_write(self, rows: List[Dict[str, Any]], result: SnapshotResult, executed_at: datetime) -> None:
        max_attempts = self.config.max_write_attempts
        for attempt in range(max_attempts):
            result.attempts = attempt + 1

            self._set_state(RunState.DIFFING, result)
            state = self.store.load_state()
            diff = diff_snapshot(
                rows, state.current, self.config,
                closed_until=state.closed_until, history_columns=state.columns,
            )
            result.counts = diff.counts()
            result.stale_keys = list(diff.stale_keys)

            self._set_state(RunState.WRITING, result)
            try:
                self.writer.apply(diff, executed_at, result.run_id, self.history_checks)
                return
            except WriteConflictError as e:
                result.conflicts += 1
                if attempt == max_attempts - 1:
                    logger.error(
                        f"Run {result.run_id}: write conflict persisted after {max_attempts} attempts"
                    )
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"Run {result.run_id}: write conflict on attempt {attempt + 1}/{max_attempts} "
                    f"(keys {e.keys}); retrying in {delay:.2f}s"
                )
                self.sleep(delay)

    def _fail(self, result: SnapshotResult, error: Exception) -> None:
        result.status = "failed"
        result.error_kind = getattr(error, "kind", type(error).__name__)
        result.error_message = str(error)
        result.implicated_keys = list(getattr(error, "keys", []) or [])
        result.finished_at = self.clock()
        failed_in = self.state.value
        self._set_state(RunState.FAILED, result)
        logger.error(
            f"Snapshot run {result.run_id} failed during {failed_in} ({result.error_kind}): "
            f"{error}; implicated keys: {result.implicated_keys}"
        )
        try:
            self._record_finish(result)
        except Exception as e:
            # run() re-raises the original error
            logger.error(f"Could not record failure of run {result.run_id} in the run log: {e}")

    def _record_finish(self, result: SnapshotResult) -> None:
        if self.run_log is None:
            return
        self.run_log.finish_run(
            result.run_id,
            status=result.status,
            end_time=result.finished_at,
            records_in=result.records_in,
            inserted=result.counts.get("NEW", 0),
            updated=result.counts.get("CHANGED", 0),
            deleted=result.counts.get("DELETED", 0),
            unchanged=result.counts.get("UNCHANGED", 0),
            attempts=result.attempts,
            error_kind=result.error_kind,
            error_message=result.error_message,
            implicated_keys=result.implicated_keys,
        )


class BatchFileLoader:
    """
    Loads JSON batch files from a directory, one snapshot run per file.

    Loaded files are appended to a ledger as "filename|batch_id"; files whose
    name is already in the ledger are skipped. A file that failed stays
    pending, and every attempt at it runs under a fresh run id.
    """

    def __init__(
        self,
        runner: SnapshotRunner,
        batch_dir,
        pattern: str = "*.json",
        shutdown_handler: Optional[GracefulShutdownHandler] = None,
    ):
        self.runner = runner
        self.batch_dir = Path(batch_dir)
        self.pattern = pattern
        self.processed_log = self.batch_dir / ".processed_files"
        self.shutdown_handler = shutdown_handler or GracefulShutdownHandler(__name__)
        self.batch_dir.mkdir(parents=True, exist_ok=True)

    def _processed_entries(self) -> Set[str]:
        if not self.processed_log.exists():
            return set()
        with open(self.processed_log, 'r') as f:
            return {line.strip() for line in f if line.strip()}

    def _mark_processed(self, filename: str, batch_id: str) -> None:
        with open(self.processed_log, 'a') as f:
            f.write(f"{filename}|{batch_id}\n")

    def batch_id(self, rows: List[Mapping[str, Any]]) -> str:
        """md5 over the sorted (key, updated_at) pairs of a batch."""
        config = self.runner.config
        pairs = sorted(
            json.dumps([row.get(config.unique_key), row.get(config.updated_at)], default=json_default)
            for row in rows
        )
        return hashlib.md5(json.dumps(pairs).encode()).hexdigest()

    def pending_files(self) -> List[Path]:
        processed_names = {entry.split('|', 1)[0] for entry in self._processed_entries()}
        return [
            path for path in sorted(self.batch_dir.glob(self.pattern))
            if path.name not in processed_names
        ]

    def load_pending(self) -> List[SnapshotResult]:
        """
        Run one snapshot per unprocessed batch file, in file name order.

        Stops at the first failing file (later files may depend on it) and
        between files when shutdown was requested.
        """
        results: List[SnapshotResult] = []
        pending = self.pending_files()
        if not pending:
            logger.info(f"No unprocessed batch files in {self.batch_dir}")
            return results

        logger.info(f"Found {len(pending)} unprocessed batch file(s) in {self.batch_dir}")

        for path in pending:
            if self.shutdown_handler.should_shutdown:
                logger.info("Shutdown requested, stopping batch processing")
                break

            rows = read_json_batch(path)
            batch_id = self.batch_id(rows)
            run_id = f"{self.runner.config.name}_{path.stem}_{batch_id[:8]}_{uuid.uuid4().hex[:6]}"
            result = self.runner.run(rows, run_id=run_id)
            self._mark_processed(path.name, batch_id)
            results.append(result)
            logger.info(f"Loaded {path.name}: {result.writes} write(s)")

        return results
