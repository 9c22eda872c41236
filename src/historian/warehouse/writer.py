"""
Historization Writer

Turns a DiffResult into interval operations and applies them in one store
transaction:

    NEW        open  [updated_at, NULL)
    CHANGED    close current at updated_at, open [updated_at, NULL)
    UNCHANGED  nothing
    DELETED    close current at the run execution timestamp

Every interval is validated before the transaction starts, so an invalid
operation never leaves a half-applied run behind.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from historian.config import SnapshotConfig
from historian.exceptions import ValidationError, WriteConflictError
from historian.quality.checks import CheckSuite
from historian.records import Change, ChangeKind, DiffResult, HistorizedRecord
from historian.utils.logging_config import get_logger
from historian.warehouse.store import HistoryStore

logger = get_logger(__name__)


@dataclass
class WriteSummary:
    """What one applied run wrote."""

    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    opened: List[HistorizedRecord] = field(default_factory=list)

    @property
    def total_writes(self) -> int:
        return self.inserted + self.updated + self.deleted


class HistorizationWriter:
    """Applies classified changes to a historized table."""

    def __init__(self, store: HistoryStore, config: SnapshotConfig):
        self.store = store
        self.config = config

    def _validate(self, diff: DiffResult, executed_at: datetime) -> None:
        problems: List[str] = []
        bad_keys: List[Any] = []

        for change in diff.writes:
            previous = change.previous
            if change.kind == ChangeKind.CHANGED and change.valid_from <= previous.valid_from:
                problems.append(
                    f"key {change.natural_key!r}: new interval start {change.valid_from.isoformat()} "
                    f"is not after {previous.valid_from.isoformat()}"
                )
                bad_keys.append(change.natural_key)
            elif change.kind == ChangeKind.DELETED and executed_at <= previous.valid_from:
                problems.append(
                    f"key {change.natural_key!r}: deletion time {executed_at.isoformat()} "
                    f"is not after interval start {previous.valid_from.isoformat()}"
                )
                bad_keys.append(change.natural_key)

        if problems:
            raise ValidationError("Invalid validity intervals: " + "; ".join(problems), keys=bad_keys)

    def _new_record(self, change: Change) -> HistorizedRecord:
        return HistorizedRecord(
            natural_key=change.natural_key,
            attributes=dict(change.row),
            valid_from=change.valid_from,
            record_hash=change.record_hash,
        )

    def apply(self, diff: DiffResult, executed_at: datetime, run_id: str,
              history_checks: Optional[CheckSuite] = None) -> WriteSummary:
        """
        Apply a diff atomically.

        Args:
            diff: Classified changes for the run
            executed_at: Run execution timestamp, used to close deleted keys
            run_id: Identifier stamped on every opened interval
            history_checks: Checks run on the resulting history before commit

        Returns:
            WriteSummary of the committed operations

        Raises:
            ValidationError: if an operation would produce an empty or inverted interval
            QualityCheckError: if an error-severity history check fails; nothing is written
            WriteConflictError: if another writer got there first; nothing is written
        """
        self._validate(diff, executed_at)

        summary = WriteSummary()
        writes = diff.writes
        if not writes:
            logger.info(f"No changes to write to {self.store.table_name}")
            if history_checks:
                history_checks.enforce(self.store.history(), target=self.store.table_name)
            return summary

        current_key = None
        try:
            with self.store.transaction(run_id, self.config.lock_timeout_seconds) as tx:
                for change in writes:
                    current_key = change.natural_key
                    if change.kind == ChangeKind.NEW:
                        summary.opened.append(tx.open_interval(self._new_record(change)))
                        summary.inserted += 1
                    elif change.kind == ChangeKind.CHANGED:
                        tx.close_interval(change.natural_key, change.previous.valid_from, change.valid_from)
                        summary.opened.append(tx.open_interval(self._new_record(change)))
                        summary.updated += 1
                    elif change.kind == ChangeKind.DELETED:
                        tx.close_interval(change.natural_key, change.previous.valid_from, executed_at)
                        summary.deleted += 1
                if history_checks:
                    history_checks.enforce(tx.history(), target=self.store.table_name)
        except WriteConflictError as e:
            if not e.keys and current_key is not None:
                e.keys = [current_key]
            logger.warning(f"Write to {self.store.table_name} rolled back: {e}")
            raise

        logger.info(
            f"Wrote run {run_id} to {self.store.table_name}: inserted={summary.inserted}, "
            f"updated={summary.updated}, deleted={summary.deleted}"
        )
        return summary
