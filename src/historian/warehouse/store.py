"""
Historized table storage.

A store holds the validity intervals of one target table. Reads return a
consistent view of the open intervals; writes happen only inside
transaction(), which serializes writers on the same table and applies all of
its operations or none of them.
"""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set

from historian.exceptions import WriteConflictError
from historian.records import HistorizedRecord
from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class StoreState:
    """Snapshot of what the diff engine needs from the historized table."""

    current: Dict[Any, HistorizedRecord] = field(default_factory=dict)
    closed_until: Dict[Any, datetime] = field(default_factory=dict)
    columns: Set[str] = field(default_factory=set)


class StoreTransaction(ABC):
    """Write handle valid only inside HistoryStore.transaction()."""

    @abstractmethod
    def close_interval(self, natural_key: Any, expected_valid_from: datetime, valid_to: datetime) -> None:
        """
        Close the open interval of a key (compare-and-swap).

        Raises:
            WriteConflictError: if the key has no open interval or its open
                interval no longer starts at expected_valid_from
        """

    @abstractmethod
    def open_interval(self, record: HistorizedRecord) -> HistorizedRecord:
        """
        Insert a new open interval.

        Raises:
            WriteConflictError: if the key already has an open interval
        """

    @abstractmethod
    def history(self) -> List[HistorizedRecord]:
        """Every interval of the table as this transaction would commit it."""


class HistoryStore(ABC):
    """Storage backend for one historized target table."""

    def __init__(self, table_name: str):
        self.table_name = table_name

    @abstractmethod
    def ensure_table(self) -> None:
        """Create the historized table if it does not exist."""

    @abstractmethod
    def load_state(self) -> StoreState:
        """Read open intervals, close times of deleted keys and stored columns."""

    @abstractmethod
    def history(self, natural_key: Any = None) -> List[HistorizedRecord]:
        """All intervals (optionally of one key) ordered by key, then valid_from."""

    @abstractmethod
    def transaction(self, run_id: str, lock_timeout: float):
        """Context manager yielding a StoreTransaction; commits on clean exit."""

    def close(self) -> None:
        """Release backend resources."""


def _sorted_copies(records) -> List[HistorizedRecord]:
    return sorted((replace(r) for r in records), key=lambda r: (str(r.natural_key), r.valid_from))


class _InMemoryTransaction(StoreTransaction):

    def __init__(self, records: List[HistorizedRecord], run_id: str, next_key: int):
        self.records = records
        self.run_id = run_id
        self.next_key = next_key
        self.operations = 0

    def _open_record(self, natural_key: Any) -> Optional[HistorizedRecord]:
        for record in self.records:
            if record.natural_key == natural_key and record.valid_to is None:
                return record
        return None

    def close_interval(self, natural_key, expected_valid_from, valid_to):
        index = None
        for i, record in enumerate(self.records):
            if record.natural_key == natural_key and record.valid_to is None:
                index = i
                break

        if index is None:
            raise WriteConflictError(
                f"No open interval left to close for key {natural_key!r}", keys=[natural_key]
            )
        current = self.records[index]
        if current.valid_from != expected_valid_from:
            raise WriteConflictError(
                f"Open interval of key {natural_key!r} changed concurrently "
                f"(expected start {expected_valid_from.isoformat()}, found {current.valid_from.isoformat()})",
                keys=[natural_key],
            )

        # Closed intervals are replaced, never mutated, so readers keep their copies intact
        self.records[index] = replace(current, valid_to=valid_to)
        self.operations += 1

    def open_interval(self, record):
        if self._open_record(record.natural_key) is not None:
            raise WriteConflictError(
                f"Key {record.natural_key!r} already has an open interval", keys=[record.natural_key]
            )
        stored = replace(record, surrogate_key=self.next_key, run_id=self.run_id, valid_to=None)
        self.next_key += 1
        self.records.append(stored)
        self.operations += 1
        return replace(stored)

    def history(self):
        return _sorted_copies(self.records)


class InMemoryHistoryStore(HistoryStore):
    """
    Process-local historized table.

    Writers are serialized with a lock acquired under a timeout; a transaction
    works on a private copy of the intervals that replaces the committed list
    only when the block exits cleanly.
    """

    def __init__(self, table_name: str):
        super().__init__(table_name)
        self._records: List[HistorizedRecord] = []
        self._next_key = 1
        self._write_lock = threading.Lock()

    def ensure_table(self) -> None:
        logger.debug(f"In-memory historized table {self.table_name} ready")

    def load_state(self) -> StoreState:
        state = StoreState()
        records = self._records
        for record in records:
            if record.valid_to is None:
                state.current[record.natural_key] = replace(record)
            elif record.natural_key not in state.closed_until or record.valid_to > state.closed_until[record.natural_key]:
                state.closed_until[record.natural_key] = record.valid_to
        for key in state.current:
            state.closed_until.pop(key, None)
        for record in state.current.values():
            state.columns.update(record.attributes)
        return state

    def history(self, natural_key: Any = None) -> List[HistorizedRecord]:
        return _sorted_copies(
            r for r in self._records if natural_key is None or r.natural_key == natural_key
        )

    @contextmanager
    def transaction(self, run_id: str, lock_timeout: float) -> Iterator[StoreTransaction]:
        if not self._write_lock.acquire(timeout=lock_timeout):
            raise WriteConflictError(
                f"Timed out after {lock_timeout}s waiting for the write lock on {self.table_name}"
            )
        try:
            tx = _InMemoryTransaction(list(self._records), run_id, self._next_key)
            yield tx
            self._records = tx.records
            self._next_key = tx.next_key
            logger.debug(f"Committed {tx.operations} operation(s) to {self.table_name} (run {run_id})")
        finally:
            self._write_lock.release()
