"""
Diff Engine

Compares the normalized current-state rows against the open intervals of the
historized table and classifies every natural key as NEW, CHANGED, UNCHANGED
or DELETED. Pure: reads nothing and writes nothing beyond its arguments.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from historian.config import SnapshotConfig
from historian.exceptions import SchemaMismatchError
from historian.records import (
    Change,
    ChangeKind,
    DiffResult,
    HistorizedRecord,
    canonical_values,
    record_hash,
)
from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


def check_schema(
    rows: List[Mapping[str, Any]],
    tracked_columns: List[str],
    history_columns: Optional[Iterable[str]] = None,
) -> None:
    """
    Raise SchemaMismatchError if a tracked column is absent from any input row
    or, when the historized table has rows, from its stored attributes.
    """
    missing_input = set()
    for row in rows:
        missing_input.update(c for c in tracked_columns if c not in row)
    if missing_input:
        raise SchemaMismatchError(
            "Tracked column(s) missing from input rows: " + ", ".join(sorted(missing_input)),
            columns=missing_input,
        )

    history_columns = set(history_columns or ())
    if history_columns:
        missing_history = set(tracked_columns) - history_columns
        if missing_history:
            raise SchemaMismatchError(
                "Tracked column(s) missing from historized table: " + ", ".join(sorted(missing_history)),
                columns=missing_history,
            )


def diff_snapshot(
    rows: List[Dict[str, Any]],
    current: Mapping[Any, HistorizedRecord],
    config: SnapshotConfig,
    closed_until: Optional[Mapping[Any, datetime]] = None,
    history_columns: Optional[Iterable[str]] = None,
) -> DiffResult:
    """
    Classify normalized rows against the current intervals.

    Args:
        rows: Normalized rows, one per natural key
        current: Open interval per natural key from the historized table
        config: Snapshot configuration
        closed_until: Latest valid_to of keys that have history but no open
            interval (previously hard-deleted)
        history_columns: Attribute names stored in the historized table

    Returns:
        DiffResult with one Change per key seen in either side
    """
    closed_until = closed_until or {}
    tracked = config.resolve_tracked_columns(rows)
    check_schema(rows, tracked, history_columns)

    key_column = config.unique_key
    ts_column = config.updated_at
    result = DiffResult(tracked_columns=tracked)

    for row in rows:
        key = row[key_column]
        updated_at = row[ts_column]
        fingerprint = record_hash(row, tracked)
        previous = current.get(key)

        if previous is None:
            valid_from = updated_at
            reopened_after = closed_until.get(key)
            if reopened_after is not None and updated_at < reopened_after:
                logger.warning(
                    f"Key {key!r} reappeared with {ts_column}={updated_at.isoformat()} before its "
                    f"history was closed at {reopened_after.isoformat()}; opening at the close time"
                )
                valid_from = reopened_after
            result.changes.append(Change(
                kind=ChangeKind.NEW, natural_key=key, row=row,
                valid_from=valid_from, record_hash=fingerprint,
            ))
            continue

        if canonical_values(row, tracked) == canonical_values(previous.attributes, tracked):
            result.changes.append(Change(
                kind=ChangeKind.UNCHANGED, natural_key=key, row=row, previous=previous,
                record_hash=fingerprint,
            ))
            continue

        if updated_at <= previous.valid_from:
            # Attributes differ but the row is not newer than the open interval
            result.stale_keys.append(key)
            logger.warning(
                f"Ignoring stale row for key {key!r}: {ts_column}={updated_at.isoformat()} is not "
                f"after the current interval start {previous.valid_from.isoformat()}"
            )
            result.changes.append(Change(
                kind=ChangeKind.UNCHANGED, natural_key=key, row=row, previous=previous,
                record_hash=fingerprint,
            ))
            continue

        result.changes.append(Change(
            kind=ChangeKind.CHANGED, natural_key=key, row=row, previous=previous,
            valid_from=updated_at, record_hash=fingerprint,
        ))

    if config.invalidate_hard_deletes:
        seen = {row[key_column] for row in rows}
        for key, previous in current.items():
            if key not in seen:
                result.changes.append(Change(
                    kind=ChangeKind.DELETED, natural_key=key, previous=previous,
                ))

    counts = result.counts()
    logger.info(
        f"Diff for {config.target_table}: new={counts['NEW']}, changed={counts['CHANGED']}, "
        f"unchanged={counts['UNCHANGED']}, deleted={counts['DELETED']}, stale={len(result.stale_keys)}"
    )
    return result
