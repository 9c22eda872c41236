"""
Record Normalizer

Reduces a raw batch to one current row per natural key: the row with the
latest updated_at. When two rows share the latest timestamp the one ingested
later wins, so the result never depends on anything but input order.
"""

from typing import Any, Dict, Iterable, List, Mapping

from historian.config import SnapshotConfig
from historian.exceptions import ValidationError
from historian.records import parse_timestamp
from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


def normalize_records(rows: Iterable[Mapping[str, Any]], config: SnapshotConfig) -> List[Dict[str, Any]]:
    """
    Deduplicate raw rows to the most recent row per natural key.

    Args:
        rows: Raw rows, possibly several per key
        config: Snapshot configuration naming the key and timestamp columns

    Returns:
        One row per key (copies, timestamps coerced to aware datetimes),
        in first-seen key order

    Raises:
        ValidationError: if any row lacks its key or a parseable timestamp.
            Every offending row is reported, not just the first.
    """
    key_column = config.unique_key
    ts_column = config.updated_at

    latest: Dict[Any, Dict[str, Any]] = {}
    problems: List[str] = []
    bad_keys: List[Any] = []
    total = 0

    for index, raw in enumerate(rows):
        total += 1
        key = raw.get(key_column)
        if key is None or key == '':
            problems.append(f"row {index}: missing natural key '{key_column}'")
            continue

        try:
            hash(key)
        except TypeError:
            problems.append(
                f"row {index}: natural key '{key_column}' must be a scalar, got {type(key).__name__}"
            )
            continue

        try:
            updated_at = parse_timestamp(raw.get(ts_column))
        except (TypeError, ValueError) as e:
            problems.append(f"row {index} (key={key!r}): invalid '{ts_column}': {e}")
            bad_keys.append(key)
            continue
        if updated_at is None:
            problems.append(f"row {index} (key={key!r}): missing timestamp '{ts_column}'")
            bad_keys.append(key)
            continue

        row = dict(raw)
        row[ts_column] = updated_at

        current = latest.get(key)
        # >= : on a timestamp tie the later-ingested row replaces the earlier one
        if current is None or updated_at >= current[ts_column]:
            latest[key] = row

    if problems:
        logger.error(f"Rejected batch: {len(problems)} malformed row(s) out of {total}")
        raise ValidationError("Malformed input rows: " + "; ".join(problems), keys=bad_keys)

    if total != len(latest):
        logger.debug(f"Collapsed {total} raw rows to {len(latest)} natural keys")

    return list(latest.values())
