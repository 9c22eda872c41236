"""
Record types shared by the normalizer, diff engine, writer and stores.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Coerce a timestamp value to a timezone-aware datetime.

    Accepts datetimes (naive ones are taken as UTC) and ISO-8601 strings,
    including a trailing 'Z'. Returns None for None/empty values and raises
    ValueError for anything unparseable.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def json_default(value: Any) -> Any:
    """json.dumps default for warehouse values."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


def canonical_values(row: Mapping[str, Any], columns: Iterable[str]) -> str:
    """
    Canonical text of a row's tracked values.

    Two rows compare equal iff their canonical texts match. Datetimes are
    compared by ISO text and Decimals by numeric value, so values read back
    from JSON storage match the originals.
    """
    values = {column: row.get(column) for column in columns}
    return json.dumps(values, sort_keys=True, default=json_default)


def record_hash(row: Mapping[str, Any], columns: Iterable[str]) -> str:
    """md5 fingerprint of the canonical tracked values."""
    return hashlib.md5(canonical_values(row, columns).encode()).hexdigest()


class ChangeKind(str, Enum):
    NEW = "NEW"
    CHANGED = "CHANGED"
    UNCHANGED = "UNCHANGED"
    DELETED = "DELETED"


@dataclass
class HistorizedRecord:
    """One validity interval of one natural key."""

    natural_key: Any
    attributes: Dict[str, Any]
    valid_from: datetime
    valid_to: Optional[datetime] = None
    record_hash: Optional[str] = None
    surrogate_key: Optional[int] = None
    run_id: Optional[str] = None

    @property
    def is_current(self) -> bool:
        return self.valid_to is None


@dataclass
class Change:
    """Classification of one natural key for a run."""

    kind: ChangeKind
    natural_key: Any
    row: Optional[Dict[str, Any]] = None
    previous: Optional[HistorizedRecord] = None
    valid_from: Optional[datetime] = None
    record_hash: Optional[str] = None


@dataclass
class DiffResult:
    """Output of the diff engine, consumed by the historization writer."""

    changes: List[Change] = field(default_factory=list)
    tracked_columns: List[str] = field(default_factory=list)
    stale_keys: List[Any] = field(default_factory=list)

    def of_kind(self, kind: ChangeKind) -> List[Change]:
        return [change for change in self.changes if change.kind == kind]

    def counts(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in ChangeKind}
        for change in self.changes:
            counts[change.kind.value] += 1
        return counts

    @property
    def writes(self) -> List[Change]:
        """Changes that touch the historized table."""
        return [change for change in self.changes if change.kind != ChangeKind.UNCHANGED]

    @property
    def has_writes(self) -> bool:
        return bool(self.writes)
