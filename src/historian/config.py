"""
Snapshot configuration.

Connection settings and engine tunables come from the environment (a .env
file is honoured). Snapshot definitions are declared in YAML, mirroring a
warehouse snapshot block:

    snapshots:
      - name: customers_snapshot
        target_table: customers_history
        unique_key: id
        updated_at: updated_at
        strategy: timestamp
        tracked_columns: [name, email, status]
        invalidate_hard_deletes: true
        tests:
          - test: not_null
            column: id
          - test: accepted_values
            column: status
            values: [active, churned]
            severity: warn
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

from historian.exceptions import ConfigError
from historian.quality.checks import validate_check_declaration

load_dotenv()

SUPPORTED_STRATEGIES = ("timestamp",)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def warehouse_connection_params() -> Dict[str, str]:
    """psycopg2.connect() keyword arguments for the warehouse database."""
    return {
        'host': os.getenv('WAREHOUSE_DB_HOST', 'localhost'),
        'port': os.getenv('WAREHOUSE_DB_PORT', '5433'),
        'database': os.getenv('WAREHOUSE_DB_NAME', 'warehouse_db'),
        'user': os.getenv('WAREHOUSE_DB_USER', 'postgres'),
        'password': os.getenv('WAREHOUSE_DB_PASSWORD', 'postgres'),
    }


@dataclass
class SnapshotConfig:
    """Settings for one historized target table."""

    name: str
    target_table: str
    unique_key: str = "id"
    updated_at: str = "updated_at"
    tracked_columns: Optional[List[str]] = None
    invalidate_hard_deletes: bool = False
    strategy: str = "timestamp"
    audit_columns: List[str] = field(default_factory=list)
    max_write_attempts: int = field(
        default_factory=lambda: _env_int('SNAPSHOT_MAX_WRITE_ATTEMPTS', 5))
    retry_backoff_seconds: float = field(
        default_factory=lambda: _env_float('SNAPSHOT_RETRY_BACKOFF_SECONDS', 0.5))
    lock_timeout_seconds: float = field(
        default_factory=lambda: _env_float('SNAPSHOT_LOCK_TIMEOUT_SECONDS', 10.0))
    tests: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        errors = _validate_snapshot_fields(self.__dict__, f"snapshot '{self.name}'")
        if errors:
            raise ConfigError("; ".join(errors))

    @property
    def excluded_columns(self) -> set:
        """Columns never compared for change detection."""
        return {self.unique_key, self.updated_at, *self.audit_columns}

    def resolve_tracked_columns(self, rows: Iterable[Mapping[str, Any]]) -> List[str]:
        """
        Columns participating in change detection.

        Explicit tracked_columns win; otherwise every non-key, non-audit
        column seen in the input, in first-seen order.
        """
        if self.tracked_columns:
            return list(self.tracked_columns)

        columns: List[str] = []
        seen = set()
        excluded = self.excluded_columns
        for row in rows:
            for column in row:
                if column not in seen and column not in excluded:
                    seen.add(column)
                    columns.append(column)
        return columns

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SnapshotConfig":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


def _validate_snapshot_fields(data: Mapping[str, Any], prefix: str) -> List[str]:
    errors: List[str] = []

    for required in ("name", "target_table"):
        if not data.get(required):
            errors.append(f"{prefix}: '{required}' is required")

    for column_field in ("unique_key", "updated_at"):
        if column_field in data and not isinstance(data[column_field], str):
            errors.append(f"{prefix}: '{column_field}' must be a column name")

    strategy = data.get("strategy", "timestamp")
    if strategy not in SUPPORTED_STRATEGIES:
        errors.append(
            f"{prefix}: unknown strategy '{strategy}'. Valid strategies: "
            + ", ".join(SUPPORTED_STRATEGIES)
        )

    tracked = data.get("tracked_columns")
    if tracked is not None:
        if not isinstance(tracked, list) or not all(isinstance(c, str) for c in tracked):
            errors.append(f"{prefix}: 'tracked_columns' must be a list of column names")
        else:
            key_cols = {data.get("unique_key", "id"), data.get("updated_at", "updated_at")}
            overlap = key_cols.intersection(tracked)
            if overlap:
                errors.append(
                    f"{prefix}: 'tracked_columns' cannot include key/timestamp column(s) "
                    + ", ".join(sorted(overlap))
                )

    audit = data.get("audit_columns", [])
    if not isinstance(audit, list):
        errors.append(f"{prefix}: 'audit_columns' must be a list")

    if "invalidate_hard_deletes" in data and not isinstance(data["invalidate_hard_deletes"], bool):
        errors.append(f"{prefix}: 'invalidate_hard_deletes' must be true or false")

    attempts = data.get("max_write_attempts", 1)
    if not isinstance(attempts, int) or attempts < 1:
        errors.append(f"{prefix}: 'max_write_attempts' must be a positive integer")

    for numeric in ("retry_backoff_seconds", "lock_timeout_seconds"):
        value = data.get(numeric, 0)
        if not isinstance(value, (int, float)) or value < 0:
            errors.append(f"{prefix}: '{numeric}' must be a non-negative number")

    tests = data.get("tests", [])
    if not isinstance(tests, list):
        errors.append(f"{prefix}: 'tests' must be a list")
    else:
        for i, declaration in enumerate(tests):
            errors.extend(validate_check_declaration(declaration, f"{prefix}.tests[{i}]"))

    return errors


def validate_snapshot_yaml(config: Any, yaml_path: str) -> None:
    """
    Validate the structure of a snapshot YAML document.

    Collects every problem and raises a single ConfigError.
    """
    if not isinstance(config, dict):
        raise ConfigError(
            f"YAML config for {yaml_path} must contain a mapping (dict), "
            f"got {type(config).__name__}"
        )

    errors: List[str] = []
    snapshots = config.get("snapshots")
    if snapshots is None:
        errors.append("Missing required 'snapshots' section")
    elif not isinstance(snapshots, list):
        errors.append("'snapshots' must be a list")
    elif not snapshots:
        errors.append("'snapshots' list is empty - nothing to historize")
    else:
        names = set()
        for i, snapshot in enumerate(snapshots):
            prefix = f"snapshots[{i}]"
            if not isinstance(snapshot, dict):
                errors.append(f"{prefix}: must be a mapping, got {type(snapshot).__name__}")
                continue
            name = snapshot.get("name")
            if name in names:
                errors.append(f"{prefix}: duplicate snapshot name '{name}'")
            names.add(name)
            unknown = set(snapshot) - set(SnapshotConfig.__dataclass_fields__)
            if unknown:
                errors.append(f"{prefix}: unknown option(s) " + ", ".join(sorted(unknown)))
            errors.extend(_validate_snapshot_fields(snapshot, prefix))

    if errors:
        raise ConfigError("; ".join(errors))


def load_snapshot_configs(yaml_path) -> Dict[str, SnapshotConfig]:
    """Load and validate every snapshot declared in a YAML file, keyed by name."""
    yaml_path = Path(yaml_path)
    with open(yaml_path, "r") as f:
        config = yaml.safe_load(f)

    validate_snapshot_yaml(config, str(yaml_path))
    return {
        snapshot["name"]: SnapshotConfig.from_dict(snapshot)
        for snapshot in config["snapshots"]
    }


def load_snapshot_config(yaml_path, name: str) -> SnapshotConfig:
    """Load a single named snapshot from a YAML file."""
    configs = load_snapshot_configs(yaml_path)
    if name not in configs:
        raise ConfigError(
            f"Snapshot '{name}' not declared in {yaml_path}. "
            f"Available: {', '.join(sorted(configs))}"
        )
    return configs[name]
