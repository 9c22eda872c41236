"""
Snapshot historian: SCD Type 2 historization of natural-key records.

    normalize -> diff -> write, one atomic run per scheduling tick.
"""

from historian.config import SnapshotConfig, load_snapshot_config, load_snapshot_configs
from historian.exceptions import (
    ConfigError,
    HistorianError,
    QualityCheckError,
    RunInProgressError,
    SchemaMismatchError,
    ValidationError,
    WriteConflictError,
)
from historian.records import ChangeKind, HistorizedRecord
from historian.runner import BatchFileLoader, RunState, SnapshotResult, SnapshotRunner
from historian.warehouse.store import InMemoryHistoryStore

__version__ = "0.1.0"

__all__ = [
    "BatchFileLoader",
    "ChangeKind",
    "ConfigError",
    "HistorianError",
    "HistorizedRecord",
    "InMemoryHistoryStore",
    "QualityCheckError",
    "RunInProgressError",
    "RunState",
    "SchemaMismatchError",
    "SnapshotConfig",
    "SnapshotResult",
    "SnapshotRunner",
    "ValidationError",
    "WriteConflictError",
    "load_snapshot_config",
    "load_snapshot_configs",
]
