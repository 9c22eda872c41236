"""
Error taxonomy for snapshot runs.

Every error names its failure kind and, where known, the natural keys it
implicates, so a failed run can report exactly what went wrong.
"""

from typing import Any, Iterable, List, Optional


class HistorianError(Exception):
    """Base class for snapshot historian errors."""

    kind = "error"
    retryable = False

    def __init__(self, message: str, keys: Optional[Iterable[Any]] = None):
        super().__init__(message)
        self.keys: List[Any] = list(keys or [])
        # Set by the runner when the error aborts a run
        self.result = None


class ValidationError(HistorianError):
    """Malformed input row (missing key/timestamp) or an invalid interval."""

    kind = "validation"


class WriteConflictError(HistorianError):
    """Another writer changed a current interval this run intended to close."""

    kind = "write_conflict"
    retryable = True


class SchemaMismatchError(HistorianError):
    """A tracked column is missing from the input or the historized table."""

    kind = "schema_mismatch"

    def __init__(self, message: str, columns: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.columns: List[str] = sorted(columns or [])


class RunInProgressError(HistorianError):
    """A run for the same target table is currently writing."""

    kind = "run_in_progress"


class QualityCheckError(HistorianError):
    """One or more error-severity data-quality checks failed."""

    kind = "quality_check"

    def __init__(self, message: str, failures=None, keys: Optional[Iterable[Any]] = None):
        super().__init__(message, keys=keys)
        self.failures = list(failures or [])


class ConfigError(ValueError):
    """Snapshot configuration is malformed."""
