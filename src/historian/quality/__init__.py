"""Data-quality checks for input batches and historized tables."""

from historian.quality.checks import (
    CheckRegistry,
    CheckResult,
    CheckSuite,
    CheckTarget,
    DataCheck,
    Severity,
    default_registry,
    history_suite,
)

__all__ = [
    "CheckRegistry",
    "CheckResult",
    "CheckSuite",
    "CheckTarget",
    "DataCheck",
    "Severity",
    "default_registry",
    "history_suite",
]
