"""
Data-quality checks.

A check is a named predicate over a list of rows (plain dicts for input
batches, HistorizedRecord objects for history) that returns the indices of
the failing rows. Checks are registered by name in a CheckRegistry and
declared per snapshot, in code or YAML:

    tests:
      - test: unique
        column: id
      - test: accepted_values
        column: status
        values: [active, churned]
        severity: warn

Severity decides what a failure does: 'error' aborts the run with
QualityCheckError, 'warn' only logs.

Row checks run on the normalized input before diffing. History checks
(single_current_interval, contiguous_intervals) run on the historized
intervals inside the write transaction, so a failure rolls the run back.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from historian.exceptions import QualityCheckError
from historian.utils.logging_config import get_logger

logger = get_logger(__name__)


class Severity(str, Enum):
    ERROR = "error"
    WARN = "warn"


class CheckTarget(str, Enum):
    """What a check evaluates: normalized input rows or the historized intervals."""

    ROWS = "rows"
    HISTORY = "history"


@dataclass
class RegisteredCheck:
    name: str
    func: Callable[..., List[int]]
    required: Sequence[str] = ()
    optional: Sequence[str] = ()
    target: CheckTarget = CheckTarget.ROWS
    # Parameters that must be callables (declarable in code only)
    callables: Sequence[str] = ()


@dataclass
class CheckResult:
    name: str
    severity: Severity
    failing_rows: List[int] = field(default_factory=list)
    failing_keys: List[Any] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failing_rows

    def describe(self) -> str:
        if self.passed:
            return f"{self.name}: passed"
        sample = ", ".join(repr(k) for k in self.failing_keys[:5])
        more = "" if len(self.failing_keys) <= 5 else f" (+{len(self.failing_keys) - 5} more)"
        return f"{self.name}: {len(self.failing_rows)} failing row(s); keys {sample}{more}"


class CheckRegistry:
    """Maps check names to predicate functions."""

    def __init__(self):
        self._checks: Dict[str, RegisteredCheck] = {}

    def register(self, name: str, required: Sequence[str] = (), optional: Sequence[str] = (),
                 target: CheckTarget = CheckTarget.ROWS, callables: Sequence[str] = ()):
        """Decorator registering a predicate under name."""
        def decorator(func):
            self._checks[name] = RegisteredCheck(
                name, func, tuple(required), tuple(optional), target, tuple(callables)
            )
            return func
        return decorator

    def get(self, name: str) -> RegisteredCheck:
        try:
            return self._checks[name]
        except KeyError:
            raise KeyError(f"Unknown check '{name}'. Valid checks: {', '.join(self.names())}")

    def names(self) -> List[str]:
        return sorted(self._checks)

    def __contains__(self, name: str) -> bool:
        return name in self._checks


default_registry = CheckRegistry()


def _value(row: Any, column: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(column)
    return getattr(row, column, None)


@default_registry.register("not_null", required=("column",))
def not_null(rows: Sequence[Any], column: str) -> List[int]:
    return [i for i, row in enumerate(rows) if _value(row, column) is None]


@default_registry.register("unique", required=("column",))
def unique(rows: Sequence[Any], column: str) -> List[int]:
    positions = defaultdict(list)
    for i, row in enumerate(rows):
        value = _value(row, column)
        if value is not None:
            positions[value].append(i)
    return sorted(i for group in positions.values() if len(group) > 1 for i in group)


@default_registry.register("accepted_values", required=("column", "values"))
def accepted_values(rows: Sequence[Any], column: str, values: Iterable[Any]) -> List[int]:
    allowed = set(values)
    return [
        i for i, row in enumerate(rows)
        if _value(row, column) is not None and _value(row, column) not in allowed
    ]


@default_registry.register("relationships", required=("column", "to_values"))
def relationships(rows: Sequence[Any], column: str, to_values: Iterable[Any]) -> List[int]:
    """Every non-null value must exist in the referenced key set."""
    referenced = set(to_values)
    return [
        i for i, row in enumerate(rows)
        if _value(row, column) is not None and _value(row, column) not in referenced
    ]


@default_registry.register("expression", required=("predicate",), callables=("predicate",))
def expression(rows: Sequence[Any], predicate: Callable[[Any], bool]) -> List[int]:
    """Rows for which predicate(row) is falsy."""
    return [i for i, row in enumerate(rows) if not predicate(row)]


def _by_key(records: Sequence[Any]) -> Dict[Any, List[int]]:
    grouped = defaultdict(list)
    for i, record in enumerate(records):
        grouped[record.natural_key].append(i)
    return grouped


@default_registry.register("single_current_interval", target=CheckTarget.HISTORY)
def single_current_interval(records: Sequence[Any]) -> List[int]:
    """Keys with more than one open interval."""
    failing = []
    for indices in _by_key(records).values():
        open_rows = [i for i in indices if records[i].valid_to is None]
        if len(open_rows) > 1:
            failing.extend(open_rows)
    return sorted(failing)


@default_registry.register("contiguous_intervals", target=CheckTarget.HISTORY)
def contiguous_intervals(records: Sequence[Any]) -> List[int]:
    """
    Intervals of a key must not overlap, must each be non-empty, and every
    closed interval must end exactly where the next one starts. A gap is
    only allowed after the key's history was closed by a hard delete, which
    shows up as a closed interval followed by a later reopening.
    """
    failing = set()
    for indices in _by_key(records).values():
        ordered = sorted(indices, key=lambda i: records[i].valid_from)
        for i in ordered:
            record = records[i]
            if record.valid_to is not None and record.valid_to <= record.valid_from:
                failing.add(i)
        for earlier, later in zip(ordered, ordered[1:]):
            prev, nxt = records[earlier], records[later]
            if prev.valid_to is None or prev.valid_to > nxt.valid_from:
                failing.update((earlier, later))
    return sorted(failing)


@dataclass
class DataCheck:
    """A check instance: which registered test, with which parameters and severity."""

    test: str
    severity: Severity = Severity.ERROR
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        column = self.params.get("column")
        return f"{self.test}({column})" if column else self.test

    @classmethod
    def from_declaration(cls, declaration: Mapping[str, Any]) -> "DataCheck":
        params = {k: v for k, v in declaration.items() if k not in ("test", "severity")}
        return cls(
            test=declaration["test"],
            severity=Severity(declaration.get("severity", Severity.ERROR.value)),
            params=params,
        )

    def evaluate(self, rows: Sequence[Any], key_column: Optional[str] = None,
                 registry: CheckRegistry = default_registry) -> CheckResult:
        check = registry.get(self.test)
        failing = check.func(rows, **self.params)

        keys = []
        for i in failing:
            row = rows[i]
            if hasattr(row, "natural_key"):
                keys.append(row.natural_key)
            elif key_column is not None:
                keys.append(_value(row, key_column))
            else:
                keys.append(i)
        return CheckResult(self.name, self.severity, list(failing), keys)


class CheckSuite:
    """Ordered set of checks evaluated together against one row set."""

    def __init__(self, checks: Optional[Iterable[DataCheck]] = None,
                 registry: CheckRegistry = default_registry):
        self.checks = list(checks or [])
        self.registry = registry

    @classmethod
    def from_declarations(cls, declarations: Iterable[Mapping[str, Any]],
                          registry: CheckRegistry = default_registry) -> "CheckSuite":
        return cls([DataCheck.from_declaration(d) for d in declarations], registry)

    def __bool__(self) -> bool:
        return bool(self.checks)

    def for_target(self, target: CheckTarget) -> "CheckSuite":
        """The checks of this suite that evaluate the given kind of rows."""
        return CheckSuite(
            [check for check in self.checks if self.registry.get(check.test).target == target],
            self.registry,
        )

    def run(self, rows: Sequence[Any], key_column: Optional[str] = None) -> List[CheckResult]:
        return [check.evaluate(rows, key_column, self.registry) for check in self.checks]

    def enforce(self, rows: Sequence[Any], key_column: Optional[str] = None,
                target: str = "rows") -> List[CheckResult]:
        """
        Run every check; log warn-level failures, raise on error-level ones.

        Raises:
            QualityCheckError: carrying all error-severity failures
        """
        results = self.run(rows, key_column)
        errors = []
        for result in results:
            if result.passed:
                logger.debug(f"[{target}] {result.describe()}")
            elif result.severity == Severity.WARN:
                logger.warning(f"[{target}] {result.describe()}")
            else:
                logger.error(f"[{target}] {result.describe()}")
                errors.append(result)

        if errors:
            keys = []
            for result in errors:
                keys.extend(k for k in result.failing_keys if k not in keys)
            raise QualityCheckError(
                f"{len(errors)} data-quality check(s) failed on {target}: "
                + "; ".join(r.describe() for r in errors),
                failures=errors,
                keys=keys,
            )
        return results


def history_suite(severity: Severity = Severity.ERROR) -> CheckSuite:
    """Checks every historized table must pass: one open interval per key, contiguous history."""
    return CheckSuite([
        DataCheck("single_current_interval", severity),
        DataCheck("contiguous_intervals", severity),
    ])


def validate_check_declaration(declaration: Any, prefix: str,
                               registry: CheckRegistry = default_registry) -> List[str]:
    """Problems with one declared check, as messages (empty when valid)."""
    if not isinstance(declaration, dict):
        return [f"{prefix}: must be a mapping, got {type(declaration).__name__}"]

    errors: List[str] = []
    test = declaration.get("test")
    if not test:
        return [f"{prefix}: missing required 'test' field"]
    if test not in registry:
        return [f"{prefix}: unknown test '{test}'. Valid tests: " + ", ".join(registry.names())]

    check = registry.get(test)
    for param in check.required:
        if declaration.get(param) is None:
            errors.append(f"{prefix}: '{test}' requires '{param}' field")

    allowed = set(check.required) | set(check.optional) | {"test", "severity"}
    unknown = set(declaration) - allowed
    if unknown:
        errors.append(f"{prefix}: unknown field(s) for '{test}': " + ", ".join(sorted(unknown)))

    for param in check.callables:
        if declaration.get(param) is not None and not callable(declaration[param]):
            errors.append(
                f"{prefix}: '{param}' of '{test}' must be a callable; "
                f"'{test}' checks can only be declared in code"
            )

    for list_param in ("values", "to_values"):
        if list_param in declaration and not isinstance(declaration[list_param], list):
            errors.append(f"{prefix}: '{list_param}' must be a list")

    severity = declaration.get("severity", Severity.ERROR.value)
    if severity not in {s.value for s in Severity}:
        errors.append(f"{prefix}: severity must be 'error' or 'warn', got '{severity}'")

    return errors
