"""Validation gate: run release-quality checks over a bundle.

The gate holds an explicit, caller-constructed ordered list of checks. Each
check is a pure function of the bundle, tagged blocking or advisory. Only a
failing blocking check makes the gate fail; advisory failures are reported
as warnings.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

from wsapply.models.bundle import Bundle

logger = logging.getLogger(__name__)


class CheckLevel(Enum):
    BLOCKING = "blocking"  # Halts application
    ADVISORY = "advisory"  # Reported only


@dataclass(frozen=True)
class CheckOutcome:
    """What a check function returns."""

    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, **details: Any) -> "CheckOutcome":
        return cls(passed=True, message=message, details=details)

    @classmethod
    def failure(cls, message: str, **details: Any) -> "CheckOutcome":
        return cls(passed=False, message=message, details=details)


@dataclass(frozen=True)
class Check:
    """A named, levelled check function."""

    name: str
    level: CheckLevel
    run: Callable[[Bundle], CheckOutcome]


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check, as recorded by the gate."""

    check: str
    level: CheckLevel
    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationIssue:
    """A failing check, classified as blocker or warning."""

    check: str
    message: str
    level: CheckLevel
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationReport:
    total_checks: int
    passed_checks: int
    failed_checks: int
    results: tuple[CheckResult, ...] = ()


@dataclass(frozen=True)
class ValidationResult:
    """Result of running every check in the gate."""

    passed: bool
    blockers: tuple[ValidationIssue, ...] = ()
    warnings: tuple[ValidationIssue, ...] = ()
    report: ValidationReport = field(default_factory=lambda: ValidationReport(0, 0, 0))

    def summary(self) -> str:
        status = "PASS" if self.passed else "FAIL"
        return f"[{status}] {len(self.blockers)} blocker(s), {len(self.warnings)} warning(s)"


class ValidationGate:
    """Runs an ordered list of checks over a bundle."""

    def __init__(self, checks: Iterable[Check] | None = None) -> None:
        if checks is None:
            from wsapply.validation import default_checks

            checks = default_checks()
        self._checks: list[Check] = list(checks)
        names = [c.name for c in self._checks]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate check names in gate: {names}")

    @property
    def checks(self) -> list[tuple[str, CheckLevel]]:
        return [(c.name, c.level) for c in self._checks]

    def add_check(self, check: Check) -> None:
        if not callable(check.run):
            raise TypeError(f"Check {check.name} has no callable run()")
        if any(c.name == check.name for c in self._checks):
            raise ValueError(f"Check {check.name} already registered")
        self._checks.append(check)

    def remove_check(self, name: str) -> bool:
        before = len(self._checks)
        self._checks = [c for c in self._checks if c.name != name]
        return len(self._checks) != before

    def run_check(self, name: str, bundle: Bundle) -> CheckResult:
        """Run one named check in isolation.

        Raises:
            KeyError: If no check with that name is registered.
        """
        for check in self._checks:
            if check.name == name:
                return _run_one(check, bundle)
        raise KeyError(f'Check "{name}" not found')

    def run_all(self, bundle: Bundle) -> ValidationResult:
        results: list[CheckResult] = []
        blockers: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        for check in self._checks:
            result = _run_one(check, bundle)
            results.append(result)
            if result.passed:
                continue
            issue = ValidationIssue(
                check=result.check,
                message=result.message,
                level=result.level,
                details=result.details,
            )
            if result.level == CheckLevel.BLOCKING:
                blockers.append(issue)
            else:
                warnings.append(issue)

        passed_count = sum(1 for r in results if r.passed)
        report = ValidationReport(
            total_checks=len(results),
            passed_checks=passed_count,
            failed_checks=len(results) - passed_count,
            results=tuple(results),
        )
        result = ValidationResult(
            passed=not blockers,
            blockers=tuple(blockers),
            warnings=tuple(warnings),
            report=report,
        )

        if result.passed:
            logger.info(
                "Gate passed for bundle %s (%d/%d checks, %d warning(s))",
                bundle.id, passed_count, len(results), len(warnings),
            )
        else:
            logger.warning(
                "Gate failed for bundle %s with %d blocker(s) and %d warning(s)",
                bundle.id, len(blockers), len(warnings),
            )
        return result


def _run_one(check: Check, bundle: Bundle) -> CheckResult:
    try:
        outcome = check.run(bundle)
    except Exception as e:
        # A crashing check cannot vouch for the bundle; it counts as a blocker.
        logger.exception("Check %s raised", check.name)
        return CheckResult(
            check=check.name,
            level=CheckLevel.BLOCKING,
            passed=False,
            message=f"Check failed with error: {type(e).__name__}: {e}",
            details={"error": str(e)},
        )

    if not outcome.passed:
        log = logger.error if check.level == CheckLevel.BLOCKING else logger.warning
        log("[%s] %s", check.name, outcome.message)
    else:
        logger.debug("[%s] %s", check.name, outcome.message)

    return CheckResult(
        check=check.name,
        level=check.level,
        passed=outcome.passed,
        message=outcome.message,
        details=dict(outcome.details),
    )


def generate_summary(result: ValidationResult) -> str:
    """Render a deterministic, human-readable validation report."""
    rule = "=" * 40
    report = result.report
    lines = [
        rule,
        "Release Gate Validation Report",
        rule,
        "",
        f"Status: {'PASSED' if result.passed else 'FAILED'}",
        f"Checks: {report.passed_checks}/{report.total_checks} passed",
        f"Blockers: {len(result.blockers)}",
        f"Warnings: {len(result.warnings)}",
        "",
    ]

    for title, issues in (
        ("BLOCKERS (Must Fix)", result.blockers),
        ("WARNINGS (Recommended Fixes)", result.warnings),
    ):
        if not issues:
            continue
        lines.extend([rule, title, rule, ""])
        for check_name, grouped in _group_by_check(issues):
            lines.append(f"[{check_name}]")
            for issue in grouped:
                lines.append(f"  - {issue.message}")
                if issue.details:
                    detail = json.dumps(issue.details, indent=2, sort_keys=True, default=str)
                    lines.extend("      " + ln for ln in detail.splitlines())
            lines.append("")

    if result.passed and not result.warnings:
        lines.extend([rule, "All validation checks passed.", rule])

    return "\n".join(lines) + "\n"


def _group_by_check(issues: Iterable[ValidationIssue]) -> list[tuple[str, list[ValidationIssue]]]:
    groups: dict[str, list[ValidationIssue]] = {}
    for issue in issues:
        groups.setdefault(issue.check, []).append(issue)
    return list(groups.items())
