"""Test coverage check: new or changed code files must ship with tests."""

from __future__ import annotations

from pathlib import PurePosixPath

from wsapply.models.bundle import Bundle, FileChange
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome
from wsapply.validation.languages import is_code_path

NAME = "TestCoverageCheck"
DEFAULT_THRESHOLD = 80.0


def _stem(path: str) -> str:
    return PurePosixPath(path).stem


def matches_test(source_path: str, test_path: str) -> bool:
    """True if the test file name follows one of the usual naming patterns."""
    name = _stem(source_path)
    test = _stem(test_path)
    return test in (
        name,
        f"test_{name}",
        f"{name}_test",
        f"{name}.test",
        f"{name}.spec",
    )


def _has_test(change: FileChange, tests: tuple[FileChange, ...]) -> bool:
    return any(
        t.source_file == change.path or matches_test(change.path, t.path)
        for t in tests
    )


def check_coverage(bundle: Bundle, threshold: float = DEFAULT_THRESHOLD) -> CheckOutcome:
    code_files = [
        f for f in bundle.files
        if f.writes_content and is_code_path(f.path)
    ]
    if not code_files:
        return CheckOutcome.success(
            "No code files requiring tests",
            code_files=0,
            tested_files=0,
            coverage=100.0,
            threshold=threshold,
        )

    tests = tuple(bundle.tests)
    tested = [f.path for f in code_files if _has_test(f, tests)]
    untested = [f.path for f in code_files if f.path not in tested]
    coverage = round(len(tested) / len(code_files) * 100, 1)

    details = {
        "code_files": len(code_files),
        "tested_files": len(tested),
        "coverage": coverage,
        "threshold": threshold,
    }
    if coverage < threshold:
        return CheckOutcome.failure(
            f"Test coverage {coverage:.1f}% is below threshold {threshold:g}%",
            untested_files=untested,
            **details,
        )
    return CheckOutcome.success(
        f"Test coverage {coverage:.1f}% meets threshold {threshold:g}%", **details
    )


def coverage_check(threshold: float = DEFAULT_THRESHOLD) -> Check:
    if not 0 <= threshold <= 100:
        raise ValueError(f"Coverage threshold must be between 0 and 100, got {threshold}")

    def run(bundle: Bundle) -> CheckOutcome:
        return check_coverage(bundle, threshold)

    return Check(name=NAME, level=CheckLevel.BLOCKING, run=run)
