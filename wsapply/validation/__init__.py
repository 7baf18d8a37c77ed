"""Release-quality checks run over a bundle before it touches the workspace."""

from wsapply.validation.coverage_check import DEFAULT_THRESHOLD, coverage_check
from wsapply.validation.dependency_check import dependency_check
from wsapply.validation.gate import (
    Check,
    CheckLevel,
    CheckOutcome,
    CheckResult,
    ValidationGate,
    ValidationIssue,
    ValidationReport,
    ValidationResult,
    generate_summary,
)
from wsapply.validation.migration_check import migration_check
from wsapply.validation.schema_check import schema_check
from wsapply.validation.security_check import security_check
from wsapply.validation.signature_check import BundleVerifier, signature_check
from wsapply.validation.syntax_check import syntax_check


def default_checks(coverage_threshold: float = DEFAULT_THRESHOLD) -> list[Check]:
    """The standard gate: schema, syntax, security, coverage, migrations."""
    return [
        schema_check(),
        syntax_check(),
        security_check(),
        coverage_check(coverage_threshold),
        migration_check(),
    ]


__all__ = [
    "BundleVerifier",
    "Check",
    "CheckLevel",
    "CheckOutcome",
    "CheckResult",
    "ValidationGate",
    "ValidationIssue",
    "ValidationReport",
    "ValidationResult",
    "coverage_check",
    "default_checks",
    "dependency_check",
    "generate_summary",
    "migration_check",
    "schema_check",
    "security_check",
    "signature_check",
    "syntax_check",
]
