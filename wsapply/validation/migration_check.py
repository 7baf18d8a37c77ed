"""Migration reversibility check.

A migration without reverse SQL cannot be rolled back and blocks the apply.
Operations with no obvious inverse in the reverse SQL are noted in the
details; that heuristic is informational and never fails the check.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from wsapply.models.bundle import Bundle, Migration
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome

NAME = "MigrationReversibilityCheck"

OPERATION_PATTERNS = [
    ("CREATE TABLE", re.compile(r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)),
    ("DROP TABLE", re.compile(r"DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)),
    ("ADD COLUMN", re.compile(r"ALTER\s+TABLE\s+[\"`]?(\w+)[\"`]?\s+ADD\s+(?:COLUMN\s+)?[\"`]?(\w+)", re.IGNORECASE)),
    ("DROP COLUMN", re.compile(r"ALTER\s+TABLE\s+[\"`]?(\w+)[\"`]?\s+DROP\s+(?:COLUMN\s+)?[\"`]?(\w+)", re.IGNORECASE)),
    ("CREATE INDEX", re.compile(r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)),
    ("DROP INDEX", re.compile(r"DROP\s+INDEX\s+(?:IF\s+EXISTS\s+)?[\"`]?(\w+)", re.IGNORECASE)),
]

INVERSES = {
    "CREATE TABLE": "DROP TABLE",
    "DROP TABLE": "CREATE TABLE",
    "ADD COLUMN": "DROP COLUMN",
    "DROP COLUMN": "ADD COLUMN",
    "CREATE INDEX": "DROP INDEX",
    "DROP INDEX": "CREATE INDEX",
}


@dataclass(frozen=True)
class Operation:
    type: str
    target: str

    def __str__(self) -> str:
        return f"{self.type} {self.target}"


def extract_operations(sql: str) -> list[Operation]:
    ops: list[Operation] = []
    for op_type, pattern in OPERATION_PATTERNS:
        for match in pattern.finditer(sql):
            ops.append(Operation(op_type, ".".join(match.groups()).lower()))
    return ops


def inverse_notes(forward: str, reverse: str) -> list[str]:
    """List forward operations with no matching inverse in the reverse SQL."""
    reverse_ops = set(extract_operations(reverse))
    notes = []
    for op in extract_operations(forward):
        if Operation(INVERSES[op.type], op.target) not in reverse_ops:
            notes.append(f"Forward operation '{op}' has no inverse in reverse migration")
    return notes


def _migration_problems(migration: Migration) -> list[str]:
    problems = []
    if not (migration.sql_forward or "").strip():
        problems.append("Missing forward migration SQL")
    if not migration.reversible:
        problems.append("Missing reverse migration SQL")
    return problems


def check_migrations(bundle: Bundle) -> CheckOutcome:
    migrations = bundle.migrations
    if not migrations:
        return CheckOutcome.success("No migrations to validate", migrations_checked=0)

    issues: list[dict] = []
    notes: list[dict] = []
    for migration in migrations:
        problems = _migration_problems(migration)
        if problems:
            issues.append({"migration_id": migration.id, "issues": problems})
            continue
        found = inverse_notes(migration.sql_forward, migration.sql_reverse)
        if found:
            notes.append({"migration_id": migration.id, "notes": found})

    if issues:
        return CheckOutcome.failure(
            f"{len(issues)} migration(s) not reversible",
            total_migrations=len(migrations),
            non_reversible=len(issues),
            issues=issues,
            notes=notes,
        )

    details: dict = {"migrations_checked": len(migrations)}
    if notes:
        details["notes"] = notes
    return CheckOutcome.success(f"All {len(migrations)} migration(s) are reversible", **details)


def migration_check() -> Check:
    return Check(name=NAME, level=CheckLevel.BLOCKING, run=check_migrations)
