"""Schema check: required top-level fields present and correctly typed.

Bundles normally come through ``Bundle.from_dict``, but callers may build
them by hand, so every field is re-checked here rather than trusted.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import PurePosixPath

from wsapply.models.bundle import BUNDLE_TYPES, Bundle, Command, FileAction, FileChange, Migration
from wsapply.validation.gate import Check, CheckLevel, CheckOutcome

NAME = "SchemaCheck"


def check_schema(bundle: Bundle) -> CheckOutcome:
    errors: list[str] = []

    if not isinstance(bundle.id, str) or not bundle.id.strip():
        errors.append("Missing required field: id")
    if not isinstance(bundle.type, str) or not bundle.type:
        errors.append("Missing required field: type")
    elif bundle.type not in BUNDLE_TYPES:
        errors.append(f"type must be one of: {', '.join(BUNDLE_TYPES)} (got '{bundle.type}')")
    if not isinstance(bundle.created_at, str):
        errors.append("created_at must be a string")
    if not isinstance(bundle.metadata, Mapping):
        errors.append("metadata must be a mapping")

    _check_file_changes(bundle.files, "files", errors)
    _check_file_changes(bundle.tests, "tests", errors)
    for i, test in enumerate(bundle.tests):
        if isinstance(test, FileChange) and test.action != FileAction.CREATE:
            errors.append(f"tests[{i}] ({test.path}): tests must use action 'create'")

    _check_migrations(bundle.migrations, errors)

    if not isinstance(bundle.commands, (list, tuple)):
        errors.append("commands must be a list")
    else:
        for i, cmd in enumerate(bundle.commands):
            if not isinstance(cmd, Command) or not isinstance(cmd.command, str) or not cmd.command.strip():
                errors.append(f"commands[{i}] must be a non-empty command")

    if errors:
        return CheckOutcome.failure(
            f"Schema validation failed with {len(errors)} error(s)", errors=errors
        )
    return CheckOutcome.success("Bundle schema valid")


def _check_file_changes(changes, section: str, errors: list[str]) -> None:
    if not isinstance(changes, (list, tuple)):
        errors.append(f"{section} must be a list")
        return

    seen: set[str] = set()
    for i, change in enumerate(changes):
        where = f"{section}[{i}]"
        if not isinstance(change, FileChange):
            errors.append(f"{where} must be a FileChange")
            continue
        if not isinstance(change.path, str) or not change.path.strip():
            errors.append(f"{where} missing required field: path")
            continue
        where = f"{where} ({change.path})"
        problem = _path_problem(change.path)
        if problem:
            errors.append(f"{where}: {problem}")
        if not isinstance(change.action, FileAction):
            errors.append(f"{where}: action must be one of {[a.value for a in FileAction]}")
            continue
        if change.writes_content and not isinstance(change.content, str):
            errors.append(f"{where}: content is required for action '{change.action.value}'")
        if change.path in seen:
            errors.append(f"{where}: path appears more than once in {section}")
        seen.add(change.path)


def _check_migrations(migrations, errors: list[str]) -> None:
    if not isinstance(migrations, (list, tuple)):
        errors.append("migrations must be a list")
        return

    seen: set[str] = set()
    for i, migration in enumerate(migrations):
        if not isinstance(migration, Migration):
            errors.append(f"migrations[{i}] must be a Migration")
            continue
        if not isinstance(migration.id, str) or not migration.id.strip():
            errors.append(f"migrations[{i}] missing required field: id")
        elif migration.id in seen:
            errors.append(f"migrations[{i}]: duplicate migration id '{migration.id}'")
        else:
            seen.add(migration.id)
        if not isinstance(migration.sql_forward, str):
            errors.append(f"migrations[{i}]: sql_forward must be a string")
        if not isinstance(migration.sql_reverse, str):
            errors.append(f"migrations[{i}]: sql_reverse must be a string")


def _path_problem(path: str) -> str | None:
    p = PurePosixPath(path.replace("\\", "/"))
    if p.is_absolute() or path.startswith("\\"):
        return "path must be relative to the workspace"
    if ".." in p.parts:
        return "path must not contain '..'"
    return None


def schema_check() -> Check:
    return Check(name=NAME, level=CheckLevel.BLOCKING, run=check_schema)
