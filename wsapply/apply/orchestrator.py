"""Apply orchestrator: all-or-nothing application of a bundle.

One call to ``ApplyOrchestrator.apply`` walks a fixed sequence of phases:

    unpacking -> snapshot_creating -> validating -> conflict_checking
    -> pre_commands -> applying_files -> running_migrations
    -> post_commands -> verifying -> complete

Nothing in the workspace changes before ``pre_commands``. A failure up to that
point is reported as-is. A failure from ``pre_commands`` onwards restores the
snapshot taken in ``snapshot_creating``; if that restore fails too the result
is flagged ``critical``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from wsapply.apply.commands import CommandClassifier
from wsapply.apply.conflicts import ConflictResolver, ResolverFn
from wsapply.apply.rollback import RollbackCoordinator
from wsapply.apply.snapshots import SnapshotManager
from wsapply.errors import (
    ApplyCancelled,
    ApplyError,
    BundleFormatError,
    CommandError,
    FileApplicationError,
    MigrationError,
    RollbackFailure,
    SnapshotError,
    ValidationError,
    VerificationError,
)
from wsapply.models.bundle import Bundle, Command, FileAction, FileChange, Migration
from wsapply.models.snapshot import Snapshot
from wsapply.validation.gate import ValidationGate, ValidationResult
from wsapply.workspace.interfaces import (
    CommandResult,
    CommandRunner,
    FileStore,
    MigrationRunner,
    SnapshotStore,
)
from wsapply.workspace.store import InMemorySnapshotStore

logger = logging.getLogger(__name__)


class ApplyState(Enum):
    UNPACKING = "unpacking"
    SNAPSHOT_CREATING = "snapshot_creating"
    VALIDATING = "validating"
    CONFLICT_CHECKING = "conflict_checking"
    PRE_COMMANDS = "pre_commands"
    APPLYING_FILES = "applying_files"
    RUNNING_MIGRATIONS = "running_migrations"
    POST_COMMANDS = "post_commands"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


class ProgressEvent(Enum):
    """Events passed to ``on_progress``. This set is the whole progress contract."""

    UNPACKING = "unpacking"
    SNAPSHOT_CREATING = "snapshot_creating"
    VALIDATING = "validating"
    CONFLICTS_DETECTED = "conflicts_detected"
    FILE_APPLYING = "file_applying"
    MIGRATION_START = "migration_start"
    COMMAND_START = "command_start"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"
    ROLLBACK_STARTING = "rollback_starting"
    ROLLBACK_COMPLETE = "rollback_complete"
    ROLLBACK_FAILED = "rollback_failed"


ProgressFn = Callable[[ProgressEvent, dict[str, Any]], None]

# Phases after which the workspace may have been changed
MUTATING_STATES = {
    ApplyState.PRE_COMMANDS,
    ApplyState.APPLYING_FILES,
    ApplyState.RUNNING_MIGRATIONS,
    ApplyState.POST_COMMANDS,
    ApplyState.VERIFYING,
    ApplyState.COMPLETE,
}

# Error type used to wrap an unexpected exception, by the phase it escaped from
_PHASE_ERRORS: dict[ApplyState, type[ApplyError]] = {
    ApplyState.UNPACKING: BundleFormatError,
    ApplyState.SNAPSHOT_CREATING: SnapshotError,
    ApplyState.VALIDATING: ValidationError,
    ApplyState.CONFLICT_CHECKING: ValidationError,
    ApplyState.PRE_COMMANDS: CommandError,
    ApplyState.APPLYING_FILES: FileApplicationError,
    ApplyState.RUNNING_MIGRATIONS: MigrationError,
    ApplyState.POST_COMMANDS: CommandError,
    ApplyState.VERIFYING: VerificationError,
    ApplyState.COMPLETE: VerificationError,
}


@dataclass
class ApplyOptions:
    skip_snapshot: bool = False
    skip_validation: bool = False  # Skips the gate and conflict checking
    skip_commands: bool = False
    skip_migrations: bool = False
    on_progress: ProgressFn | None = None
    on_conflict: ResolverFn | None = None
    should_cancel: Callable[[], bool] | None = None


@dataclass(frozen=True)
class ApplyWarning:
    """Advisory problem reported alongside a (possibly successful) result."""

    source: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"source": self.source, "message": self.message}


@dataclass(frozen=True)
class ExecutedCommand:
    command: Command
    result: CommandResult
    stage: str  # "pre" or "post"

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command.command,
            "stage": self.stage,
            "exit_code": self.result.exit_code,
        }


@dataclass
class AppliedChanges:
    files: list[FileChange] = field(default_factory=list)
    migrations: list[Migration] = field(default_factory=list)
    commands: list[ExecutedCommand] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": [{"path": f.path, "action": f.action.value} for f in self.files],
            "migrations": [m.id for m in self.migrations],
            "commands": [c.to_dict() for c in self.commands],
        }


@dataclass
class ApplyResult:
    """Outcome of one apply call.

    ``phase`` is where the run stopped: ``complete`` on success, otherwise the
    phase the first error came from.
    """

    success: bool
    snapshot: Snapshot | None = None
    applied: AppliedChanges = field(default_factory=AppliedChanges)
    errors: list[ApplyError] = field(default_factory=list)
    warnings: list[ApplyWarning] = field(default_factory=list)
    critical: bool = False
    phase: str = ""
    rolled_back: bool = False
    validation: ValidationResult | None = None

    @property
    def error(self) -> ApplyError | None:
        return self.errors[0] if self.errors else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "phase": self.phase,
            "snapshot_id": self.snapshot.id if self.snapshot else None,
            "applied": self.applied.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "critical": self.critical,
            "rolled_back": self.rolled_back,
            "validation": (
                {
                    "passed": self.validation.passed,
                    "blockers": [b.check for b in self.validation.blockers],
                    "warnings": [w.check for w in self.validation.warnings],
                }
                if self.validation is not None
                else None
            ),
        }


@dataclass
class _Run:
    """Mutable bookkeeping for a single apply call."""

    options: ApplyOptions
    snapshot: Snapshot | None = None
    applied: AppliedChanges = field(default_factory=AppliedChanges)
    warnings: list[ApplyWarning] = field(default_factory=list)
    validation: ValidationResult | None = None


class ApplyOrchestrator:
    """Applies bundles to one workspace through injected collaborators.

    Not reentrant: a second ``apply`` while one is running raises
    ``RuntimeError``. Serialising bundles across orchestrators is the
    caller's job.
    """

    def __init__(
        self,
        file_store: FileStore,
        *,
        migration_runner: MigrationRunner | None = None,
        command_runner: CommandRunner | None = None,
        snapshot_store: SnapshotStore | None = None,
        gate: ValidationGate | None = None,
        conflict_resolver: ConflictResolver | None = None,
        classifier: CommandClassifier | None = None,
    ) -> None:
        self.file_store = file_store
        self.migration_runner = migration_runner
        self.command_runner = command_runner
        self.snapshots = SnapshotManager(
            file_store, snapshot_store or InMemorySnapshotStore(), migration_runner
        )
        self.rollback = RollbackCoordinator(self.snapshots)
        self.gate = gate if gate is not None else ValidationGate()
        self.conflicts = conflict_resolver or ConflictResolver()
        self.classifier = classifier or CommandClassifier()
        self.state: ApplyState | None = None
        self._busy = False

    def apply(self, bundle: Bundle | Mapping[str, Any], options: ApplyOptions | None = None) -> ApplyResult:
        if self._busy:
            raise RuntimeError("An apply is already in progress on this orchestrator")
        self._busy = True
        try:
            return self._apply(bundle, options or ApplyOptions())
        finally:
            self._busy = False

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _apply(self, raw: Bundle | Mapping[str, Any], options: ApplyOptions) -> ApplyResult:
        run = _Run(options)
        try:
            self._enter(run, ApplyState.UNPACKING, ProgressEvent.UNPACKING, {"message": "Unpacking bundle"})
            bundle = raw if isinstance(raw, Bundle) else Bundle.from_dict(raw)
            changes = bundle.all_file_changes()
            migrations = [] if options.skip_migrations else list(bundle.migrations)
            commands = [] if options.skip_commands else list(bundle.commands)
            logger.info(
                "Applying bundle %s: %d file(s), %d migration(s), %d command(s)",
                bundle.id, len(changes), len(migrations), len(commands),
            )

            if options.skip_snapshot:
                logger.warning("Snapshot skipped for bundle %s; a failure cannot be rolled back", bundle.id)
                run.warnings.append(ApplyWarning("snapshot", "Snapshot skipped; a failure cannot be rolled back"))
            else:
                self._enter(run, ApplyState.SNAPSHOT_CREATING, ProgressEvent.SNAPSHOT_CREATING,
                            {"bundle_id": bundle.id, "files": len(changes)})
                run.snapshot = self.snapshots.create(bundle.id, changes, migrations)

            self._check_cancel(options, ApplyState.VALIDATING)
            if not options.skip_validation:
                self._enter(run, ApplyState.VALIDATING, ProgressEvent.VALIDATING,
                            {"checks": [name for name, _ in self.gate.checks]})
                self._validate(run, bundle)

                self._check_cancel(options, ApplyState.CONFLICT_CHECKING)
                self.state = ApplyState.CONFLICT_CHECKING
                changes = self._check_conflicts(run, changes, migrations)

            self._check_cancel(options, ApplyState.PRE_COMMANDS)
            pre, post = self.classifier.partition(commands)

            self.state = ApplyState.PRE_COMMANDS
            for cmd in pre:
                self._run_pre_command(run, cmd)

            self.state = ApplyState.APPLYING_FILES
            for i, change in enumerate(changes):
                self._apply_file(run, change, i, len(changes))

            self.state = ApplyState.RUNNING_MIGRATIONS
            for i, migration in enumerate(migrations):
                self._run_migration(run, migration, i, len(migrations))

            self.state = ApplyState.POST_COMMANDS
            for cmd in post:
                self._run_post_command(run, cmd)

            self._enter(run, ApplyState.VERIFYING, ProgressEvent.VERIFYING,
                        {"files": len(run.applied.files), "migrations": len(run.applied.migrations)})
            self._verify(run)

            self._enter(run, ApplyState.COMPLETE, ProgressEvent.COMPLETE, {
                "bundle_id": bundle.id,
                "files": len(run.applied.files),
                "migrations": len(run.applied.migrations),
                "commands": len(run.applied.commands),
                "snapshot_id": run.snapshot.id if run.snapshot else None,
            })
            logger.info("Bundle %s applied", bundle.id)
            return ApplyResult(
                success=True,
                snapshot=run.snapshot,
                applied=run.applied,
                warnings=run.warnings,
                phase=ApplyState.COMPLETE.value,
                validation=run.validation,
            )
        except Exception as e:
            return self._fail(run, self._wrap(e))

    def _enter(self, run: _Run, state: ApplyState, event: ProgressEvent, payload: dict[str, Any]) -> None:
        self.state = state
        self._emit(run, event, payload)

    def _emit(self, run: _Run, event: ProgressEvent, payload: dict[str, Any]) -> None:
        if run.options.on_progress is not None:
            run.options.on_progress(event, payload)

    def _check_cancel(self, options: ApplyOptions, next_state: ApplyState) -> None:
        if options.should_cancel is not None and options.should_cancel():
            raise ApplyCancelled(f"Apply cancelled before {next_state.value}", phase=next_state.value)

    def _validate(self, run: _Run, bundle: Bundle) -> None:
        result = self.gate.run_all(bundle)
        run.validation = result
        run.warnings.extend(ApplyWarning(w.check, w.message) for w in result.warnings)
        if not result.passed:
            names = ", ".join(b.check for b in result.blockers)
            raise ValidationError(
                f"Validation failed with {len(result.blockers)} blocker(s): {names}",
                phase=ApplyState.VALIDATING.value,
                result=result,
            )

    def _check_conflicts(
        self, run: _Run, changes: list[FileChange], migrations: list[Migration]
    ) -> list[FileChange]:
        phase = ApplyState.CONFLICT_CHECKING.value
        detection = self.conflicts.detect(changes, self.file_store)
        errors = list(detection.errors)

        if self.migration_runner is not None:
            for migration in migrations:
                if self.migration_runner.is_applied(migration.id):
                    errors.append({
                        "migration": migration.id,
                        "message": f"Migration {migration.id} has already been applied",
                    })

        if errors:
            raise ValidationError(
                f"Pre-apply checks failed with {len(errors)} error(s): {errors[0]['message']}",
                phase=phase,
                details={"errors": errors},
            )

        if not detection.conflicts:
            return changes

        self._emit(run, ProgressEvent.CONFLICTS_DETECTED,
                   {"conflicts": [c.to_dict() for c in detection.conflicts]})
        try:
            resolved = self.conflicts.resolve(detection.conflicts, run.options.on_conflict)
        except ApplyError as e:
            e.phase = e.phase or phase
            raise
        return self.conflicts.apply_resolutions(changes, resolved)

    def _run_pre_command(self, run: _Run, cmd: Command) -> None:
        self._emit(run, ProgressEvent.COMMAND_START, {"command": cmd.command, "stage": "pre"})
        result = self._execute(cmd)
        run.applied.commands.append(ExecutedCommand(cmd, result, "pre"))
        if not result.ok:
            raise CommandError(
                f"Pre-command failed: {cmd.command} (exit {result.exit_code})",
                phase=ApplyState.PRE_COMMANDS.value,
                details={"command": cmd.command, "exit_code": result.exit_code, "stderr": result.stderr},
            )

    def _run_post_command(self, run: _Run, cmd: Command) -> None:
        self._emit(run, ProgressEvent.COMMAND_START, {"command": cmd.command, "stage": "post"})
        try:
            result = self._execute(cmd)
        except Exception as e:
            logger.warning("Post-command %s raised: %s", cmd.command, e)
            run.warnings.append(ApplyWarning("command", f"Post-command failed: {cmd.command} ({e})"))
            return
        run.applied.commands.append(ExecutedCommand(cmd, result, "post"))
        if not result.ok:
            logger.warning("Post-command failed: %s (exit %d)", cmd.command, result.exit_code)
            run.warnings.append(
                ApplyWarning("command", f"Post-command failed: {cmd.command} (exit {result.exit_code})")
            )

    def _execute(self, cmd: Command) -> CommandResult:
        if self.command_runner is None:
            raise CommandError(f"No command runner configured to run: {cmd.command}")
        return self.command_runner.execute(cmd.command)

    def _apply_file(self, run: _Run, change: FileChange, index: int, total: int) -> None:
        self._emit(run, ProgressEvent.FILE_APPLYING, {
            "index": index, "total": total, "file": change.path, "action": change.action.value,
        })
        try:
            if change.action == FileAction.DELETE:
                self.file_store.delete(change.path)
            else:
                self.file_store.write(change.path, change.content or "")
        except Exception as e:
            raise FileApplicationError(
                f"Failed to apply {change.path}: {e}",
                phase=ApplyState.APPLYING_FILES.value,
                details={"file": change.path, "index": index},
                cause=e,
            ) from e
        run.applied.files.append(change)

    def _run_migration(self, run: _Run, migration: Migration, index: int, total: int) -> None:
        self._emit(run, ProgressEvent.MIGRATION_START, {
            "index": index, "total": total, "migration": migration.id,
        })
        if migration.data_loss_risk and migration.data_loss_risk != "none":
            logger.warning(
                "Running migration %s with %s data loss risk", migration.id, migration.data_loss_risk
            )
            run.warnings.append(ApplyWarning(
                f"migration:{migration.id}",
                f"Migration {migration.id} has {migration.data_loss_risk} data loss risk",
            ))
        try:
            if self.migration_runner is None:
                raise RuntimeError("no migration runner configured")
            self.migration_runner.execute(migration.sql_forward)
            self.migration_runner.mark_applied(migration.id)
        except Exception as e:
            raise MigrationError(
                f"Migration {migration.id} failed: {e}",
                phase=ApplyState.RUNNING_MIGRATIONS.value,
                details={"migration": migration.id, "index": index},
                cause=e,
            ) from e
        run.applied.migrations.append(migration)

    def _verify(self, run: _Run) -> None:
        problems: list[str] = []

        final: dict[str, FileChange] = {}
        for change in run.applied.files:
            final[change.path] = change  # Last change to a path wins

        for path, change in final.items():
            exists = self.file_store.exists(path)
            if change.action == FileAction.DELETE:
                if exists:
                    problems.append(f"File was not deleted: {path}")
            elif not exists:
                problems.append(f"File was not created/updated: {path}")
            elif self.file_store.read(path) != (change.content or ""):
                problems.append(f"File content mismatch: {path}")

        for migration in run.applied.migrations:
            if self.migration_runner is None or not self.migration_runner.is_applied(migration.id):
                problems.append(f"Migration not marked as applied: {migration.id}")

        if problems:
            raise VerificationError(
                f"Post-apply verification failed: {problems[0]}",
                phase=ApplyState.VERIFYING.value,
                details={"problems": problems},
            )

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _wrap(self, e: Exception) -> ApplyError:
        state = self.state or ApplyState.UNPACKING
        if isinstance(e, ApplyError):
            if not e.phase:
                e.phase = state.value
            return e
        error_cls = _PHASE_ERRORS.get(state, ApplyError)
        return error_cls(f"{type(e).__name__}: {e}", phase=state.value, cause=e)

    def _fail(self, run: _Run, error: ApplyError) -> ApplyResult:
        failed_in = self.state or ApplyState.UNPACKING
        mutated = failed_in in MUTATING_STATES
        logger.error("Apply failed in %s: %s", failed_in.value, error.message)

        result = ApplyResult(
            success=False,
            snapshot=run.snapshot,
            applied=run.applied,
            errors=[error],
            warnings=run.warnings,
            phase=error.phase or failed_in.value,
            validation=run.validation,
        )

        self.state = ApplyState.ERROR
        self._notify(run, ProgressEvent.ERROR, {
            "message": error.message, "phase": result.phase, "kind": error.kind.value,
        })

        if not mutated:
            return result
        if run.snapshot is None:
            logger.warning(
                "No snapshot was taken; the workspace may be left partially applied after %s",
                failed_in.value,
            )
            return result

        snapshot_id = run.snapshot.id
        self.state = ApplyState.ROLLING_BACK
        self._notify(run, ProgressEvent.ROLLBACK_STARTING, {"snapshot_id": snapshot_id})
        try:
            self.rollback.rollback(snapshot_id)
        except RollbackFailure as rf:
            self.state = ApplyState.ROLLBACK_FAILED
            result.critical = True
            result.errors.append(rf)
            self._notify(run, ProgressEvent.ROLLBACK_FAILED, {"snapshot_id": snapshot_id, "error": rf.message})
            return result

        self.state = ApplyState.ROLLED_BACK
        result.rolled_back = True
        self._notify(run, ProgressEvent.ROLLBACK_COMPLETE, {"snapshot_id": snapshot_id})
        return result

    def _notify(self, run: _Run, event: ProgressEvent, payload: dict[str, Any]) -> None:
        """Emit on the failure path, where a broken callback must not stop the rollback."""
        try:
            self._emit(run, event, payload)
        except Exception:
            logger.exception("Progress callback failed on %s", event.value)
