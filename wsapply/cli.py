"""wsapply CLI: validate and atomically apply change bundles to a workspace."""

import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from wsapply import __version__

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CRITICAL = 2

ON_CONFLICT_CHOICES = ["abort", "use-new", "keep-local"]


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """wsapply: apply change bundles to a workspace, all or nothing.

    Bundles are gated by release checks, compared against the live
    workspace for drift, applied in a fixed order and rolled back from a
    snapshot if anything fails.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


def _setup_logging(ctx: click.Context, level: str = "WARNING") -> None:
    from wsapply.logging_utils import configure_logging

    configure_logging("DEBUG" if ctx.obj.get("verbose") else level)


def _load_bundle_or_exit(bundle_path: str):
    from wsapply.errors import BundleFormatError
    from wsapply.models.bundle import load_bundle

    try:
        return load_bundle(bundle_path)
    except BundleFormatError as e:
        console.print(f"[red]Invalid bundle:[/] {escape(e.message)}")
        sys.exit(EXIT_FAILED)


def _integrity_check_or_exit(public_key: str | Path | None, require_signature: bool):
    from wsapply.validation import signature_check

    try:
        pem = Path(public_key).read_bytes() if public_key is not None else None
        return signature_check(pem, require_signature=require_signature)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid public key:[/] {escape(str(e))}")
        sys.exit(EXIT_FAILED)


def _load_config_or_exit(workspace: str):
    from wsapply.config import load_config

    try:
        return load_config(workspace)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/] {escape(str(e))}")
        sys.exit(EXIT_FAILED)


# ── Validate ─────────────────────────────────────────────────────────


@main.command()
@click.argument("bundle_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--coverage-threshold", type=click.FloatRange(0, 100), default=80.0, show_default=True,
              help="Minimum percentage of code files that must ship with tests")
@click.option("--strict", is_flag=True, help="Treat warnings as errors")
@click.option("--public-key", type=click.Path(exists=True, dir_okay=False), default=None,
              help="PEM public key used to verify the bundle signature")
@click.option("--require-signature", is_flag=True, help="Reject unsigned bundles")
@click.pass_context
def validate(
    ctx: click.Context,
    bundle_path: str,
    coverage_threshold: float,
    strict: bool,
    public_key: str | None,
    require_signature: bool,
):
    """Run the release gate over a bundle without touching any workspace."""
    from wsapply.validation import ValidationGate, default_checks, generate_summary

    _setup_logging(ctx)
    bundle = _load_bundle_or_exit(bundle_path)

    console.print(f"\n[bold blue]wsapply[/] validating bundle: {escape(bundle.id or bundle_path)}\n")

    integrity = _integrity_check_or_exit(public_key, require_signature)
    gate = ValidationGate([*default_checks(coverage_threshold), integrity])
    result = gate.run_all(bundle)

    for check_result in result.report.results:
        if check_result.passed:
            mark = "[green]v[/]"
        elif check_result.level.value == "blocking":
            mark = "[red]x[/]"
        else:
            mark = "[yellow]![/]"
        console.print(f"  {mark} {check_result.check}: {escape(check_result.message)}")

    if result.blockers or result.warnings:
        console.print()
        console.print(escape(generate_summary(result)), highlight=False)

    if not result.passed:
        console.print("\n[red]FAIL[/]")
        sys.exit(EXIT_FAILED)
    if strict and result.warnings:
        console.print("\n[red]FAIL[/] (strict mode: warnings treated as errors)")
        sys.exit(EXIT_FAILED)
    console.print("\n[green]Valid![/]")


# ── Apply ────────────────────────────────────────────────────────────


def _conflict_policy(choice: str):
    from wsapply.apply.conflicts import ConflictResolution

    resolution = {
        "abort": ConflictResolution.ABORT,
        "use-new": ConflictResolution.USE_NEW,
        "keep-local": ConflictResolution.KEEP_LOCAL,
    }[choice]
    return lambda conflict: resolution


def _progress_printer():
    from wsapply.apply.orchestrator import ProgressEvent

    def show(event: ProgressEvent, payload: dict) -> None:
        if event == ProgressEvent.FILE_APPLYING:
            console.print(f"  [cyan]{payload['action']:>6}[/] {escape(payload['file'])}")
        elif event == ProgressEvent.MIGRATION_START:
            console.print(f"  [cyan]migrate[/] {escape(payload['migration'])}")
        elif event == ProgressEvent.COMMAND_START:
            console.print(f"  [cyan]{payload['stage']:>6}[/] $ {escape(payload['command'])}")
        elif event == ProgressEvent.CONFLICTS_DETECTED:
            files = ", ".join(c["file"] for c in payload["conflicts"])
            console.print(f"  [yellow]conflicts:[/] {escape(files)}")
        elif event == ProgressEvent.ERROR:
            console.print(f"  [red]error in {payload['phase']}:[/] {escape(payload['message'])}")
        elif event in (ProgressEvent.ROLLBACK_STARTING, ProgressEvent.ROLLBACK_COMPLETE):
            console.print(f"  [yellow]{event.value.replace('_', ' ')}[/] {payload['snapshot_id']}")
        elif event == ProgressEvent.ROLLBACK_FAILED:
            console.print(f"  [bold red]rollback failed:[/] {escape(payload['error'])}")
        else:
            console.print(f"[dim]{event.value.replace('_', ' ')}[/]")

    return show


def _chain(*callbacks):
    active = [cb for cb in callbacks if cb is not None]

    def emit(event, payload):
        for cb in active:
            cb(event, payload)

    return emit


@main.command(name="apply")
@click.argument("bundle_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--workspace", "-w", default=".", type=click.Path(file_okay=False), help="Workspace root")
@click.option("--database", default=None, help="SQLite database for migrations (overrides config)")
@click.option("--skip-snapshot", is_flag=True, help="Do not snapshot (no rollback possible)")
@click.option("--skip-validation", is_flag=True, help="Skip the release gate and conflict checking")
@click.option("--skip-commands", is_flag=True, help="Do not run bundle commands")
@click.option("--skip-migrations", is_flag=True, help="Do not run migrations")
@click.option("--on-conflict", type=click.Choice(ON_CONFLICT_CHOICES), default="abort", show_default=True,
              help="How to resolve files that changed since the bundle was made")
@click.option("--public-key", type=click.Path(exists=True, dir_okay=False), default=None,
              help="PEM public key used to verify the bundle signature (overrides config)")
@click.option("--require-signature", is_flag=True, help="Reject unsigned bundles")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def apply_cmd(
    ctx: click.Context,
    bundle_path: str,
    workspace: str,
    database: str | None,
    skip_snapshot: bool,
    skip_validation: bool,
    skip_commands: bool,
    skip_migrations: bool,
    on_conflict: str,
    public_key: str | None,
    require_signature: bool,
    as_json: bool,
):
    """Apply a bundle to a workspace, rolling back on any failure.

    Exit status is 0 on success, 1 on a (rolled back) failure and 2 when the
    rollback itself failed and the workspace needs manual repair.
    """
    from wsapply.apply import ApplyOptions, ApplyOrchestrator, CommandClassifier
    from wsapply.audit_log import AuditLogger
    from wsapply.validation import ValidationGate, default_checks
    from wsapply.workspace import (
        JsonSnapshotStore,
        LocalFileStore,
        SQLiteMigrationRunner,
        SubprocessCommandRunner,
    )

    root = Path(workspace)
    if not root.is_dir():
        console.print(f"[red]Workspace does not exist:[/] {escape(workspace)}")
        sys.exit(EXIT_FAILED)

    config = _load_config_or_exit(workspace)
    # Keep stdout parseable in JSON mode
    _setup_logging(ctx, "WARNING" if as_json else config.log_level)
    bundle = _load_bundle_or_exit(bundle_path)
    integrity = _integrity_check_or_exit(
        public_key or config.resolve(root, config.public_key),
        require_signature or config.require_signature,
    )

    file_store = LocalFileStore.from_path(root)
    db_path = database or config.database
    runner = SQLiteMigrationRunner(config.resolve(root, db_path)) if db_path else None
    audit_path = config.resolve(root, config.audit_log)
    audit = AuditLogger(audit_path) if audit_path else None

    orchestrator = ApplyOrchestrator(
        file_store,
        migration_runner=runner,
        command_runner=SubprocessCommandRunner(cwd=str(file_store.root), timeout_s=config.command_timeout),
        snapshot_store=JsonSnapshotStore(config.resolve(root, config.snapshot_dir)),
        gate=ValidationGate([*default_checks(config.coverage_threshold), integrity]),
        classifier=CommandClassifier(config.pre_command_patterns),
    )
    options = ApplyOptions(
        skip_snapshot=skip_snapshot,
        skip_validation=skip_validation,
        skip_commands=skip_commands,
        skip_migrations=skip_migrations,
        on_progress=_chain(
            None if as_json else _progress_printer(),
            audit.progress_sink(bundle.id) if audit else None,
        ),
        on_conflict=_conflict_policy(on_conflict),
    )

    if not as_json:
        console.print(f"\n[bold blue]wsapply[/] applying {escape(bundle.id)} to {escape(str(file_store.root))}\n")
    try:
        result = orchestrator.apply(bundle, options)
    finally:
        if runner is not None:
            runner.close()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_result(result)

    if result.critical:
        sys.exit(EXIT_CRITICAL)
    if not result.success:
        sys.exit(EXIT_FAILED)


def _print_result(result) -> None:
    for w in result.warnings:
        console.print(f"  [yellow]![/] {escape(w.source)}: {escape(w.message)}")

    if result.success:
        summary = (
            f"[green]Applied[/] {len(result.applied.files)} file(s), "
            f"{len(result.applied.migrations)} migration(s), "
            f"{len(result.applied.commands)} command(s)"
        )
        if result.snapshot:
            summary += f"\nSnapshot: {result.snapshot.id}"
        console.print(Panel(summary, title="Apply Result"))
        return

    lines = [f"[red]Failed[/] in {result.phase}"]
    lines.extend(f"  [red]x[/] {escape(e.message)}" for e in result.errors)
    if result.validation is not None and not result.validation.passed:
        lines.extend(f"  [red]x[/] {b.check}: {escape(b.message)}" for b in result.validation.blockers)
    if result.critical:
        lines.append("[bold red]Rollback failed: the workspace needs manual repair[/]")
    elif result.rolled_back:
        lines.append(f"[yellow]Rolled back[/] to {result.snapshot.id}")
    console.print(Panel("\n".join(lines), title="Apply Result"))


# ── Snapshots ────────────────────────────────────────────────────────


@main.command()
@click.option("--workspace", "-w", default=".", type=click.Path(exists=True, file_okay=False), help="Workspace root")
@click.pass_context
def snapshots(ctx: click.Context, workspace: str):
    """List the snapshots stored for a workspace."""
    from wsapply.apply.snapshots import SnapshotManager
    from wsapply.workspace import JsonSnapshotStore, LocalFileStore

    config = _load_config_or_exit(workspace)
    _setup_logging(ctx, config.log_level)

    manager = SnapshotManager(
        LocalFileStore.from_path(workspace),
        JsonSnapshotStore(config.resolve(workspace, config.snapshot_dir)),
    )
    summaries = manager.list()

    if not summaries:
        console.print("[yellow]No snapshots.[/]")
        return

    table = Table(title=f"Snapshots ({len(summaries)})")
    table.add_column("ID", style="cyan")
    table.add_column("Bundle")
    table.add_column("Created")
    table.add_column("Files", justify="right")
    table.add_column("DB", justify="center")

    for s in summaries:
        db = "[green]Y[/]" if s.has_database else "[dim]-[/]"
        table.add_row(s.id, escape(s.bundle_id), s.created_at, str(s.file_count), db)

    console.print(table)


# ── Rollback ─────────────────────────────────────────────────────────


@main.command()
@click.argument("snapshot_id")
@click.option("--workspace", "-w", default=".", type=click.Path(exists=True, file_okay=False), help="Workspace root")
@click.option("--database", default=None, help="SQLite database to restore (overrides config)")
@click.pass_context
def rollback(ctx: click.Context, snapshot_id: str, workspace: str, database: str | None):
    """Restore a workspace from a stored snapshot."""
    from wsapply.apply import RollbackCoordinator, SnapshotManager
    from wsapply.audit_log import AuditLogger
    from wsapply.errors import RollbackFailure
    from wsapply.workspace import JsonSnapshotStore, LocalFileStore, SQLiteMigrationRunner

    config = _load_config_or_exit(workspace)
    _setup_logging(ctx, config.log_level)

    db_path = database or config.database
    runner = SQLiteMigrationRunner(config.resolve(workspace, db_path)) if db_path else None
    manager = SnapshotManager(
        LocalFileStore.from_path(workspace),
        JsonSnapshotStore(config.resolve(workspace, config.snapshot_dir)),
        runner,
    )
    audit_path = config.resolve(workspace, config.audit_log)

    try:
        snapshot = RollbackCoordinator(manager).rollback(snapshot_id)
    except RollbackFailure as e:
        if audit_path:
            AuditLogger(audit_path).log_event(
                "manual_rollback", "snapshot", snapshot_id, details=e.to_dict(), success=False
            )
        console.print(f"[bold red]Rollback failed:[/] {escape(e.message)}")
        sys.exit(EXIT_CRITICAL)
    finally:
        if runner is not None:
            runner.close()

    if audit_path:
        AuditLogger(audit_path).log_event(
            "manual_rollback", "snapshot", snapshot_id, details={"bundle_id": snapshot.bundle_id}
        )
    console.print(
        f"[green]Restored[/] {len(snapshot.file_snapshots)} file(s) from {snapshot.id}"
        + (" and the database" if snapshot.has_database else "")
    )


if __name__ == "__main__":
    main()
