"""Tests for the wsapply command line."""

import json
import tempfile
from pathlib import Path

from click.testing import CliRunner

from wsapply import __version__
from wsapply.audit_log import AuditLogger
from wsapply.cli import main


def _write_bundle(tmpdir: str, data: dict, name: str = "bundle.json") -> str:
    path = Path(tmpdir) / name
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def _workspace(tmpdir: str) -> Path:
    ws = Path(tmpdir) / "ws"
    ws.mkdir()
    return ws


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_validate_passes():
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [{"path": "a.txt", "content": "x"}]})
        result = CliRunner().invoke(main, ["validate", bundle])
    assert result.exit_code == 0, result.output
    assert "Valid!" in result.output


def test_validate_blocks_irreversible_migration():
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _write_bundle(tmpdir, {
            "id": "b1",
            "migrations": [{"id": "m1", "sql_forward": "CREATE TABLE t (id INT)", "sql_reverse": ""}],
        })
        result = CliRunner().invoke(main, ["validate", bundle])
    assert result.exit_code == 1
    assert "MigrationReversibilityCheck" in result.output


def test_validate_strict_fails_on_warnings():
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [{"path": "x.html", "content": "document.write(1)"}]})
        relaxed = CliRunner().invoke(main, ["validate", bundle])
        strict = CliRunner().invoke(main, ["validate", bundle, "--strict"])
    assert relaxed.exit_code == 0
    assert strict.exit_code == 1


def test_validate_coverage_threshold_option():
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [{"path": "app.py", "content": "x = 1\n"}]})
        default = CliRunner().invoke(main, ["validate", bundle])
        lowered = CliRunner().invoke(main, ["validate", bundle, "--coverage-threshold", "0"])
    assert default.exit_code == 1
    assert lowered.exit_code == 0


def test_validate_invalid_bundle():
    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": "nope"})
        result = CliRunner().invoke(main, ["validate", bundle])
    assert result.exit_code == 1
    assert "Invalid bundle" in result.output


def test_apply_json_success_and_audit_trail():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [{"path": "a.txt", "content": "hello"}]})

        result = CliRunner().invoke(main, ["apply", bundle, "--workspace", str(ws), "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["applied"]["files"] == [{"path": "a.txt", "action": "create"}]
        assert (ws / "a.txt").read_text(encoding="utf-8") == "hello"

        events = AuditLogger(ws / ".wsapply" / "audit.jsonl").get_events(resource_id="b1")
        assert events[-1].action == "complete"


def test_apply_failure_exit_code_and_rollback():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        (ws / "a.txt").write_text("local edit", encoding="utf-8")
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [
            {"path": "a.txt", "action": "update", "content": "new", "expected_prior_content": "original"},
        ]})

        aborted = CliRunner().invoke(main, ["apply", bundle, "-w", str(ws)])
        assert aborted.exit_code == 1
        assert (ws / "a.txt").read_text(encoding="utf-8") == "local edit"

        forced = CliRunner().invoke(main, ["apply", bundle, "-w", str(ws), "--on-conflict", "use-new"])
        assert forced.exit_code == 0, forced.output
        assert (ws / "a.txt").read_text(encoding="utf-8") == "new"


def test_apply_with_database_and_manual_rollback():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        bundle = _write_bundle(tmpdir, {
            "id": "b1",
            "files": [{"path": "a.txt", "content": "hello"}],
            "migrations": [{"id": "m1", "sql_forward": "CREATE TABLE t (id INT)", "sql_reverse": "DROP TABLE t"}],
        })
        runner = CliRunner()

        applied = runner.invoke(main, ["apply", bundle, "-w", str(ws), "--database", "app.db"])
        assert applied.exit_code == 0, applied.output
        assert (ws / "app.db").exists()

        listing = runner.invoke(main, ["snapshots", "-w", str(ws)])
        assert listing.exit_code == 0
        assert "Snapshots (1)" in listing.output
        snapshot_id = next((ws / ".wsapply" / "snapshots").glob("*.json")).stem

        restored = runner.invoke(main, ["rollback", snapshot_id, "-w", str(ws), "--database", "app.db"])
        assert restored.exit_code == 0, restored.output
        assert not (ws / "a.txt").exists()
        assert "database" in restored.output


def test_rollback_unknown_snapshot_is_critical():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        result = CliRunner().invoke(main, ["rollback", "snapshot_missing", "-w", str(ws)])
    assert result.exit_code == 2
    assert "Rollback failed" in result.output


def test_snapshots_empty():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        result = CliRunner().invoke(main, ["snapshots", "-w", str(ws)])
    assert result.exit_code == 0
    assert "No snapshots" in result.output


def test_workspace_config_is_applied():
    with tempfile.TemporaryDirectory() as tmpdir:
        ws = _workspace(tmpdir)
        (ws / ".wsapply.yaml").write_text("coverage_threshold: 0\naudit_log: null\n", encoding="utf-8")
        bundle = _write_bundle(tmpdir, {"id": "b1", "files": [{"path": "app.py", "content": "x = 1\n"}]})

        result = CliRunner().invoke(main, ["apply", bundle, "-w", str(ws)])

        assert result.exit_code == 0, result.output
        assert not (ws / ".wsapply" / "audit.jsonl").exists()
