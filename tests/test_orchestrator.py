"""End-to-end tests for the apply orchestrator."""

import pytest

from wsapply.apply import (
    ApplyOptions,
    ApplyOrchestrator,
    ApplyState,
    ConflictResolution,
    ProgressEvent,
)
from wsapply.errors import (
    ApplyCancelled,
    CommandError,
    ConflictError,
    ErrorKind,
    FileApplicationError,
    MigrationError,
    RollbackFailure,
    ValidationError,
    VerificationError,
)
from wsapply.models import Bundle, Command, FileAction, FileChange, Migration


def _recorder():
    events = []

    def on_progress(event, payload):
        events.append((event, payload))

    return events, on_progress


def _migration(mid="m1", risk="none"):
    return Migration(mid, f"CREATE TABLE {mid} (id INTEGER)", f"DROP TABLE {mid}", data_loss_risk=risk)


# ── Success ──────────────────────────────────────────────────────────


def test_end_to_end_success(orchestrator, fs):
    result = orchestrator.apply({"id": "b1", "files": [{"path": "a.txt", "action": "create", "content": "x"}]})

    assert result.success is True
    assert result.errors == []
    assert len(result.applied.files) == 1
    assert fs.read("a.txt") == "x"
    assert result.phase == "complete"
    assert result.snapshot is not None
    assert orchestrator.state == ApplyState.COMPLETE


def test_full_bundle_applies_in_order(orchestrator, fs, db, commands):
    fs.files["old.txt"] = "bye"
    fs.files["cfg.txt"] = "v1"
    bundle = Bundle(
        id="b2",
        files=(
            FileChange("cfg.txt", FileAction.UPDATE, "v2", expected_prior_content="v1"),
            FileChange("old.txt", FileAction.DELETE),
        ),
        migrations=(_migration("m1"), _migration("m2")),
        commands=(Command("make build"), Command("npm install")),
    )

    result = orchestrator.apply(bundle)

    assert result.success is True, result.errors
    assert fs.files == {"cfg.txt": "v2"}
    assert db.applied == {"m1", "m2"}
    assert commands.calls == ["npm install", "make build"]
    assert [c.stage for c in result.applied.commands] == ["pre", "post"]
    assert [m.id for m in result.applied.migrations] == ["m1", "m2"]


def test_progress_events_in_order(orchestrator):
    events, on_progress = _recorder()
    bundle = Bundle(
        id="b3",
        files=(FileChange("a.txt", content="a"), FileChange("b.txt", content="b")),
        migrations=(_migration(),),
        commands=(Command("pip install -r requirements.txt"), Command("make")),
    )

    result = orchestrator.apply(bundle, ApplyOptions(on_progress=on_progress))

    assert result.success
    assert [e for e, _ in events] == [
        ProgressEvent.UNPACKING,
        ProgressEvent.SNAPSHOT_CREATING,
        ProgressEvent.VALIDATING,
        ProgressEvent.COMMAND_START,
        ProgressEvent.FILE_APPLYING,
        ProgressEvent.FILE_APPLYING,
        ProgressEvent.MIGRATION_START,
        ProgressEvent.COMMAND_START,
        ProgressEvent.VERIFYING,
        ProgressEvent.COMPLETE,
    ]
    file_payloads = [p for e, p in events if e == ProgressEvent.FILE_APPLYING]
    assert file_payloads[1] == {"index": 1, "total": 2, "file": "b.txt", "action": "create"}


def test_advisory_warnings_carried_into_result(orchestrator):
    bundle = Bundle(id="b", files=(FileChange("page.html", content="<script>document.write(x)</script>"),))
    result = orchestrator.apply(bundle)
    assert result.success
    assert [w.source for w in result.warnings] == ["SecurityCheck"]


def test_data_loss_risk_is_a_warning(orchestrator):
    result = orchestrator.apply(Bundle(id="b", migrations=(_migration("m1", risk="high"),)))
    assert result.success
    assert result.warnings[0].source == "migration:m1"
    assert "high data loss risk" in result.warnings[0].message


def test_post_command_failure_is_a_warning(orchestrator, fs, commands):
    commands.exit_codes["make test"] = 1
    result = orchestrator.apply(Bundle(id="b", files=(FileChange("a.txt", content="a"),),
                                       commands=(Command("make test"),)))
    assert result.success is True
    assert fs.read("a.txt") == "a"
    assert "Post-command failed: make test" in result.warnings[0].message


# ── Failures after mutation roll back ───────────────────────────────


def test_end_to_end_rollback(orchestrator, fs):
    fs.fail_on_write.add("b.txt")
    result = orchestrator.apply({"id": "b1", "files": [
        {"path": "a.txt", "content": "x"},
        {"path": "b.txt", "content": "y"},
    ]})

    assert result.success is False
    assert result.rolled_back is True
    assert isinstance(result.errors[0], FileApplicationError)
    assert result.errors[0].phase == "applying_files"
    assert fs.exists("a.txt") is False
    assert orchestrator.state == ApplyState.ROLLED_BACK


@pytest.mark.parametrize("fail_index", [0, 1, 2])
def test_atomicity_at_every_file_index(fs, db, commands, store, fail_index):
    fs.files.update({"f0.txt": "orig0", "f1.txt": "orig1"})
    changes = (
        FileChange("f0.txt", FileAction.UPDATE, "new0"),
        FileChange("f1.txt", FileAction.UPDATE, "new1"),
        FileChange("f2.txt", FileAction.CREATE, "new2"),
    )
    fs.fail_on_write.add(changes[fail_index].path)
    orchestrator = ApplyOrchestrator(fs, migration_runner=db, command_runner=commands, snapshot_store=store)

    result = orchestrator.apply(Bundle(id="b", files=changes, migrations=(_migration(),)))

    assert result.success is False
    assert result.rolled_back is True
    assert fs.files == {"f0.txt": "orig0", "f1.txt": "orig1"}
    assert db.applied == set()


def test_migration_failure_rolls_back_files_and_database(orchestrator, fs, db):
    db.fail_on.add("CREATE TABLE m2")
    result = orchestrator.apply(Bundle(
        id="b",
        files=(FileChange("a.txt", content="a"),),
        migrations=(_migration("m1"), _migration("m2")),
    ))

    assert isinstance(result.error, MigrationError)
    assert result.rolled_back
    assert not fs.exists("a.txt")
    assert db.applied == set()
    assert db.executed == []
    assert [m.id for m in result.applied.migrations] == ["m1"]


def test_pre_command_failure_rolls_back(orchestrator, fs, commands):
    commands.exit_codes["npm ci"] = 1
    result = orchestrator.apply(Bundle(id="b", files=(FileChange("a.txt", content="a"),),
                                       commands=(Command("npm ci"),)))

    assert isinstance(result.error, CommandError)
    assert result.error.phase == "pre_commands"
    assert result.rolled_back is True
    assert fs.writes == []


def test_verification_failure_rolls_back(fs, db, commands, store):
    class LossyStore(type(fs)):
        def read(self, path):
            return super().read(path) + "?" if path == "a.txt" else super().read(path)

    lossy = LossyStore()
    orchestrator = ApplyOrchestrator(lossy, migration_runner=db, command_runner=commands, snapshot_store=store)
    result = orchestrator.apply(Bundle(id="b", files=(FileChange("a.txt", content="a"),)))

    assert isinstance(result.error, VerificationError)
    assert "a.txt" in result.error.message
    assert result.rolled_back
    assert not lossy.exists("a.txt")


def test_rollback_failure_is_critical(orchestrator, fs):
    fs.files["a.txt"] = "orig"
    fs.fail_on_write.add("b.txt")
    events, on_progress = _recorder()

    def fail_restore_too(event, payload):
        on_progress(event, payload)
        if event == ProgressEvent.ROLLBACK_STARTING:
            fs.fail_on_write.add("a.txt")

    result = orchestrator.apply(
        Bundle(id="b", files=(
            FileChange("a.txt", FileAction.UPDATE, "new"),
            FileChange("b.txt", content="b"),
        )),
        ApplyOptions(on_progress=fail_restore_too),
    )

    assert result.success is False
    assert result.critical is True
    assert result.rolled_back is False
    assert len(result.errors) == 2
    assert isinstance(result.errors[0], FileApplicationError)
    assert isinstance(result.errors[1], RollbackFailure)
    assert [e for e, _ in events][-3:] == [
        ProgressEvent.ERROR,
        ProgressEvent.ROLLBACK_STARTING,
        ProgressEvent.ROLLBACK_FAILED,
    ]
    assert orchestrator.state == ApplyState.ROLLBACK_FAILED


def test_skip_snapshot_cannot_roll_back(orchestrator, fs, store):
    fs.fail_on_write.add("b.txt")
    result = orchestrator.apply(
        Bundle(id="b", files=(FileChange("a.txt", content="a"), FileChange("b.txt", content="b"))),
        ApplyOptions(skip_snapshot=True),
    )
    assert result.success is False
    assert result.rolled_back is False
    assert result.snapshot is None
    assert fs.read("a.txt") == "a"
    assert store.list_ids() == []
    assert [w.source for w in result.warnings] == ["snapshot"]


# ── Failures before mutation leave the workspace alone ──────────────


def test_validation_failure_does_not_touch_workspace(orchestrator, fs):
    events, on_progress = _recorder()
    result = orchestrator.apply(
        Bundle(id="b", files=(FileChange("a.json", content="{"),)),
        ApplyOptions(on_progress=on_progress),
    )

    assert isinstance(result.error, ValidationError)
    assert result.error.kind == ErrorKind.VALIDATION
    assert result.validation is not None and not result.validation.passed
    assert result.rolled_back is False
    assert fs.writes == []
    assert ProgressEvent.ROLLBACK_STARTING not in [e for e, _ in events]


def test_update_of_missing_file_fails_validation(orchestrator, fs):
    result = orchestrator.apply(Bundle(id="b", files=(FileChange("nope.txt", FileAction.UPDATE, "x"),)))
    assert isinstance(result.error, ValidationError)
    assert result.error.phase == "conflict_checking"
    assert "non-existent" in result.error.message


def test_already_applied_migration_fails_validation(orchestrator, db):
    db.applied.add("m1")
    result = orchestrator.apply(Bundle(id="b", migrations=(_migration("m1"),)))
    assert isinstance(result.error, ValidationError)
    assert "already been applied" in result.error.message
    assert db.executed == []


def test_conflict_without_resolver_fails_before_mutation(orchestrator, fs):
    fs.files["a.txt"] = "edited locally"
    events, on_progress = _recorder()
    result = orchestrator.apply(
        Bundle(id="b", files=(FileChange("a.txt", FileAction.UPDATE, "new", expected_prior_content="orig"),)),
        ApplyOptions(on_progress=on_progress),
    )

    assert isinstance(result.error, ConflictError)
    assert result.error.phase == "conflict_checking"
    assert fs.read("a.txt") == "edited locally"
    assert ProgressEvent.CONFLICTS_DETECTED in [e for e, _ in events]
    assert result.rolled_back is False


def test_conflict_keep_local_skips_change(orchestrator, fs):
    fs.files["a.txt"] = "edited locally"
    bundle = Bundle(id="b", files=(
        FileChange("a.txt", FileAction.UPDATE, "new", expected_prior_content="orig"),
        FileChange("b.txt", content="b"),
    ))
    result = orchestrator.apply(bundle, ApplyOptions(on_conflict=lambda c: ConflictResolution.KEEP_LOCAL))

    assert result.success
    assert fs.read("a.txt") == "edited locally"
    assert fs.read("b.txt") == "b"
    assert [f.path for f in result.applied.files] == ["b.txt"]


def test_conflict_use_new_overwrites(orchestrator, fs):
    fs.files["a.txt"] = "edited locally"
    bundle = Bundle(id="b", files=(FileChange("a.txt", FileAction.UPDATE, "new", expected_prior_content="orig"),))
    result = orchestrator.apply(bundle, ApplyOptions(on_conflict=lambda c: ConflictResolution.USE_NEW))
    assert result.success
    assert fs.read("a.txt") == "new"


@pytest.mark.parametrize("calls_before_cancel", [0, 1, 2])
def test_cancellation_before_mutation(orchestrator, fs, calls_before_cancel):
    polls = []

    def should_cancel():
        polls.append(1)
        return len(polls) > calls_before_cancel

    result = orchestrator.apply(
        Bundle(id="b", files=(FileChange("a.txt", content="a"),)),
        ApplyOptions(should_cancel=should_cancel),
    )

    assert isinstance(result.error, ApplyCancelled)
    assert result.rolled_back is False
    assert fs.writes == []


def test_cancel_never_polled_after_mutation_starts(orchestrator, commands):
    polls = []

    def should_cancel():
        polls.append(orchestrator.state)
        return False

    result = orchestrator.apply(
        Bundle(id="b", files=(FileChange("a.txt", content="a"),), commands=(Command("make"),)),
        ApplyOptions(should_cancel=should_cancel),
    )
    assert result.success
    assert len(polls) == 3
    assert ApplyState.APPLYING_FILES not in polls


# ── Skip flags ───────────────────────────────────────────────────────


def test_skip_validation_skips_gate_and_conflicts(orchestrator, fs):
    fs.files["a.txt"] = "edited locally"
    events, on_progress = _recorder()
    bundle = Bundle(id="b", files=(
        FileChange("a.txt", FileAction.UPDATE, "new", expected_prior_content="orig"),
        FileChange("bad.json", content="{"),
    ))
    result = orchestrator.apply(bundle, ApplyOptions(skip_validation=True, on_progress=on_progress))

    assert result.success
    assert result.validation is None
    assert fs.read("a.txt") == "new"
    assert ProgressEvent.VALIDATING not in [e for e, _ in events]


def test_skip_commands_and_migrations(orchestrator, db, commands):
    bundle = Bundle(id="b", migrations=(_migration(),), commands=(Command("npm install"), Command("make")))
    result = orchestrator.apply(bundle, ApplyOptions(skip_commands=True, skip_migrations=True))
    assert result.success
    assert commands.calls == []
    assert db.applied == set()
    assert result.snapshot.database_snapshot is None


# ── Misc ─────────────────────────────────────────────────────────────


def test_malformed_bundle_reported_as_bundle_format_error(orchestrator):
    result = orchestrator.apply({"id": "b", "files": [{"path": "a", "action": "rename"}]})
    assert result.success is False
    assert result.error.kind == ErrorKind.BUNDLE_FORMAT
    assert result.phase == "unpacking"


def test_apply_is_not_reentrant(orchestrator):
    inner = []

    def reenter(event, payload):
        if event == ProgressEvent.VALIDATING:
            with pytest.raises(RuntimeError):
                orchestrator.apply(Bundle(id="inner"))
            inner.append(True)

    result = orchestrator.apply(Bundle(id="outer"), ApplyOptions(on_progress=reenter))
    assert result.success
    assert inner == [True]


def test_result_to_dict(orchestrator, fs):
    fs.fail_on_write.add("a.txt")
    data = orchestrator.apply(Bundle(id="b", files=(FileChange("a.txt", content="a"),))).to_dict()
    assert data["success"] is False
    assert data["rolled_back"] is True
    assert data["errors"][0]["kind"] == "file_application"
    assert data["errors"][0]["phase"] == "applying_files"
    assert data["snapshot_id"].startswith("snapshot_")
