"""Shared in-memory collaborators for the apply engine tests."""

import json
from pathlib import PurePosixPath

import pytest

from wsapply.apply import ApplyOrchestrator
from wsapply.validation import ValidationGate, default_checks
from wsapply.workspace import CommandResult, InMemorySnapshotStore


class MemoryFileStore:
    """FileStore over a dict. Directories exist implicitly above every file."""

    def __init__(self, files=None, dirs=()):
        self.files = dict(files or {})
        self.dirs = set(dirs)
        for path in self.files:
            self._add_parents(path)
        self.fail_on_write = set()
        self.fail_on_delete = set()
        self.writes = []

    def _add_parents(self, path):
        for parent in PurePosixPath(path).parents:
            if str(parent) not in ("", "."):
                self.dirs.add(str(parent))

    def exists(self, path):
        return path in self.files or path in self.dirs

    def read(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def write(self, path, content):
        if path in self.fail_on_write:
            self.fail_on_write.discard(path)  # fail once
            raise OSError(f"disk full writing {path}")
        self._add_parents(path)
        self.files[path] = content
        self.writes.append(path)

    def delete(self, path):
        if path in self.fail_on_delete:
            raise PermissionError(f"cannot delete {path}")
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def remove_dir(self, path):
        prefix = path + "/"
        if any(p.startswith(prefix) for p in self.files) or any(d.startswith(prefix) for d in self.dirs):
            return False
        self.dirs.discard(path)
        return True


class FakeMigrationRunner:
    """Records executed SQL; the 'database' is the executed list plus applied ids."""

    def __init__(self, applied=()):
        self.executed = []
        self.applied = set(applied)
        self.fail_on = set()  # SQL substrings that raise
        self.restored = 0

    def execute(self, sql):
        for marker in self.fail_on:
            if marker in sql:
                raise RuntimeError(f"syntax error near {marker!r}")
        self.executed.append(sql)

    def mark_applied(self, migration_id):
        self.applied.add(migration_id)

    def is_applied(self, migration_id):
        return migration_id in self.applied

    def snapshot_database(self):
        return json.dumps({"executed": self.executed, "applied": sorted(self.applied)}).encode()

    def restore_database(self, blob):
        data = json.loads(blob)
        self.executed = list(data["executed"])
        self.applied = set(data["applied"])
        self.restored += 1


class FakeCommandRunner:
    def __init__(self, exit_codes=None):
        self.exit_codes = dict(exit_codes or {})
        self.calls = []

    def execute(self, command):
        self.calls.append(command)
        code = self.exit_codes.get(command, 0)
        return CommandResult(exit_code=code, stdout="", stderr="boom" if code else "")


@pytest.fixture
def fs():
    return MemoryFileStore()


@pytest.fixture
def db():
    return FakeMigrationRunner()


@pytest.fixture
def commands():
    return FakeCommandRunner()


@pytest.fixture
def store():
    return InMemorySnapshotStore()


@pytest.fixture
def orchestrator(fs, db, commands, store):
    return ApplyOrchestrator(
        fs,
        migration_runner=db,
        command_runner=commands,
        snapshot_store=store,
        gate=ValidationGate(default_checks()),
    )
