"""Workspace collaborators: contracts plus local-disk, subprocess and SQLite implementations."""

from wsapply.workspace.database import SQLiteMigrationRunner
from wsapply.workspace.exec import SubprocessCommandRunner
from wsapply.workspace.fs import LocalFileStore, WorkspaceViolation
from wsapply.workspace.interfaces import (
    CommandResult,
    CommandRunner,
    FileStore,
    MigrationRunner,
    SnapshotStore,
)
from wsapply.workspace.store import InMemorySnapshotStore, JsonSnapshotStore

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FileStore",
    "InMemorySnapshotStore",
    "JsonSnapshotStore",
    "LocalFileStore",
    "MigrationRunner",
    "SQLiteMigrationRunner",
    "SnapshotStore",
    "SubprocessCommandRunner",
    "WorkspaceViolation",
]
