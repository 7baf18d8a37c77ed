"""Collaborator contracts consumed by the apply engine.

The engine never touches disks, databases or processes directly; the
surrounding application supplies objects satisfying these protocols.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from wsapply.models.snapshot import Snapshot


@dataclass(frozen=True)
class CommandResult:
    """Outcome of running one shell command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class FileStore(Protocol):
    """Workspace file access. Paths are workspace-relative POSIX strings."""

    def exists(self, path: str) -> bool: ...

    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> None: ...

    def delete(self, path: str) -> None: ...

    def remove_dir(self, path: str) -> bool:
        """Remove an empty directory. Returns False if it still has entries."""
        ...


@runtime_checkable
class MigrationRunner(Protocol):
    def execute(self, sql: str) -> None: ...

    def mark_applied(self, migration_id: str) -> None: ...

    def is_applied(self, migration_id: str) -> bool: ...

    def snapshot_database(self) -> bytes: ...

    def restore_database(self, blob: bytes) -> None: ...


@runtime_checkable
class CommandRunner(Protocol):
    def execute(self, command: str) -> CommandResult: ...


@runtime_checkable
class SnapshotStore(Protocol):
    def save(self, snapshot: Snapshot) -> None: ...

    def load(self, snapshot_id: str) -> Snapshot | None: ...

    def list_ids(self) -> list[str]: ...
