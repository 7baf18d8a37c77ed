"""Snapshot models: captured pre-mutation state for one apply attempt."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class FileSnapshot:
    """Pre-apply state of one touched path.

    ``content=None`` with ``existed=False`` means the path did not exist, so
    restoring it means deleting whatever the apply created there.
    """

    path: str
    content: str | None
    existed: bool


@dataclass(frozen=True)
class DirectorySnapshot:
    """A directory that did not exist before the apply and may be created by it."""

    path: str
    existed: bool = False


@dataclass(frozen=True)
class Snapshot:
    """Immutable record of everything needed to undo one apply attempt."""

    id: str
    bundle_id: str
    created_at: str
    file_snapshots: tuple[FileSnapshot, ...] = ()
    directory_snapshots: tuple[DirectorySnapshot, ...] = ()
    database_snapshot: bytes | None = None

    @property
    def has_database(self) -> bool:
        return self.database_snapshot is not None

    def get_file(self, path: str) -> FileSnapshot | None:
        for fs in self.file_snapshots:
            if fs.path == path:
                return fs
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bundle_id": self.bundle_id,
            "created_at": self.created_at,
            "file_snapshots": [
                {"path": f.path, "content": f.content, "existed": f.existed}
                for f in self.file_snapshots
            ],
            "directory_snapshots": [
                {"path": d.path, "existed": d.existed} for d in self.directory_snapshots
            ],
            "database_snapshot": (
                base64.b64encode(self.database_snapshot).decode("ascii")
                if self.database_snapshot is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        db = data.get("database_snapshot")
        return cls(
            id=data["id"],
            bundle_id=data.get("bundle_id", ""),
            created_at=data.get("created_at", ""),
            file_snapshots=tuple(
                FileSnapshot(path=f["path"], content=f.get("content"), existed=bool(f.get("existed")))
                for f in data.get("file_snapshots", [])
            ),
            directory_snapshots=tuple(
                DirectorySnapshot(path=d["path"], existed=bool(d.get("existed", False)))
                for d in data.get("directory_snapshots", [])
            ),
            database_snapshot=base64.b64decode(db) if db is not None else None,
        )


@dataclass
class SnapshotSummary:
    """Lightweight listing entry for stored snapshots."""

    id: str
    bundle_id: str
    created_at: str
    file_count: int = 0
    has_database: bool = False
    paths: list[str] = field(default_factory=list)
