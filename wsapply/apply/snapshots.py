"""Snapshot manager: capture and restore pre-apply workspace state.

A snapshot records, for every path a bundle touches, whether it existed and
what it contained; every ancestor directory that did not exist yet; and,
when the bundle carries migrations, an opaque database image. Restoring a
snapshot puts files back first, then removes the directories the apply
created (deepest first, only if empty), then restores the database.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import PurePosixPath

from wsapply.errors import SnapshotError
from wsapply.models.bundle import FileChange, Migration
from wsapply.models.snapshot import DirectorySnapshot, FileSnapshot, Snapshot, SnapshotSummary
from wsapply.workspace.interfaces import FileStore, MigrationRunner, SnapshotStore

logger = logging.getLogger(__name__)


def new_snapshot_id() -> str:
    return f"snapshot_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _ancestors(path: str) -> list[str]:
    """Ancestor directories of a path, outermost first."""
    parents = [str(p) for p in PurePosixPath(path).parents if str(p) not in ("", ".")]
    return list(reversed(parents))


class SnapshotManager:
    """Creates, persists and restores snapshots through injected collaborators."""

    def __init__(
        self,
        file_store: FileStore,
        snapshot_store: SnapshotStore,
        migration_runner: MigrationRunner | None = None,
    ) -> None:
        self.file_store = file_store
        self.snapshot_store = snapshot_store
        self.migration_runner = migration_runner

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def create(
        self,
        bundle_id: str,
        file_changes: Sequence[FileChange],
        migrations: Sequence[Migration] = (),
    ) -> Snapshot:
        """Capture the state of every path the changes touch.

        Raises:
            SnapshotError: If any file, the database, or the store fails.
        """
        snapshot_id = new_snapshot_id()
        try:
            files, dirs = self._capture_files(file_changes)
            database = self._capture_database(migrations)
            snapshot = Snapshot(
                id=snapshot_id,
                bundle_id=bundle_id,
                created_at=datetime.now(timezone.utc).isoformat(),
                file_snapshots=tuple(files),
                directory_snapshots=tuple(dirs),
                database_snapshot=database,
            )
            self.snapshot_store.save(snapshot)
        except SnapshotError:
            raise
        except Exception as e:
            raise SnapshotError(
                f"Failed to create snapshot for bundle {bundle_id}: {e}",
                phase="snapshot_creating",
                cause=e,
            ) from e

        logger.info(
            "Created %s for bundle %s (%d file(s), %d new dir(s), database=%s)",
            snapshot.id, bundle_id, len(files), len(dirs), snapshot.has_database,
        )
        return snapshot

    def _capture_files(
        self, file_changes: Sequence[FileChange]
    ) -> tuple[list[FileSnapshot], list[DirectorySnapshot]]:
        files: list[FileSnapshot] = []
        dirs: list[DirectorySnapshot] = []
        seen_files: set[str] = set()
        seen_dirs: set[str] = set()

        for change in file_changes:
            if change.path in seen_files:
                continue
            seen_files.add(change.path)

            if self.file_store.exists(change.path):
                files.append(FileSnapshot(change.path, self.file_store.read(change.path), existed=True))
            else:
                files.append(FileSnapshot(change.path, None, existed=False))

            for parent in _ancestors(change.path):
                if parent in seen_dirs:
                    continue
                seen_dirs.add(parent)
                if not self.file_store.exists(parent):
                    dirs.append(DirectorySnapshot(parent, existed=False))

        return files, dirs

    def _capture_database(self, migrations: Sequence[Migration]) -> bytes | None:
        if not migrations:
            return None
        if self.migration_runner is None:
            raise SnapshotError(
                "Bundle has migrations but no migration runner is configured",
                phase="snapshot_creating",
            )
        return self.migration_runner.snapshot_database()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def load(self, snapshot_id: str) -> Snapshot:
        snapshot = self.snapshot_store.load(snapshot_id)
        if snapshot is None:
            raise SnapshotError(f"Snapshot not found: {snapshot_id}", phase="rollback")
        return snapshot

    def list(self) -> list[SnapshotSummary]:
        """Stored snapshots, newest first."""
        summaries = []
        for snapshot_id in self.snapshot_store.list_ids():
            snap = self.snapshot_store.load(snapshot_id)
            if snap is None:
                continue
            summaries.append(SnapshotSummary(
                id=snap.id,
                bundle_id=snap.bundle_id,
                created_at=snap.created_at,
                file_count=len(snap.file_snapshots),
                has_database=snap.has_database,
                paths=[f.path for f in snap.file_snapshots],
            ))
        summaries.sort(key=lambda s: s.created_at, reverse=True)
        return summaries

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_files(self, snapshot: Snapshot) -> None:
        """Put every recorded path back, then drop directories the apply created.

        Every entry is attempted even if an earlier one fails.

        Raises:
            SnapshotError: Listing every path that could not be restored.
        """
        failures: list[str] = []

        for entry in snapshot.file_snapshots:
            try:
                if entry.existed:
                    self.file_store.write(entry.path, entry.content or "")
                elif self.file_store.exists(entry.path):
                    self.file_store.delete(entry.path)
            except Exception as e:
                logger.error("Failed to restore %s: %s", entry.path, e)
                failures.append(f"{entry.path}: {e}")

        self._remove_created_dirs(snapshot.directory_snapshots, failures)

        if failures:
            raise SnapshotError(
                f"Could not restore {len(failures)} path(s) from {snapshot.id}",
                phase="rollback",
                details={"failures": failures},
            )
        logger.info("Restored %d file(s) from %s", len(snapshot.file_snapshots), snapshot.id)

    def _remove_created_dirs(self, dirs: Iterable[DirectorySnapshot], failures: list[str]) -> None:
        created = [d.path for d in dirs if not d.existed]
        for path in sorted(created, key=lambda p: len(PurePosixPath(p).parts), reverse=True):
            try:
                if not self.file_store.exists(path):
                    continue
                if not self.file_store.remove_dir(path):
                    logger.warning("Leaving %s in place: directory is not empty", path)
            except Exception as e:
                logger.error("Failed to remove directory %s: %s", path, e)
                failures.append(f"{path}/: {e}")

    def restore_database(self, snapshot: Snapshot) -> None:
        if snapshot.database_snapshot is None:
            return
        if self.migration_runner is None:
            raise SnapshotError(
                f"{snapshot.id} holds a database image but no migration runner is configured",
                phase="rollback",
            )
        self.migration_runner.restore_database(snapshot.database_snapshot)
        logger.info("Restored database from %s", snapshot.id)

    def restore(self, snapshot_id: str) -> Snapshot:
        """Restore files, then the database, from a stored snapshot.

        The database is restored even when some files could not be.

        Raises:
            SnapshotError: Listing every file and database failure together.
        """
        snapshot = self.load(snapshot_id)
        failures: list[str] = []

        try:
            self.restore_files(snapshot)
        except SnapshotError as e:
            failures.extend(e.details.get("failures") or [e.message])

        try:
            self.restore_database(snapshot)
        except Exception as e:
            logger.error("Failed to restore database from %s: %s", snapshot.id, e)
            failures.append(f"database: {getattr(e, 'message', None) or e}")

        if failures:
            raise SnapshotError(
                f"Could not restore {len(failures)} item(s) from {snapshot.id}",
                phase="rollback",
                details={"failures": failures},
            )
        return snapshot
