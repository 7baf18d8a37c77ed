"""Rollback coordinator: restore a workspace from a stored snapshot."""

from __future__ import annotations

import logging

from wsapply.apply.snapshots import SnapshotManager
from wsapply.errors import RollbackFailure
from wsapply.models.snapshot import Snapshot

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """Stateless wrapper that turns any restore failure into ``RollbackFailure``."""

    def __init__(self, snapshots: SnapshotManager) -> None:
        self.snapshots = snapshots

    def rollback(self, snapshot_id: str) -> Snapshot:
        """Restore files, then the database, from ``snapshot_id``.

        Raises:
            RollbackFailure: If the snapshot cannot be loaded or restored.
                The workspace may be partially restored and needs manual repair.
        """
        logger.info("Rolling back to %s", snapshot_id)
        try:
            snapshot = self.snapshots.restore(snapshot_id)
        except Exception as e:
            reason = getattr(e, "message", None) or str(e)
            logger.critical("Rollback to %s failed: %s", snapshot_id, reason)
            details = getattr(e, "details", None) or {}
            raise RollbackFailure(
                f"Rollback to {snapshot_id} failed: {reason}",
                phase="rollback",
                details={"snapshot_id": snapshot_id, **details},
                cause=e,
            ) from e
        logger.info("Rollback to %s complete", snapshot_id)
        return snapshot
