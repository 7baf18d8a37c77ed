"""Snapshot persistence.

``JsonSnapshotStore`` keeps one JSON document per snapshot so snapshots can
be archived or inspected by hand after an apply. ``InMemorySnapshotStore``
is for tests and embedding callers that keep snapshots themselves.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from wsapply.models.snapshot import Snapshot

logger = logging.getLogger(__name__)


class JsonSnapshotStore:
    """File-based snapshot storage.

    Storage path: ``<workspace>/.wsapply/snapshots/`` with one
    ``<snapshot_id>.json`` file per snapshot.
    """

    def __init__(self, base_dir: str | Path) -> None:
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)

    def _path_for(self, snapshot_id: str) -> Path:
        if not snapshot_id or "/" in snapshot_id or "\\" in snapshot_id or snapshot_id.startswith("."):
            raise ValueError(f"Invalid snapshot id: {snapshot_id!r}")
        return self._base / f"{snapshot_id}.json"

    def save(self, snapshot: Snapshot) -> None:
        path = self._path_for(snapshot.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(snapshot.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)
        logger.debug("Saved snapshot %s to %s", snapshot.id, path)

    def load(self, snapshot_id: str) -> Optional[Snapshot]:
        path = self._path_for(snapshot_id)
        if not path.exists():
            return None
        data = json.loads(path.read_text(encoding="utf-8"))
        return Snapshot.from_dict(data)

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self._base.glob("*.json"))

    def delete(self, snapshot_id: str) -> bool:
        path = self._path_for(snapshot_id)
        if not path.exists():
            return False
        path.unlink()
        return True


class InMemorySnapshotStore:
    """Snapshot storage held in a dict."""

    def __init__(self) -> None:
        self._snapshots: dict[str, Snapshot] = {}

    def save(self, snapshot: Snapshot) -> None:
        self._snapshots[snapshot.id] = snapshot

    def load(self, snapshot_id: str) -> Optional[Snapshot]:
        return self._snapshots.get(snapshot_id)

    def list_ids(self) -> list[str]:
        return list(self._snapshots)

    def delete(self, snapshot_id: str) -> bool:
        return self._snapshots.pop(snapshot_id, None) is not None
