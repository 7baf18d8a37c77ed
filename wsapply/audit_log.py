"""Audit trail for apply runs.

Every progress event of an apply, plus manual rollbacks, is appended as one
JSON object per line to ``<workspace>/.wsapply/audit.jsonl`` so a run can be
reconstructed after the fact.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """A single audit log entry."""

    id: str
    timestamp: str
    action: str
    resource_type: str
    resource_id: str
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True


# Progress events that mark a failed run
_FAILURE_ACTIONS = {"error", "rollback_failed"}


class AuditLogger:
    """Append-only JSONL audit log."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_all_entries(self) -> list[AuditEntry]:
        if not self._path.exists():
            return []
        entries: list[AuditEntry] = []
        with self._path.open(encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(AuditEntry(**json.loads(line)))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning("Skipping malformed audit entry %s:%d: %s", self._path, lineno, e)
        return entries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def log_event(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
    ) -> AuditEntry:
        """Record an audit event and return the created entry."""
        entry = AuditEntry(
            id=uuid.uuid4().hex[:16],
            timestamp=datetime.now(timezone.utc).isoformat(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
            success=success,
        )
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(asdict(entry), default=str) + "\n")
        return entry

    def get_events(
        self,
        *,
        action: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        limit: int = 200,
    ) -> list[AuditEntry]:
        """Return filtered audit events in the order they were written."""
        entries = self._read_all_entries()

        if action:
            entries = [e for e in entries if e.action == action]
        if resource_type:
            entries = [e for e in entries if e.resource_type == resource_type]
        if resource_id:
            entries = [e for e in entries if e.resource_id == resource_id]

        return entries[-limit:] if limit else entries

    def progress_sink(self, bundle_id: str) -> Callable[[Enum, dict[str, Any]], None]:
        """Return an ``on_progress`` callback that records every event for a bundle."""

        def sink(event: Enum, payload: dict[str, Any]) -> None:
            action = event.value if isinstance(event, Enum) else str(event)
            self.log_event(
                action=action,
                resource_type="bundle",
                resource_id=bundle_id,
                details=dict(payload),
                success=action not in _FAILURE_ACTIONS,
            )

        return sink
