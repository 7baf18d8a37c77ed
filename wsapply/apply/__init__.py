"""The apply engine: snapshots, conflict handling, orchestration and rollback."""

from wsapply.apply.commands import DEFAULT_PRE_COMMAND_PATTERNS, CommandClassifier
from wsapply.apply.conflicts import (
    Conflict,
    ConflictResolution,
    ConflictResolver,
    DetectionResult,
)
from wsapply.apply.orchestrator import (
    AppliedChanges,
    ApplyOptions,
    ApplyOrchestrator,
    ApplyResult,
    ApplyState,
    ApplyWarning,
    ExecutedCommand,
    ProgressEvent,
)
from wsapply.apply.rollback import RollbackCoordinator
from wsapply.apply.snapshots import SnapshotManager

__all__ = [
    "AppliedChanges",
    "ApplyOptions",
    "ApplyOrchestrator",
    "ApplyResult",
    "ApplyState",
    "ApplyWarning",
    "CommandClassifier",
    "Conflict",
    "ConflictResolution",
    "ConflictResolver",
    "DEFAULT_PRE_COMMAND_PATTERNS",
    "DetectionResult",
    "ExecutedCommand",
    "ProgressEvent",
    "RollbackCoordinator",
    "SnapshotManager",
]
