"""Data models for bundles and snapshots."""

from wsapply.models.bundle import (
    BUNDLE_TYPES,
    Bundle,
    Command,
    FileAction,
    FileChange,
    Migration,
    load_bundle,
)
from wsapply.models.snapshot import DirectorySnapshot, FileSnapshot, Snapshot, SnapshotSummary

__all__ = [
    "BUNDLE_TYPES",
    "Bundle",
    "Command",
    "DirectorySnapshot",
    "FileAction",
    "FileChange",
    "FileSnapshot",
    "Migration",
    "Snapshot",
    "SnapshotSummary",
    "load_bundle",
]
