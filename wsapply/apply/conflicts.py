"""Drift detection between a bundle and the live workspace.

A bundle is computed against some view of the workspace. Before applying it,
every update/delete is compared with what is on disk now; a mismatch is a
conflict the caller must resolve. Detection is read-only and always happens
before the first mutation, so a refused conflict never needs a rollback.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath

from wsapply.errors import ConflictError
from wsapply.models.bundle import FileAction, FileChange
from wsapply.workspace.interfaces import FileStore

logger = logging.getLogger(__name__)


class ConflictResolution(Enum):
    USE_NEW = "use_new"  # Overwrite with the bundle's content
    KEEP_LOCAL = "keep_local"  # Skip this change
    MANUAL_MERGE = "manual_merge"  # Write conflict.merged_content
    ABORT = "abort"


@dataclass
class Conflict:
    """A file whose current content differs from what the bundle expected."""

    file: str
    type: str
    message: str
    current_content: str
    expected_content: str
    new_content: str | None
    resolution: ConflictResolution | None = None
    merged_content: str | None = None

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "type": self.type,
            "message": self.message,
            "resolution": self.resolution.value if self.resolution else None,
        }


@dataclass
class DetectionResult:
    conflicts: list[Conflict] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# Resolver callback: inspects a conflict and returns a resolution (or None).
# A MANUAL_MERGE resolver sets ``conflict.merged_content`` before returning.
ResolverFn = Callable[[Conflict], "ConflictResolution | str | None"]


class ConflictResolver:
    """Detects drift and turns caller decisions into an effective change list."""

    def detect(self, file_changes: Sequence[FileChange], file_reader: FileStore) -> DetectionResult:
        result = DetectionResult()

        for change in file_changes:
            if change.action in (FileAction.UPDATE, FileAction.DELETE):
                verb = "update" if change.action == FileAction.UPDATE else "delete"
                if not file_reader.exists(change.path):
                    result.errors.append({
                        "file": change.path,
                        "message": f"Cannot {verb} non-existent file: {change.path}",
                    })
                    continue
                if change.expected_prior_content is None:
                    continue  # Nothing recorded, nothing to compare
                current = file_reader.read(change.path)
                if current != change.expected_prior_content:
                    result.conflicts.append(Conflict(
                        file=change.path,
                        type="content_changed",
                        message=f"File {change.path} has been modified since the bundle was created",
                        current_content=current,
                        expected_content=change.expected_prior_content,
                        new_content=change.content,
                    ))
            else:
                parent = str(PurePosixPath(change.path).parent)
                if parent not in ("", ".") and not file_reader.exists(parent):
                    result.errors.append({
                        "file": change.path,
                        "message": f"Parent directory does not exist: {parent}",
                    })

        if result.conflicts:
            logger.info(
                "Detected %d conflict(s): %s",
                len(result.conflicts), ", ".join(c.file for c in result.conflicts),
            )
        for err in result.errors:
            logger.warning("%s", err["message"])
        return result

    def resolve(self, conflicts: Iterable[Conflict], resolver_fn: ResolverFn | None) -> list[Conflict]:
        """Ask the resolver about each conflict, in order.

        Raises:
            ConflictError: On the first conflict that is aborted, unresolved,
                or merged without merged content.
        """
        resolved: list[Conflict] = []
        for conflict in conflicts:
            decision = resolver_fn(conflict) if resolver_fn is not None else None
            resolution = _coerce(decision)
            conflict.resolution = resolution

            if resolution is None:
                raise ConflictError(f"Conflict on {conflict.file} was not resolved", conflict=conflict)
            if resolution == ConflictResolution.ABORT:
                raise ConflictError(f"Apply aborted on conflict in {conflict.file}", conflict=conflict)
            if resolution == ConflictResolution.MANUAL_MERGE and conflict.merged_content is None:
                raise ConflictError(
                    f"Manual merge for {conflict.file} supplied no merged content", conflict=conflict
                )
            logger.info("Conflict on %s resolved as %s", conflict.file, resolution.value)
            resolved.append(conflict)
        return resolved

    def apply_resolutions(
        self, file_changes: Sequence[FileChange], conflicts: Iterable[Conflict]
    ) -> list[FileChange]:
        by_path = {c.file: c for c in conflicts}
        effective: list[FileChange] = []

        for change in file_changes:
            conflict = by_path.get(change.path)
            if conflict is None or conflict.resolution == ConflictResolution.USE_NEW:
                effective.append(change)
            elif conflict.resolution == ConflictResolution.KEEP_LOCAL:
                continue
            elif conflict.resolution == ConflictResolution.MANUAL_MERGE:
                effective.append(dataclasses.replace(
                    change, action=FileAction.UPDATE, content=conflict.merged_content
                ))
            else:
                raise ConflictError(f"Conflict on {change.path} has no usable resolution", conflict=conflict)
        return effective


def _coerce(decision) -> ConflictResolution | None:
    if decision is None or isinstance(decision, ConflictResolution):
        return decision
    try:
        return ConflictResolution(str(decision).lower().replace("-", "_"))
    except ValueError:
        raise ConflictError(f"Unknown conflict resolution: {decision!r}") from None
