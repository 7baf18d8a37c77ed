"""Error taxonomy for bundle application.

Every failure raised while applying a bundle is an ``ApplyError`` carrying a
closed ``ErrorKind`` and the phase it happened in. The orchestrator catches
them centrally and decides between rollback and a plain failure report.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Closed set of failure kinds."""

    BUNDLE_FORMAT = "bundle_format"
    SNAPSHOT = "snapshot"
    VALIDATION = "validation"  # Gate failed, workspace untouched
    CONFLICT = "conflict"  # Unresolved drift, workspace untouched
    CANCELLED = "cancelled"
    FILE_APPLICATION = "file_application"
    MIGRATION = "migration"
    COMMAND = "command"
    VERIFICATION = "verification"
    ROLLBACK = "rollback"  # Critical, manual intervention required


class ApplyError(Exception):
    """Base class for all bundle application failures."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        phase: str = "",
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "phase": self.phase,
            "message": self.message,
        }
        if self.details:
            data["details"] = self.details
        if self.cause is not None:
            data["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return data

    def __str__(self) -> str:
        if self.phase:
            return f"[{self.phase}] {self.message}"
        return self.message


class BundleFormatError(ApplyError):
    kind = ErrorKind.BUNDLE_FORMAT


class SnapshotError(ApplyError):
    kind = ErrorKind.SNAPSHOT


class ValidationError(ApplyError):
    """The release gate or pre-apply checks refused the bundle."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, result: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.result = result


class ConflictError(ApplyError):
    """A drifted file was aborted or left unresolved."""

    kind = ErrorKind.CONFLICT

    def __init__(self, message: str, *, conflict: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.conflict = conflict


class ApplyCancelled(ApplyError):
    kind = ErrorKind.CANCELLED


class FileApplicationError(ApplyError):
    kind = ErrorKind.FILE_APPLICATION


class MigrationError(ApplyError):
    kind = ErrorKind.MIGRATION


class CommandError(ApplyError):
    """A command failed. Fatal for pre-commands, advisory for post-commands."""

    kind = ErrorKind.COMMAND


class VerificationError(ApplyError):
    kind = ErrorKind.VERIFICATION


class RollbackFailure(ApplyError):
    """Restoring the snapshot failed; the workspace needs manual repair."""

    kind = ErrorKind.ROLLBACK
