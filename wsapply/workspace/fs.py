from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ENCODING_ERRORS = "surrogateescape"


class WorkspaceViolation(ValueError):
    pass


@dataclass(frozen=True)
class LocalFileStore:
    """FileStore backed by a directory on disk.

    Every path is resolved relative to ``root``; absolute paths and paths
    that escape the root are refused.
    """

    root: Path

    @classmethod
    def from_path(cls, root: str | Path) -> "LocalFileStore":
        p = Path(root).expanduser()
        try:
            p = p.resolve()
        except OSError:
            p = p.absolute()
        return cls(root=p)

    def resolve_rel(self, rel: str | Path) -> Path:
        """Resolve a workspace-relative path, refusing traversal outside the root."""
        rp = Path(rel)
        if rp.is_absolute():
            raise WorkspaceViolation(f"Absolute paths are not allowed: {rel}")

        candidate = (self.root / rp).resolve()
        try:
            candidate.relative_to(self.root)
        except ValueError as e:
            raise WorkspaceViolation(f"Path escapes workspace: {rel}") from e
        return candidate

    def exists(self, path: str) -> bool:
        return self.resolve_rel(path).exists()

    def read(self, path: str) -> str:
        # Undecodable bytes survive as surrogates so a snapshot restores them exactly
        p = self.resolve_rel(path)
        return p.read_bytes().decode("utf-8", errors=ENCODING_ERRORS)

    def write(self, path: str, content: str) -> None:
        p = self.resolve_rel(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        # newline="" keeps line endings byte-for-byte so verification compares equal
        with open(p, "w", encoding="utf-8", errors=ENCODING_ERRORS, newline="") as f:
            f.write(content)
        logger.debug("Wrote %s (%d bytes)", path, len(content.encode("utf-8", errors=ENCODING_ERRORS)))

    def delete(self, path: str) -> None:
        p = self.resolve_rel(path)
        if p.is_dir():
            raise IsADirectoryError(f"Refusing to delete directory as a file: {path}")
        p.unlink()
        logger.debug("Deleted %s", path)

    def remove_dir(self, path: str) -> bool:
        p = self.resolve_rel(path)
        if not p.exists():
            return True
        if any(p.iterdir()):
            return False
        p.rmdir()
        logger.debug("Removed directory %s", path)
        return True
