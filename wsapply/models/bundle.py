"""Bundle data models: the immutable input to an apply run.

A bundle is produced by an external generator and arrives as JSON or YAML.
The generator has emitted both camelCase and snake_case keys over time, so
``Bundle.from_dict`` accepts either spelling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from wsapply.errors import BundleFormatError


BUNDLE_TYPES = ("full", "patch", "feature", "cleanup")
DATA_LOSS_RISKS = ("none", "low", "medium", "high")


class FileAction(Enum):
    """What a file change does to its path."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class FileChange:
    """A single file create/update/delete."""

    path: str
    action: FileAction = FileAction.CREATE
    content: str | None = None
    expected_prior_content: str | None = None  # Content seen when the bundle was generated
    source_file: str | None = None  # Tests only: the source file this test covers
    language: str | None = None  # Overrides extension-based detection
    checksum: str | None = None  # SHA-256 hex of content, set by the generator

    @property
    def writes_content(self) -> bool:
        return self.action in (FileAction.CREATE, FileAction.UPDATE)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path, "action": self.action.value}
        if self.content is not None:
            data["content"] = self.content
        if self.expected_prior_content is not None:
            data["expected_prior_content"] = self.expected_prior_content
        if self.source_file:
            data["source_file"] = self.source_file
        if self.language:
            data["language"] = self.language
        if self.checksum:
            data["checksum"] = self.checksum
        return data


@dataclass(frozen=True)
class Migration:
    """A reversible database migration."""

    id: str
    sql_forward: str
    sql_reverse: str = ""
    description: str = ""
    data_loss_risk: str = "none"
    checksum_forward: str | None = None
    checksum_reverse: str | None = None

    @property
    def reversible(self) -> bool:
        return bool(self.sql_reverse and self.sql_reverse.strip())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "sql_forward": self.sql_forward,
            "sql_reverse": self.sql_reverse,
            "data_loss_risk": self.data_loss_risk,
        }
        if self.checksum_forward:
            data["checksum_forward"] = self.checksum_forward
        if self.checksum_reverse:
            data["checksum_reverse"] = self.checksum_reverse
        return data


@dataclass(frozen=True)
class Command:
    """A shell command to run around the file and migration phases."""

    command: str
    description: str = ""


@dataclass(frozen=True)
class Bundle:
    """An immutable batch of proposed file, migration and command changes."""

    id: str
    type: str = "patch"
    created_at: str = ""
    files: tuple[FileChange, ...] = ()
    tests: tuple[FileChange, ...] = ()
    migrations: tuple[Migration, ...] = ()
    commands: tuple[Command, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    signature: Mapping[str, Any] | None = None  # {algorithm, value, signed_at, key_id}
    # The document as received, minus its signature: what the signature covers
    signed_payload: Mapping[str, Any] | None = field(default=None, compare=False, repr=False)

    def all_file_changes(self) -> list[FileChange]:
        """Files then tests, the order every phase walks them in."""
        return [*self.files, *self.tests]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Bundle:
        """Build a bundle from parsed JSON/YAML.

        Raises:
            BundleFormatError: If the structure cannot be turned into models.
        """
        if not isinstance(data, Mapping):
            raise BundleFormatError(f"Bundle must be a mapping, got {type(data).__name__}")

        try:
            return cls(
                id=_pick(data, "id", "bundle_id", "bundleId", default=""),
                type=_pick(data, "type", "bundle_type", "bundleType", default="patch"),
                created_at=_pick(data, "created_at", "createdAt", default=""),
                files=tuple(_file_change(f, i, "files") for i, f in enumerate(_list(data, "files"))),
                tests=tuple(_file_change(t, i, "tests") for i, t in enumerate(_list(data, "tests"))),
                migrations=tuple(_migration(m, i) for i, m in enumerate(_list(data, "migrations"))),
                commands=tuple(_command(c, i) for i, c in enumerate(_list(data, "commands"))),
                metadata=_pick(data, "metadata", default=None) or {},
                signature=_signature(data),
                signed_payload={k: v for k, v in data.items() if k != "signature"} if "signature" in data else None,
            )
        except BundleFormatError:
            raise
        except (TypeError, ValueError, KeyError) as e:
            raise BundleFormatError(f"Malformed bundle: {e}", cause=e) from e

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "created_at": self.created_at,
            "files": [f.to_dict() for f in self.files],
            "tests": [t.to_dict() for t in self.tests],
            "migrations": [m.to_dict() for m in self.migrations],
            "commands": [{"command": c.command, "description": c.description} for c in self.commands],
            "metadata": dict(self.metadata),
        }
        if self.signature is not None:
            data["signature"] = dict(self.signature)
        return data


def load_bundle(path: str | Path) -> Bundle:
    """Load a bundle from a JSON or YAML file."""
    p = Path(path)
    if not p.exists():
        raise BundleFormatError(f"Bundle file not found: {path}")
    try:
        with open(p, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise BundleFormatError(f"Invalid bundle file {path}: {e}", cause=e) from e
    return Bundle.from_dict(data or {})


# --- Parsing helpers ---


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _list(data: Mapping[str, Any], key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise BundleFormatError(f"'{key}' must be a list, got {type(value).__name__}")
    return list(value)


def _file_change(raw: Any, index: int, section: str) -> FileChange:
    if not isinstance(raw, Mapping):
        raise BundleFormatError(f"{section}[{index}] must be a mapping")
    action = raw.get("action") or "create"
    try:
        file_action = FileAction(str(action).lower())
    except ValueError:
        raise BundleFormatError(
            f"{section}[{index}]: unknown action '{action}' "
            f"(expected one of {[a.value for a in FileAction]})"
        ) from None
    return FileChange(
        path=_pick(raw, "path", "target", default=""),
        action=file_action,
        content=_pick(raw, "content", "code"),
        expected_prior_content=_pick(
            raw, "expected_prior_content", "expectedPriorContent", "old_content", "oldContent"
        ),
        source_file=_pick(raw, "source_file", "sourceFile"),
        language=_pick(raw, "language"),
        checksum=_pick(raw, "checksum"),
    )


def _migration(raw: Any, index: int) -> Migration:
    if not isinstance(raw, Mapping):
        raise BundleFormatError(f"migrations[{index}] must be a mapping")
    return Migration(
        id=str(_pick(raw, "id", "migration_id", "migrationId", default="")),
        description=_pick(raw, "description", default=""),
        sql_forward=_pick(raw, "sql_forward", "sqlForward", default=""),
        sql_reverse=_pick(raw, "sql_reverse", "sqlReverse", default=""),
        data_loss_risk=_pick(raw, "data_loss_risk", "dataLossRisk", default="none"),
        checksum_forward=_pick(raw, "checksum_forward", "checksumForward"),
        checksum_reverse=_pick(raw, "checksum_reverse", "checksumReverse"),
    )


def _command(raw: Any, index: int) -> Command:
    if isinstance(raw, str):
        return Command(command=raw)
    if isinstance(raw, Mapping) and raw.get("command"):
        return Command(command=str(raw["command"]), description=raw.get("description") or "")
    raise BundleFormatError(f"commands[{index}] must be a string or a mapping with 'command'")


def _signature(data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    raw = data.get("signature")
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise BundleFormatError("'signature' must be a mapping")
    return dict(raw)
