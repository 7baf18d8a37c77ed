"""Per-workspace configuration.

Settings live in ``<workspace>/.wsapply.yaml``. Every key is optional; a
missing file means defaults throughout. Relative paths are resolved against
the workspace root.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from wsapply.apply.commands import DEFAULT_PRE_COMMAND_PATTERNS
from wsapply.validation.coverage_check import DEFAULT_THRESHOLD

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".wsapply.yaml"
STATE_DIR = ".wsapply"


@dataclass
class ApplyConfig:
    coverage_threshold: float = DEFAULT_THRESHOLD
    pre_command_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_PRE_COMMAND_PATTERNS))
    command_timeout: float = 300.0  # Seconds per command
    snapshot_dir: str = f"{STATE_DIR}/snapshots"
    audit_log: Optional[str] = f"{STATE_DIR}/audit.jsonl"  # None disables the audit trail
    database: Optional[str] = None  # SQLite file for migrations
    public_key: Optional[str] = None  # PEM file used to verify bundle signatures
    require_signature: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplyConfig:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        config = cls(**{k: v for k, v in data.items() if k in known})
        config._check()
        return config

    def _check(self) -> None:
        try:
            self.coverage_threshold = float(self.coverage_threshold)
            self.command_timeout = float(self.command_timeout)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric setting in {CONFIG_FILENAME}: {e}") from e
        if not 0 <= self.coverage_threshold <= 100:
            raise ValueError(f"coverage_threshold must be between 0 and 100, got {self.coverage_threshold}")
        if self.command_timeout <= 0:
            raise ValueError(f"command_timeout must be positive, got {self.command_timeout}")
        if not isinstance(self.pre_command_patterns, list) or not all(
            isinstance(p, str) for p in self.pre_command_patterns
        ):
            raise ValueError("pre_command_patterns must be a list of strings")
        if not isinstance(self.require_signature, bool):
            raise ValueError(f"require_signature must be true or false, got {self.require_signature!r}")

    def resolve(self, workspace: str | Path, value: Optional[str]) -> Optional[Path]:
        """Resolve a configured path against the workspace root."""
        if value is None:
            return None
        p = Path(value)
        return p if p.is_absolute() else Path(workspace) / p


def load_config(workspace: str | Path) -> ApplyConfig:
    """Load ``.wsapply.yaml`` from a workspace, or defaults if it is absent.

    Raises:
        ValueError: If the file is not a YAML mapping or holds invalid values.
    """
    path = Path(workspace) / CONFIG_FILENAME
    if not path.exists():
        return ApplyConfig()

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return ApplyConfig()
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping, got {type(data).__name__}")
    logger.debug("Loaded config from %s", path)
    return ApplyConfig.from_dict(data)
