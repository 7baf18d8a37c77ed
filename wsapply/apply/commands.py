"""Split bundle commands into pre-commands and post-commands.

Pre-commands install dependencies and must succeed before any file is
written. Everything else runs after files and migrations are in place.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from wsapply.models.bundle import Command

DEFAULT_PRE_COMMAND_PATTERNS = (
    r"^npm\s+(install|i|ci)\b",
    r"^yarn(\s+install|\s+add\b|$)",
    r"^pnpm\s+(install|i|add)\b",
    r"^pip3?\s+install\b",
    r"^python3?\s+-m\s+pip\s+install\b",
    r"^poetry\s+install\b",
    r"^uv\s+(sync|pip\s+install)\b",
    r"^bundle\s+install\b",
    r"^go\s+mod\s+(download|tidy)\b",
    r"^cargo\s+fetch\b",
)


class CommandClassifier:
    """Classifies commands by matching them against a list of regexes."""

    def __init__(self, patterns: Iterable[str] | None = None):
        source = DEFAULT_PRE_COMMAND_PATTERNS if patterns is None else tuple(patterns)
        self.patterns = [re.compile(p) for p in source]

    def is_pre_command(self, command: Command | str) -> bool:
        text = command.command if isinstance(command, Command) else command
        text = text.strip()
        return any(p.search(text) for p in self.patterns)

    def partition(self, commands: Sequence[Command]) -> tuple[list[Command], list[Command]]:
        """Return (pre, post), each keeping the bundle's order."""
        pre: list[Command] = []
        post: list[Command] = []
        for cmd in commands:
            (pre if self.is_pre_command(cmd) else post).append(cmd)
        return pre, post
