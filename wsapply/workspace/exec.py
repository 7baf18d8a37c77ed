from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass

from wsapply.workspace.interfaces import CommandResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


def parse_command(cmd: str) -> list[str]:
    return shlex.split(cmd)


def _fmt_argv(argv: list[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


@dataclass(frozen=True)
class SubprocessCommandRunner:
    """CommandRunner that runs commands inside the workspace without a shell.

    A command that exceeds ``timeout_s`` is reported as exit code 124, which
    the orchestrator treats like any other failed step.
    """

    cwd: str
    timeout_s: float = 300.0

    def execute(self, command: str) -> CommandResult:
        argv = parse_command(command)
        if not argv:
            return CommandResult(exit_code=2, stderr="empty command")

        logger.info("CMD %s", _fmt_argv(argv))
        try:
            p = subprocess.run(
                argv,
                cwd=self.cwd,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("Command timed out after %ss: %s", self.timeout_s, _fmt_argv(argv))
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(e.stdout),
                stderr=f"timed out after {self.timeout_s}s",
            )
        except FileNotFoundError as e:
            return CommandResult(exit_code=127, stderr=str(e))

        if p.stdout:
            logger.debug("STDOUT %s", p.stdout.strip())
        if p.stderr:
            logger.debug("STDERR %s", p.stderr.strip())
        return CommandResult(exit_code=p.returncode, stdout=p.stdout, stderr=p.stderr)


def _decode(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
