from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(
    level: int | str = logging.INFO,
    log_path: Optional[str | Path] = None,
    also_console: bool = True,
) -> Optional[str]:
    """Install wsapply's log handlers on the root logger.

    Safe to call more than once: handlers are installed on the first call
    only, later calls just adjust the level. Console output goes to stderr
    through rich so it does not mix with command output on stdout.

    Returns the log file path in use, if any.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    root = logging.getLogger()
    root.setLevel(level)

    if getattr(root, "_wsapply_configured", False):
        return getattr(root, "_wsapply_log_path", None)

    handlers: list[logging.Handler] = []
    chosen_path: Optional[str] = None

    if log_path is not None:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(file_handler)
        chosen_path = str(path)

    if also_console:
        handlers.append(RichHandler(console=Console(stderr=True), show_path=False))

    for h in handlers:
        root.addHandler(h)

    setattr(root, "_wsapply_configured", True)
    setattr(root, "_wsapply_log_path", chosen_path)

    logging.getLogger(__name__).debug("Logging initialized (file=%s)", chosen_path)
    return chosen_path
