"""Logging configuration for the updater CLI.

Every record goes to the append-only log file with a timestamp; the console
gets a short coloured marker per severity.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TextIO

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_BLUE = "\033[94m"
_GREEN = "\033[92m"
_YELLOW = "\033[93m"
_RED = "\033[91m"
_RESET = "\033[0m"

_MARKERS: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("", "[DEBUG]"),
    logging.INFO: (_BLUE, "[INFO]"),
    SUCCESS: (_GREEN, "[SUCCESS]"),
    logging.WARNING: (_YELLOW, "[WARNING]"),
    logging.ERROR: (_RED, "[ERROR]"),
    logging.CRITICAL: (_RED, "[ERROR]"),
}


class ConsoleFormatter(logging.Formatter):
    def __init__(self, *, color: bool = True) -> None:
        super().__init__("%(message)s")
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        level = max((lvl for lvl in _MARKERS if lvl <= record.levelno), default=logging.DEBUG)
        color, marker = _MARKERS[level]
        if self._color and color:
            return f"{color}{marker}{_RESET} {message}"
        return f"{marker} {message}"


def configure_logging(
    log_file: Path | None,
    *,
    level: str = "INFO",
    verbose: bool = False,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Install file and console handlers on the root logger.

    Calling it again replaces the handlers installed by a previous call, so
    tests and repeated CLI invocations in one process don't duplicate output.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_minerupdater", False):
            root.removeHandler(handler)
            handler.close()

    console_level = logging.DEBUG if verbose else logging.getLevelName(level.upper())
    if not isinstance(console_level, int):
        console_level = logging.INFO
    root.setLevel(logging.DEBUG)

    out = stream or sys.stdout
    console = logging.StreamHandler(out)
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter(color=bool(getattr(out, "isatty", lambda: False)())))
    console._minerupdater = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        except OSError as exc:
            logging.getLogger(__name__).warning("Cannot open log file %s: %s", log_file, exc)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
            file_handler._minerupdater = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)
    return root


def success(logger: logging.Logger, msg: str, *args: object) -> None:
    logger.log(SUCCESS, msg, *args)
