"""
Centralized logging configuration for edgeswitch.

TTY mode (interactive): colored output with a symbol per level
Non-TTY mode (cron, CI, pipes): timestamps and module paths, so a failed
switch can be reconstructed from the log afterwards
"""

import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# TRACE sits below DEBUG and carries the raw external commands
TRACE = 5
logging.addLevelName(TRACE, "TRACE")


def trace(self: logging.Logger, message: str, *args: Any, **kwargs: Any) -> None:
    """Log trace message."""
    if self.isEnabledFor(TRACE):
        self._log(TRACE, message, args, **kwargs)  # pylint: disable=protected-access


logging.Logger.trace = trace  # type: ignore[attr-defined]

# Chatty third-party loggers that drown out the switch phases
NOISY_LOGGERS = ("urllib3", "requests")

RESET = "\033[0m"

# level name -> (ANSI color, symbol)
LEVEL_STYLES: Dict[str, Tuple[str, str]] = {
    "TRACE": ("\033[90m", "›"),
    "DEBUG": ("\033[96m", "•"),
    "INFO": ("\033[92m", "✓"),
    "WARNING": ("\033[93m", "⚠"),
    "ERROR": ("\033[91m", "✗"),
    "CRITICAL": ("\033[91m", "✗"),
}
DEFAULT_STYLE = ("\033[97m", "›")

STRUCTURED_FORMAT = "%(asctime)s %(levelname)s > %(custom_pathname)s:%(lineno)d: %(message)s"


class TTYAwareFormatter(logging.Formatter):
    """Formatter that switches layout depending on the output stream.

    TTY mode:
        ✓ Traffic switched to green slot
        ⚠ Caddy reload failed; restarting edge container
        ✗ Timeout waiting for bookhive-green readiness

    Non-TTY mode:
        2026-10-18 10:12:01.532 INFO > lib/deploy.py:211: Traffic switched to green slot
    """

    def __init__(self, is_tty: bool):
        self.is_tty = is_tty
        super().__init__("%(message)s" if is_tty else STRUCTURED_FORMAT)

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        if self.is_tty:
            return super().formatTime(record, datefmt)
        stamp = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        return f"{stamp}.{int(record.msecs):03d}"

    def format(self, record: logging.LogRecord) -> str:
        if self.is_tty:
            color, symbol = LEVEL_STYLES.get(record.levelname, DEFAULT_STYLE)
            return f"{color}{symbol}{RESET} {super().format(record)}"

        if record.name == "__main__":
            record.custom_pathname = os.path.relpath(record.pathname)
        else:
            record.custom_pathname = record.name.replace(".", "/") + ".py"
        return super().format(record)


def resolve_level(level: Optional[str]) -> int:
    """Map a level name (or LOG_LEVEL) to a logging constant, INFO when unknown."""
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if name == "TRACE":
        return TRACE
    value = logging.getLevelName(name)
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Route all logging through the TTY-aware formatter.

    Args:
        level: TRACE, DEBUG, INFO, WARNING, ERROR or CRITICAL;
               LOG_LEVEL env var or INFO when omitted
        log_file: Optional file that receives structured lines as well, e.g.
                  a deploy history next to the active marker
    """
    level_const = resolve_level(level)

    console = logging.StreamHandler()
    console.setFormatter(TTYAwareFormatter(sys.stdout.isatty()))
    handlers: List[logging.Handler] = [console]

    if log_file:
        to_file = logging.FileHandler(log_file)
        to_file.setFormatter(TTYAwareFormatter(is_tty=False))
        handlers.append(to_file)

    logging.root.setLevel(level_const)
    logging.root.handlers = handlers

    # HTTP internals only show up when tracing
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level_const <= TRACE else logging.WARNING)
