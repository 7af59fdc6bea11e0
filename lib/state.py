"""
State that outlives a run: the deployment lock and the active marker.

The marker is a hint for slot selection, never the source of truth, and is
only written once a run reaches a final decision.
"""

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from lib.errors import LockError
from lib.models import Color

logger = logging.getLogger(__name__)


@contextmanager
def deployment_lock(path: Path) -> Iterator[None]:
    """Hold an exclusive, non-blocking flock on ``path`` for the duration of the block.

    Raises:
        LockError: when another process holds the lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(path, "a+", encoding="utf-8")
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        handle.seek(0)
        holder = handle.read().strip()
        handle.close()
        suffix = f" (pid {holder})" if holder else ""
        raise LockError(
            f"Another deployment is in progress{suffix}; lock: {path}",
            diagnostics=[f"fuser -v '{path}'", "ps aux | grep edgeswitch"],
        ) from e

    try:
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        logger.debug(f"Acquired lock {path}")
        yield
    finally:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        handle.close()
        logger.debug(f"Released lock {path}")


def read_marker(path: Path) -> Optional[Color]:
    """Color recorded in the marker, None when missing or garbled"""
    try:
        value = "".join(path.read_text(encoding="utf-8").split()).lower()
    except OSError:
        return None
    if value in (Color.blue.value, Color.green.value):
        return Color(value)
    if value:
        logger.warning(f"Ignoring unexpected active marker content in {path}: {value!r}")
    return None


def write_marker(path: Path, color: Color) -> None:
    """Record ``color`` as the active slot (owner-only permissions)"""
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(color.value)
    os.chmod(path, 0o600)
    logger.info(f"Active marker set to {color.value} ({path})")
