"""
Edge config file operations

Backups, in-place writes and restores for the single Caddyfile a run edits.
Writes keep the file's inode: when the file is bind-mounted into the edge
container, replacing it (rename/mv) would leave the container reading the
old, detached file.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from lib.caddyfile import rewrite_config_text
from lib.errors import ReloadError
from lib.models import RouteBlock

logger = logging.getLogger(__name__)

BACKUP_INFIX = ".bak."
UNDECODABLE = "surrogateescape"


def backup_file(path: Path, now: Optional[datetime] = None) -> Path:
    """Copy ``path`` to ``<path>.bak.<timestamp>`` keeping mode and mtime"""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S-%f")
    backup = path.with_name(f"{path.name}{BACKUP_INFIX}{stamp}")
    shutil.copy2(path, backup)
    logger.debug(f"Backed up {path} to {backup}")
    return backup


def list_backups(path: Path) -> List[Path]:
    """Backups of ``path``, newest first"""
    backups = [p for p in path.parent.glob(f"{path.name}{BACKUP_INFIX}*") if p.is_file()]
    return sorted(backups, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)


def write_in_place(path: Path, text: str) -> None:
    """Overwrite the content of ``path`` without replacing the file object"""
    with open(path, "r+", encoding="utf-8", errors=UNDECODABLE) as f:
        f.seek(0)
        f.write(text)
        f.truncate()


def restore_backup(backup: Path, path: Path) -> None:
    write_in_place(path, read_config(backup))
    logger.warning(f"Restored {path} from {backup}")


def read_config(path: Path) -> str:
    """Config text; bytes that are not UTF-8 survive a read/write round trip unchanged"""
    return path.read_text(encoding="utf-8", errors=UNDECODABLE)


def apply_route(
    path: Path,
    block: RouteBlock,
    validate: Callable[[Path], bool],
    position: str = "prepend",
    retarget_from: Optional[List[str]] = None,
    on_restore: Optional[Callable[[Path], None]] = None,
) -> Path:
    """Rewrite the domain's route block in ``path`` and validate the result.

    Sequence: backup, in-place rewrite, ``validate(path)``. When validation
    fails the backup is written back, handed to ``on_restore`` (an edge that
    keeps its own copy of the file gets it back), and ReloadError is raised,
    so a broken config never stays in place.

    Returns:
        Path of the backup taken before the rewrite
    """
    original = read_config(path)
    new_text, removed = rewrite_config_text(original, block, position=position, retarget_from=retarget_from)

    backup = backup_file(path)
    write_in_place(path, new_text)
    logger.info(f"Rewrote {path}: {removed} old block(s) for {block.domain} replaced, upstream {block.upstream}")

    if not validate(path):
        rejected = path.with_name(f"{path.name}.rejected")
        rejected.write_text(new_text, encoding="utf-8", errors=UNDECODABLE)
        restore_backup(backup, path)
        if on_restore is not None:
            on_restore(path)
        raise ReloadError(
            f"Edge rejected the rewritten config for {block.domain}; original restored from {backup}",
            diagnostics=[
                f"diff -u '{backup}' '{rejected}'",
                f"caddy validate --config '{rejected}' --adapter caddyfile",
            ],
        )
    return backup
