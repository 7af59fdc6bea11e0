import logging
from pathlib import Path

from lib.utils import run_command

logger = logging.getLogger(__name__)


def sync_repo(repo_dir: Path, remote: str = "origin", branch: str = "main", timeout: int = 120) -> bool:
    """Fast-forward the checkout to <remote>/<branch>; never merges or resets.

    Returns:
        True when new commits were pulled
    """
    cwd = str(repo_dir)
    run_command(["git", "fetch", remote, branch, "--prune"], cwd=cwd, timeout=timeout)
    local = run_command(["git", "rev-parse", "HEAD"], cwd=cwd, timeout=timeout).stdout.strip()
    upstream = run_command(["git", "rev-parse", f"{remote}/{branch}"], cwd=cwd, timeout=timeout).stdout.strip()
    logger.info(f"LOCAL : {local}")
    logger.info(f"REMOTE: {upstream}")

    if local == upstream:
        logger.info("Repository already up to date")
        return False

    run_command(["git", "pull", "--ff-only", remote, branch], cwd=cwd, timeout=timeout)
    logger.info(f"Fast-forwarded {repo_dir} to {upstream[:12]}")
    return True
