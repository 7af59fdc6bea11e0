import logging
import subprocess
import time
from typing import Callable, Dict, List, Optional, TypeVar

from lib.errors import CommandError
from lib.logging_config import TRACE

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 120


class RetryAborted(Exception):
    """Raised by a retry predicate to stop retrying before attempts run out."""


def run_command(
    command: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run an external command with captured output and a hard timeout.

    Raises:
        CommandError: when the binary is missing, the command times out, or
            (with ``check``) exits non-zero
    """
    logger.log(TRACE, "$ %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {command[0]}", command=command) from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"Timed out after {timeout}s: {' '.join(command)}", command=command) from e

    if check and result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip()
        raise CommandError(
            f"Command failed ({result.returncode}): {' '.join(command)}",
            command=command,
            output=output,
        )
    return result


def command_ok(command: List[str], timeout: Optional[float] = DEFAULT_TIMEOUT, **kwargs) -> bool:
    """True when the command ran and exited 0; missing binaries and timeouts count as failure"""
    try:
        return run_command(command, timeout=timeout, check=False, **kwargs).returncode == 0
    except CommandError as e:
        logger.debug(str(e))
        return False


def retry(
    predicate: Callable[[], T],
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[T]:
    """Call ``predicate`` until it returns a truthy value or attempts run out.

    Sleeps ``interval`` between attempts, multiplied by ``backoff`` after each
    one and capped at ``max_interval``. No sleep after the last attempt. The
    predicate may raise RetryAborted to give up early.

    With ``deadline`` (a ``clock()`` timestamp) the loop also stops once the
    deadline has passed, however long each attempt took, and never sleeps
    beyond it.

    Returns:
        The first truthy result, or the last result when every attempt failed
        (None when aborted)
    """
    result: Optional[T] = None
    delay = interval
    for attempt in range(1, max(1, attempts) + 1):
        try:
            result = predicate()
        except RetryAborted as e:
            logger.debug(f"Retry aborted on attempt {attempt}: {e}")
            return None
        if result:
            return result
        if attempt >= attempts:
            break
        pause = delay
        if deadline is not None:
            remaining = deadline - clock()
            if remaining <= 0:
                logger.debug(f"Deadline passed after {attempt} attempt(s)")
                break
            pause = min(pause, remaining)
        sleep(pause)
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)
    return result
