"""
Errors raised by the switch machinery.

Library code only raises; the CLI commands decide how to print them. Every
error carries the shell commands an operator should run next, so a failed
run never ends with just "failed".
"""

from typing import Iterable, List, Optional


class SwitchError(Exception):
    """Base error for a fatal condition during a switch run."""

    def __init__(self, message: str, diagnostics: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.diagnostics: List[str] = list(diagnostics or [])


class LockError(SwitchError):
    """Another run holds the deployment lock."""


class ConfigError(SwitchError):
    """Settings are missing or invalid (config file, env overrides, compose file)."""


class CommandError(SwitchError):
    """An external command (docker, caddy, systemctl, git) failed or timed out."""

    def __init__(self, message: str, command: Optional[List[str]] = None, output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.command = command or []
        self.output = output


class EdgeDetectionError(SwitchError):
    """No edge proxy owns the public port, or its config file cannot be located."""


class ReadinessError(SwitchError):
    """The idle slot did not become healthy in time. Raised before traffic is touched."""


class ReachabilityError(SwitchError):
    """The edge cannot reach the idle slot over the container network."""


class ReloadError(SwitchError):
    """The rewritten edge config failed validation, or reload and restart both failed."""


class VerificationError(SwitchError):
    """Post-switch verification failed.

    ``rolled_back`` tells whether traffic was restored to the previous slot; the
    run counts as failed either way.
    """

    def __init__(self, message: str, rolled_back: bool = False, report=None, **kwargs):
        super().__init__(message, **kwargs)
        self.rolled_back = rolled_back
        self.report = report
