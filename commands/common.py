#!/usr/bin/env python3

"""Common utilities for CLI commands"""

import logging
import sys
from typing import List, Optional

import click

from lib.data import load_config
from lib.deploy import SwitchCoordinator
from lib.errors import SwitchError
from lib.logging_config import setup_logging
from lib.models import Color, SwitchConfig, SwitchReport
from lib.runtime import DockerRuntime, LocalHost

logger = logging.getLogger(__name__)

SLOT_CHOICES = ["auto", Color.blue.value, Color.green.value]


def complete_slot(ctx, param, incomplete):
    """
    Autocomplete slot names.

    Args:
        ctx: Click context
        param: Click parameter
        incomplete: Partially typed string to complete

    Returns:
        List of slot choices matching the incomplete string
    """
    return [s for s in SLOT_CHOICES if s.startswith(incomplete)]


def parse_slot(value: Optional[str]) -> Optional[Color]:
    """'auto' (or nothing) means: let the selector decide"""
    if not value or value == "auto":
        return None
    return Color(value)


def load_settings(ctx: click.Context) -> SwitchConfig:
    """Load settings for the current invocation and attach the optional log file"""
    config_file = (ctx.obj or {}).get("config_file")
    config = load_config(config_file)
    if config.log_file:
        setup_logging(logging.getLevelName(logging.root.level), log_file=str(config.log_file))
    return config


def build_coordinator(config: SwitchConfig, edge_container: Optional[str] = None) -> SwitchCoordinator:
    return SwitchCoordinator(
        config,
        DockerRuntime(config),
        LocalHost(timeout=config.command_timeout),
        edge_container=edge_container,
    )


def print_diagnostics(lines: List[str]) -> None:
    if not lines:
        return
    click.echo("\nDiagnostics (copy/paste):", err=True)
    for line in lines:
        click.echo(f"  {line}", err=True)


def fail(error: SwitchError) -> None:
    """Report a fatal error with its follow-up commands and exit non-zero"""
    logger.error(str(error))
    report = getattr(error, "report", None)
    if report is not None:
        print_summary(report)
    print_diagnostics(error.diagnostics)
    sys.exit(1)


def print_summary(report: SwitchReport) -> None:
    """Verification summary, one line per check"""

    def mark(ok: bool) -> str:
        return "✓" if ok else "✗"

    click.echo("\nVerification summary")
    click.echo("====================")
    click.echo(f"Active slot : {report.active.value} (previous: {report.previous.value})")
    if report.edge_mode:
        click.echo(f"Edge mode   : {report.edge_mode.value}")
    if report.switch_mode:
        click.echo(f"Switch mode : {report.switch_mode.value}")
    click.echo(f"{mark(report.local_ok)} Local slot check")
    click.echo(f"{mark(report.config_ok)} Edge config points at the active slot")
    click.echo(f"{mark(report.public_ok)} Public endpoint")
    if report.public is not None:
        status = report.public.status_code if report.public.status_code is not None else "n/a"
        click.echo(f"    HTTP {status}, slot header: {report.public.slot or '-'}")
        if report.public.error:
            click.echo(f"    error: {report.public.error}")
    if report.remedied:
        click.echo("Auto-remedy for 502 was attempted")
    if report.rolled_back:
        click.echo("Traffic was rolled back")
