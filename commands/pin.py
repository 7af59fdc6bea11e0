#!/usr/bin/env python3

"""Point the edge at a slot without deploying"""

import logging
import sys

import click

from commands.common import (
    SLOT_CHOICES,
    build_coordinator,
    complete_slot,
    fail,
    load_settings,
    parse_slot,
    print_diagnostics,
    print_summary,
)
from lib.errors import SwitchError

logger = logging.getLogger(__name__)


@click.command()
@click.argument("slot", required=False, default="auto", type=click.Choice(SLOT_CHOICES), shell_complete=complete_slot)
@click.argument("edge", required=False)
@click.pass_context
def pin(ctx, slot, edge):
    """
    📌 Pin the edge route to a slot (repair, no deploy) [SLOT] [EDGE]

    Restores a valid edge config from backup when needed, writes the route
    block for the chosen slot, reloads the edge and confirms through the
    probe path that the edge serves it.

    With SLOT=auto the newest healthy slot wins, then the active marker,
    then any running slot.

    \b
    Examples:
        edgeswitch pin              # Pin to the best available slot
        edgeswitch pin blue         # Pin to blue
    """
    try:
        config = load_settings(ctx)
        coordinator = build_coordinator(config, edge)
        report = coordinator.pin(parse_slot(slot))
    except SwitchError as e:
        fail(e)
        return

    print_summary(report)
    if report.public is not None:
        click.echo(f"\nProbe: {report.public.body.strip() or '-'}")
    headers = coordinator.health.health_headers()
    click.echo(f"\n{headers.describe_headers()}")

    if not report.public_ok:
        logger.error(f"Edge does not confirm {report.active.value} on {config.probe_path}")
        print_diagnostics(report.diagnostics)
        sys.exit(1)
    logger.info(f"Edge pinned to {report.active.value}")
