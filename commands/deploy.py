#!/usr/bin/env python3

"""Deploy to the idle slot and switch traffic to it"""

import logging

import click

from commands.common import SLOT_CHOICES, build_coordinator, complete_slot, fail, load_settings, parse_slot, print_summary
from lib.errors import SwitchError

logger = logging.getLogger(__name__)


@click.command()
@click.argument("slot", required=False, default="auto", type=click.Choice(SLOT_CHOICES), shell_complete=complete_slot)
@click.argument("edge", required=False)
@click.pass_context
def deploy(ctx, slot, edge):
    """
    🚀 Blue/green deploy with verified traffic switch [SLOT] [EDGE]

    Builds and starts the idle slot only, waits for it to be ready, rewrites
    the edge route block to point at it, reloads the edge and verifies the
    result locally and over the public URL.

    SLOT names the slot to deploy into (default: auto, the idle one).
    EDGE names the edge container when more than one Caddy runs.

    \b
    Examples:
        edgeswitch deploy                 # Deploy into the idle slot
        edgeswitch deploy green           # Force deploying into green
        edgeswitch deploy auto caddy      # Use the 'caddy' edge container
    """
    try:
        config = load_settings(ctx)
        coordinator = build_coordinator(config, edge)
        report = coordinator.deploy(override=parse_slot(slot))
    except SwitchError as e:
        fail(e)
        return

    print_summary(report)
    logger.info(f"Deployment complete: {report.active.value} is live")
