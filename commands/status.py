#!/usr/bin/env python3

"""
edgeswitch status command

Show the detected edge, the active slot and the state of both slots.
"""

import click

from commands.common import build_coordinator, fail, load_settings
from lib.errors import SwitchError


class Colors:
    """ANSI color codes for terminal output"""

    BLUE = "\033[0;34m"
    GREEN = "\033[0;32m"
    YELLOW = "\033[1;33m"
    NC = "\033[0m"  # No Color


@click.command()
@click.argument("edge", required=False)
@click.pass_context
def status(ctx, edge):
    """📊 Show edge, active slot and slot health [EDGE]

    Read-only: nothing is started, rewritten or reloaded.

    \b
    Examples:
        edgeswitch status           # Auto-detect the edge
        edgeswitch status caddy     # Use the 'caddy' edge container
    """
    try:
        config = load_settings(ctx)
        overview = build_coordinator(config, edge).status()
    except SwitchError as e:
        fail(e)
        return

    edge_runtime = overview["edge"]
    selection = overview["selection"]
    public = overview["public"]

    click.echo("Edge")
    click.echo("====")
    click.echo(f"Owner  : {edge_runtime.owner.value}")
    click.echo(f"Mode   : {edge_runtime.mode.value}")
    if edge_runtime.container:
        click.echo(f"Name   : {edge_runtime.container}")
    click.echo(f"Config : {edge_runtime.target_file}")
    click.echo()

    click.echo("Slots")
    click.echo("=====")
    for state in overview["states"]:
        slot = config.slot(state.color)
        color = Colors.GREEN if state.serving else Colors.YELLOW
        live = " (active)" if state.color == selection.active else ""
        click.echo(f"{color}{state.color.value:<5}{Colors.NC} {slot.service:<20} {state.health.value}{live}")
    click.echo(f"\nActive: {selection.active.value} [{selection.source}]")

    status_code = public.status_code if public.status_code is not None else "n/a"
    click.echo(f"Public: HTTP {status_code}, slot header: {public.slot or '-'} ({public.url})")
