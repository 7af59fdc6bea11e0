#!/usr/bin/env python3

"""
edgeswitch - zero-downtime blue/green switching behind a Caddy edge
"""

import logging
import sys

import click
from dotenv import load_dotenv

from commands.deploy import deploy
from commands.pin import pin
from commands.status import status
from lib.logging_config import setup_logging

logger = logging.getLogger(__name__)

__version__ = "0.1.0"


@click.group()
@click.version_option(version=__version__, prog_name="edgeswitch")
@click.option("--verbose", "-v", is_flag=True, help="Enable DEBUG logging")
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False),
    envvar="EDGESWITCH_CONFIG",
    help="Settings file (default: ./edgeswitch.yml)",
)
@click.pass_context
def cli(ctx, verbose, config_file):
    """edgeswitch - Blue/green release switcher for a Caddy edge

    Brings up the idle slot, waits for it, repoints the edge at it and
    verifies the result end to end.
    """
    load_dotenv()
    setup_logging("DEBUG" if verbose else None)
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file


cli.add_command(deploy)
cli.add_command(pin)
cli.add_command(status)


def main():
    try:
        cli(obj={})
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
