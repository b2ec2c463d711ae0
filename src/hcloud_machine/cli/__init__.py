"""
hcloud-machine CLI: drive Hetzner Cloud machines from the shell.

The main Click group lives here; command groups register themselves
from their own modules.

Entry point: hcloud_machine.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="hcloud-machine")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose):
    """Provision and manage Hetzner Cloud machines."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
    )


from .machine import register_machine_commands
from .power import register_power_commands

register_machine_commands(main)
register_power_commands(main)
