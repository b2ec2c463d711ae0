"""Power commands: start, stop, restart, kill."""

from __future__ import annotations

import click

from ._common import MACHINE_HOME, MACHINE_HOME_ENV, console, driver_errors, open_driver


def register_power_commands(main: click.Group) -> None:
    """Register the power operation commands."""

    def _power(name: str, home: str, operation: str, verb: str) -> None:
        with driver_errors():
            _, driver = open_driver(home, name)
            getattr(driver, operation)()
        console.print(f"  [green]{verb}[/] {name}")

    @main.command("start")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def start(name, home):
        """Power on a machine."""
        _power(name, home, "start", "Started")

    @main.command("stop")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def stop(name, home):
        """Power off a machine."""
        _power(name, home, "stop", "Stopped")

    @main.command("restart")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def restart(name, home):
        """Reboot a machine."""
        _power(name, home, "restart", "Restarted")

    @main.command("kill")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def kill(name, home):
        """Forcibly power off a machine."""
        _power(name, home, "kill", "Killed")
