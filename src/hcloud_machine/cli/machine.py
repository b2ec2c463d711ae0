"""Machine commands: create, rm, ls, status, ip, url, ssh-info, flags."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ._common import (
    MACHINE_HOME,
    MACHINE_HOME_ENV,
    console,
    driver_errors,
    lifecycle_label,
    open_driver,
    state_label,
)
from ..config import CREATE_FLAGS, load_config
from ..driver import HetznerDriver
from ..errors import CleanupError
from ..keys import public_key_from_private
from ..store import MachineStore


def register_machine_commands(main: click.Group) -> None:
    """Register the machine lifecycle and query commands."""

    @main.command("create")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    @click.option("--hetzner-api-token", envvar="HETZNER_API_TOKEN",
                  help="Hetzner Cloud API Token.")
    @click.option("--hetzner-server-type", envvar="HETZNER_SERVER_TYPE",
                  help="Hetzner server type (e.g. cx11).")
    @click.option("--hetzner-image", envvar="HETZNER_IMAGE",
                  help="Image name (e.g. ubuntu-20.04).")
    @click.option("--hetzner-location", envvar="HETZNER_LOCATION",
                  help="Datacenter location (e.g. fsn1, nbg1).")
    def create(name, home, hetzner_api_token, hetzner_server_type,
               hetzner_image, hetzner_location):
        """Create a machine and wait until it has a public address."""
        with driver_errors():
            store = MachineStore(home)
            record = store.new_record(name)
            driver = HetznerDriver(record, load_config(store.home))
            driver.set_config_from_options({
                "hetzner-api-token": hetzner_api_token,
                "hetzner-server-type": hetzner_server_type,
                "hetzner-image": hetzner_image,
                "hetzner-location": hetzner_location,
            })
            driver.pre_create_check()

            console.print(
                f"\n  Creating [bold]{name}[/] "
                f"([cyan]{record.server_type}[/], {record.image}, {record.location})..."
            )
            try:
                driver.create()
            finally:
                # keep whatever was created so rm can clean it up
                store.save(record)

        console.print(f"  [green]Ready:[/] {driver.get_url()}\n")

    @main.command("rm")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    @click.option("--force", is_flag=True,
                  help="Forget the machine even if cleanup failed.")
    def rm(name, home, force):
        """Delete a machine's server, SSH key and local files."""
        with driver_errors():
            store, driver = open_driver(home, name)
            try:
                driver.remove()
            except CleanupError as exc:
                console.print(f"[bold yellow]Cleanup incomplete:[/] {exc}")
                if not force:
                    store.save(driver.record)
                    console.print("  Run rm again to retry, or pass --force.")
                    sys.exit(1)
            store.delete(name)
        console.print(f"  [green]Removed[/] {name}")

    @main.command("ls")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def ls(home):
        """List known machines."""
        store = MachineStore(home)
        names = store.list_names()
        if not names:
            console.print("\n  [dim]No machines.[/]\n")
            return

        table = Table(title="Machines")
        table.add_column("Name", style="bold")
        table.add_column("Lifecycle")
        table.add_column("Server")
        table.add_column("IP")
        table.add_column("Type")
        table.add_column("Location")
        with driver_errors():
            for name in names:
                r = store.load(name)
                table.add_row(
                    r.machine_name,
                    lifecycle_label(r.lifecycle),
                    str(r.server_id or "-"),
                    r.ip_address or "-",
                    r.server_type,
                    r.location,
                )
        console.print(table)

    @main.command("status")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def status(name, home):
        """Show the machine's run state as reported by Hetzner."""
        with driver_errors():
            _, driver = open_driver(home, name)
            state = driver.get_state()
        console.print(state_label(state))

    @main.command("ip")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def ip(name, home):
        """Print the machine's public IPv4."""
        with driver_errors():
            _, driver = open_driver(home, name)
            click.echo(driver.get_ip())

    @main.command("url")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def url(name, home):
        """Print the machine's Docker endpoint URL."""
        with driver_errors():
            _, driver = open_driver(home, name)
            click.echo(driver.get_url())

    @main.command("ssh-info")
    @click.argument("name")
    @click.option("--home", default=MACHINE_HOME, envvar=MACHINE_HOME_ENV, type=click.Path())
    def ssh_info(name, home):
        """Print SSH connection details."""
        with driver_errors():
            _, driver = open_driver(home, name)
            host = driver.get_ssh_hostname()
            public_key = public_key_from_private(driver.get_ssh_key_path())
        console.print(f"  Host: {host}")
        console.print(f"  User: {driver.get_ssh_username()}")
        console.print(f"  Key:  {driver.get_ssh_key_path()}")
        console.print(f"  Public key: {public_key.decode('ascii').strip()}", soft_wrap=True)
        console.print(
            f"\n  ssh -i {driver.get_ssh_key_path()} "
            f"{driver.get_ssh_username()}@{host}"
        )

    @main.command("flags")
    def flags():
        """List the create options and their environment variables."""
        table = Table(title="Create flags")
        table.add_column("Flag", style="cyan")
        table.add_column("Env var")
        table.add_column("Default")
        table.add_column("Usage")
        for flag in CREATE_FLAGS:
            table.add_row(
                f"--{flag.name}", flag.env_var, flag.default or "[red]required[/]",
                flag.usage,
            )
        console.print(table)
