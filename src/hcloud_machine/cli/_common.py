"""Shared helpers for the CLI command modules."""

from __future__ import annotations

import sys
from contextlib import contextmanager
from typing import Iterator, Tuple

from rich.console import Console

from .. import MACHINE_HOME, MACHINE_HOME_ENV
from ..config import load_config
from ..driver import HetznerDriver
from ..errors import DriverError
from ..models import LifecycleState, MachineState
from ..store import MachineStore

console = Console()

__all__ = [
    "MACHINE_HOME",
    "MACHINE_HOME_ENV",
    "console",
    "driver_errors",
    "lifecycle_label",
    "open_driver",
    "state_label",
]


def state_label(state: MachineState) -> str:
    """Rich markup for a run state."""
    return {
        MachineState.RUNNING: "[bold green]Running[/]",
        MachineState.STOPPED: "[bold yellow]Stopped[/]",
        MachineState.UNKNOWN: "[dim]Unknown[/]",
        MachineState.ERROR: "[bold red]Error[/]",
    }[state]


def lifecycle_label(lifecycle: LifecycleState) -> str:
    """Rich markup for a lifecycle state."""
    if lifecycle == LifecycleState.ADDRESSABLE:
        return f"[green]{lifecycle.value}[/]"
    if lifecycle == LifecycleState.REMOVED:
        return f"[dim]{lifecycle.value}[/]"
    return f"[yellow]{lifecycle.value}[/]"


def open_driver(home: str, name: str) -> Tuple[MachineStore, HetznerDriver]:
    """Load a saved machine and wrap it in a driver.

    Raises:
        DriverError: Unknown machine or invalid config file.
    """
    store = MachineStore(home)
    record = store.load(name)
    return store, HetznerDriver(record, load_config(store.home))


@contextmanager
def driver_errors() -> Iterator[None]:
    """Print driver errors in red and exit with status 1."""
    try:
        yield
    except DriverError as exc:
        console.print(f"[bold red]Error:[/] {exc}")
        sys.exit(1)
