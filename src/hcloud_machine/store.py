"""
Machine store: persists machine records between host invocations.

Storage layout:
    <home>/
    ├── config.yaml                 # optional driver settings
    └── machines/
        └── <machine_name>/
            ├── config.json         # MachineRecord (contains the API token, 0600)
            └── <machine_name>_id_rsa
"""

from __future__ import annotations

import functools
import logging
import os
import shutil
from pathlib import Path
from typing import Any, List, Union

from pydantic import ValidationError

from .errors import ConfigurationError, PersistenceError
from .models import MachineRecord

logger = logging.getLogger(__name__)

RECORD_FILE = "config.json"


class MachineStore:
    """Directory of machine records.

    Args:
        home: Root directory (``~`` is expanded).
    """

    def __init__(self, home: Union[str, Path]) -> None:
        self.home = Path(home).expanduser()
        self.machines_dir = self.home / "machines"

    def machine_dir(self, name: str) -> Path:
        """Storage directory of a machine."""
        return self.machines_dir / name

    def exists(self, name: str) -> bool:
        return (self.machine_dir(name) / RECORD_FILE).exists()

    def new_record(self, name: str, **fields: Any) -> MachineRecord:
        """Build an unsaved record whose store_path points into this store.

        Raises:
            ConfigurationError: Invalid name or a record with that name exists.
        """
        if self.exists(name):
            raise ConfigurationError(f"machine {name} already exists")
        try:
            return MachineRecord(
                machine_name=name, store_path=self.machine_dir(name), **fields,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"invalid machine {name!r}: {exc}") from exc

    def save(self, record: MachineRecord) -> Path:
        """Write a record to disk with owner-only permissions.

        Returns:
            Path of the written record file.
        """
        machine_dir = self.machine_dir(record.machine_name)
        path = machine_dir / RECORD_FILE
        try:
            machine_dir.mkdir(parents=True, mode=0o700, exist_ok=True)
            with open(
                path,
                "w",
                encoding="utf-8",
                opener=functools.partial(os.open, mode=0o600),
            ) as f:
                f.write(record.model_dump_json(indent=2))
            os.chmod(path, 0o600)
        except OSError as exc:
            raise PersistenceError(f"saving machine {record.machine_name}: {exc}") from exc
        return path

    def load(self, name: str) -> MachineRecord:
        """Read a saved record.

        Raises:
            ConfigurationError: No such machine or the record is corrupt.
        """
        path = self.machine_dir(name) / RECORD_FILE
        if not path.exists():
            raise ConfigurationError(f"machine {name} does not exist")
        try:
            return MachineRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceError(f"reading machine {name}: {exc}") from exc
        except ValidationError as exc:
            raise ConfigurationError(f"corrupt record for machine {name}: {exc}") from exc

    def list_names(self) -> List[str]:
        """Names of all saved machines, sorted."""
        if not self.machines_dir.exists():
            return []
        return sorted(
            p.name for p in self.machines_dir.iterdir()
            if (p / RECORD_FILE).exists()
        )

    def delete(self, name: str) -> bool:
        """Delete a machine's directory.

        Returns:
            True if something was deleted.
        """
        machine_dir = self.machine_dir(name)
        if not machine_dir.exists():
            return False
        try:
            shutil.rmtree(machine_dir)
        except OSError as exc:
            raise PersistenceError(f"deleting machine {name}: {exc}") from exc
        logger.debug("Deleted machine directory %s", machine_dir)
        return True
