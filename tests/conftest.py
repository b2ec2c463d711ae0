"""Shared test fixtures for hcloud-machine."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from hcloud_machine.models import MachineRecord, ServerInfo


class FakeGateway:
    """In-memory stand-in for HetznerGateway.

    Args:
        addresses: IPv4 returned by successive get_instance calls
            (None = not assigned yet). Once exhausted, the last answer
            is repeated.
        server_ids: Ids handed out by successive create_instance calls.
        key_id: Id returned by upload_key.
        status: Server status returned by get_instance.
    """

    def __init__(
        self,
        addresses: Optional[List[Optional[str]]] = None,
        server_ids: Optional[List[int]] = None,
        key_id: int = 7,
        status: str = "running",
    ) -> None:
        self.addresses = list(addresses) if addresses is not None else ["203.0.113.5"]
        self.server_ids = list(server_ids or [42])
        self.key_id = key_id
        self.status = status
        self.errors: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self._last_address: Optional[str] = None

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def call_names(self) -> List[str]:
        return [c[0] for c in self.calls]

    def upload_key(self, name: str, public_key: str) -> int:
        self._call("upload_key", name, public_key)
        return self.key_id

    def create_instance(self, name, server_type, image, location, ssh_key_id):
        self._call("create_instance", name, server_type, image, location, ssh_key_id)
        return self.server_ids.pop(0), 99

    def await_action(self, action_id: int) -> None:
        self._call("await_action", action_id)

    def get_instance(self, server_id: int) -> ServerInfo:
        self._call("get_instance", server_id)
        if self.addresses:
            self._last_address = self.addresses.pop(0)
        return ServerInfo(id=server_id, status=self.status, ipv4=self._last_address)

    def delete_instance(self, server_id: int) -> Optional[int]:
        self._call("delete_instance", server_id)
        return 100

    def delete_key(self, key_id: int) -> None:
        self._call("delete_key", key_id)

    def power_on(self, server_id: int) -> Optional[int]:
        self._call("power_on", server_id)
        return 101

    def power_off(self, server_id: int) -> Optional[int]:
        self._call("power_off", server_id)
        return 102

    def reboot(self, server_id: int) -> Optional[int]:
        self._call("reboot", server_id)
        return 103


@pytest.fixture
def store_path(tmp_path: Path) -> Path:
    """Machine storage directory that does not exist yet."""
    return tmp_path / "machines" / "node-1"


@pytest.fixture
def record(store_path: Path) -> MachineRecord:
    """A configured, unprovisioned machine record."""
    return MachineRecord(
        machine_name="node-1",
        store_path=store_path,
        api_token="tok",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
