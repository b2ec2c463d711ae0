"""
Pydantic models for machine records and driver constants.

A ``MachineRecord`` is everything the driver knows about one managed
server. It is filled in step by step during create and persisted by
the store between host invocations.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_SERVER_TYPE = "cx11"
DEFAULT_IMAGE = "ubuntu-20.04"
DEFAULT_LOCATION = "nbg1"
DEFAULT_SSH_USER = "root"


class MachineState(str, Enum):
    """Run state reported to the host."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"
    ERROR = "error"


class LifecycleState(str, Enum):
    """How far the create/remove workflow has progressed for a record."""

    UNPROVISIONED = "unprovisioned"
    KEY_UPLOADED = "key_uploaded"
    INSTANCE_REQUESTED = "instance_requested"
    ADDRESSABLE = "addressable"
    REMOVED = "removed"


class DriverConfig(BaseModel):
    """Fixed values the driver uses instead of hidden literals."""

    driver_name: str = "hetzner"
    ssh_user: str = DEFAULT_SSH_USER
    docker_port: int = Field(default=2376, ge=1, le=65535)
    url_scheme: str = "tcp"
    poll_interval: float = Field(default=2.0, ge=0)
    poll_attempts: int = Field(default=30, ge=1)
    action_poll_interval: float = Field(default=1.0, ge=0)
    action_timeout: float = Field(default=300.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    api_endpoint: str = "https://api.hetzner.cloud/v1"
    key_name_prefix: str = "rancher-"

    model_config = {"extra": "forbid"}


class MachineRecord(BaseModel):
    """State of one managed machine."""

    machine_name: str
    store_path: Path
    api_token: str = ""
    server_id: int = 0
    ssh_key_id: int = 0
    server_type: str = DEFAULT_SERVER_TYPE
    image: str = DEFAULT_IMAGE
    location: str = DEFAULT_LOCATION
    ip_address: str = ""
    ssh_key_path: str = ""
    ssh_user: str = DEFAULT_SSH_USER
    lifecycle: LifecycleState = LifecycleState.UNPROVISIONED

    @field_validator("machine_name")
    @classmethod
    def _check_machine_name(cls, value: str) -> str:
        if not value or value in (".", ".."):
            raise ValueError("machine name must not be empty")
        if "/" in value or "\\" in value:
            raise ValueError("machine name must not contain path separators")
        return value

    @field_validator("store_path", mode="before")
    @classmethod
    def _check_store_path(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValueError("store path must not be empty")
        return value

    @property
    def is_provisioned(self) -> bool:
        """Whether a remote server exists for this record."""
        return self.server_id != 0


class ServerInfo(BaseModel):
    """The subset of a provider server object the driver cares about."""

    id: int
    name: str = ""
    status: Optional[str] = None
    ipv4: Optional[str] = None
