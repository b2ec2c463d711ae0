"""
Hetzner driver: lifecycle controller for one machine.

Implements the operation set a cluster-lifecycle host calls on a
machine driver: configure, pre-flight check, create, remove, state and
address queries, and power operations.

Create runs strictly in order:
    generate SSH identity -> upload public key -> request server
    -> await create action -> poll until a public IPv4 appears

A failure at any step ends the sequence and leaves the record in the
last state it reached. Remote leftovers are cleaned up by a later
remove(), which tolerates already-deleted resources.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional

from .config import (
    API_TOKEN_FLAG,
    CREATE_FLAGS,
    IMAGE_FLAG,
    LOCATION_FLAG,
    SERVER_TYPE_FLAG,
    Flag,
    resolve_options,
)
from .errors import (
    AddressUnavailableError,
    AlreadyProvisionedError,
    CleanupError,
    ConfigurationError,
    DriverError,
    NotFoundError,
    NotProvisionedError,
    ProvisioningTimeoutError,
    TransientError,
)
from .gateway import HetznerGateway, state_from_status
from .keys import generate_identity, remove_identity
from .models import DriverConfig, LifecycleState, MachineRecord, MachineState

logger = logging.getLogger(__name__)


@contextmanager
def _step(name: str, resource_id: Optional[int] = None) -> Iterator[None]:
    """Tag any DriverError escaping the block with the workflow step."""
    try:
        yield
    except DriverError as exc:
        if exc.step is None:
            exc.step = name
        if exc.resource_id is None:
            exc.resource_id = resource_id
        raise


class HetznerDriver:
    """Drive one Hetzner Cloud server through its lifecycle.

    Args:
        record: The machine record to read and update.
        config: Driver constants (login user, port, poll bounds...).
        gateway: Provider client. Built from the record's API token on
            first use when not given.
    """

    def __init__(
        self,
        record: MachineRecord,
        config: Optional[DriverConfig] = None,
        gateway: Optional[HetznerGateway] = None,
    ) -> None:
        self.record = record
        self.config = config or DriverConfig()
        self._gateway = gateway
        self._gateway_injected = gateway is not None

    @property
    def gateway(self) -> HetznerGateway:
        """The provider client for this machine's credential."""
        if self._gateway is None:
            self._require_token()
            self._gateway = HetznerGateway(
                self.record.api_token,
                endpoint=self.config.api_endpoint,
                timeout=self.config.request_timeout,
                action_poll_interval=self.config.action_poll_interval,
                action_timeout=self.config.action_timeout,
            )
        return self._gateway

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def driver_name(self) -> str:
        return self.config.driver_name

    def get_create_flags(self) -> List[Flag]:
        return list(CREATE_FLAGS)

    def set_config_from_options(
        self,
        options: Mapping[str, Any],
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Copy host options onto the record.

        Raises:
            ConfigurationError: If no API token is supplied.
        """
        resolved = resolve_options(options, environ)
        self.record.api_token = resolved[API_TOKEN_FLAG]
        self.record.server_type = resolved[SERVER_TYPE_FLAG]
        self.record.image = resolved[IMAGE_FLAG]
        self.record.location = resolved[LOCATION_FLAG]
        self.record.ssh_user = self.config.ssh_user
        if not self._gateway_injected:
            self._gateway = None
        self._require_token()

    def pre_create_check(self) -> None:
        """Validate the record before any remote call is made.

        Raises:
            ConfigurationError: Missing token, server type, image or location.
            AlreadyProvisionedError: The record has already been through create.
        """
        self._require_token()
        for field, flag in (
            ("server_type", SERVER_TYPE_FLAG),
            ("image", IMAGE_FLAG),
            ("location", LOCATION_FLAG),
        ):
            if not getattr(self.record, field):
                raise ConfigurationError(f"{flag} must not be empty")
        if self.record.lifecycle != LifecycleState.UNPROVISIONED:
            raise AlreadyProvisionedError(
                f"machine {self.record.machine_name} is "
                f"{self.record.lifecycle.value}; remove it before creating again",
                resource_id=self.record.server_id or None,
            )

    def _require_token(self) -> None:
        if not self.record.api_token:
            raise ConfigurationError(f"{API_TOKEN_FLAG} is required")

    def _require_server(self) -> int:
        if not self.record.is_provisioned:
            raise NotProvisionedError("server ID not set")
        return self.record.server_id

    # ------------------------------------------------------------------
    # Create / remove
    # ------------------------------------------------------------------

    def create(self) -> None:
        """Provision the server and wait until it has a public IPv4.

        Raises:
            ConfigurationError, AlreadyProvisionedError: Pre-flight failures.
            KeyGenerationError, PersistenceError: Local key provisioning failed.
            ProviderError: A provider call was rejected or failed.
            ProvisioningTimeoutError: No address within the poll bound.
        """
        self.pre_create_check()
        record = self.record
        gateway = self.gateway

        with _step("generate-key"):
            public_key, key_path = generate_identity(
                record.store_path, record.machine_name,
            )
        record.ssh_key_path = str(key_path)

        key_name = f"{self.config.key_name_prefix}{record.machine_name}"
        with _step("upload-key"):
            record.ssh_key_id = gateway.upload_key(
                key_name, public_key.decode("ascii").strip(),
            )
        record.lifecycle = LifecycleState.KEY_UPLOADED
        logger.info("Uploaded SSH key %s (id=%d)", key_name, record.ssh_key_id)

        with _step("create-server"):
            server_id, action_id = gateway.create_instance(
                record.machine_name,
                record.server_type,
                record.image,
                record.location,
                record.ssh_key_id,
            )
        record.server_id = server_id
        record.lifecycle = LifecycleState.INSTANCE_REQUESTED
        logger.info(
            "Requested server %s (id=%d, type=%s, image=%s, location=%s)",
            record.machine_name, server_id,
            record.server_type, record.image, record.location,
        )

        if action_id:
            with _step("await-create", server_id):
                gateway.await_action(action_id)

        self._wait_for_address()

    def _wait_for_address(self) -> None:
        record = self.record
        attempts = self.config.poll_attempts
        for attempt in range(1, attempts + 1):
            with _step("poll-server", record.server_id):
                server = self.gateway.get_instance(record.server_id)
            if server.ipv4:
                record.ip_address = server.ipv4
                record.lifecycle = LifecycleState.ADDRESSABLE
                logger.info(
                    "Server %d reachable at %s after %d poll(s)",
                    record.server_id, record.ip_address, attempt,
                )
                return
            logger.debug(
                "Server %d has no public IPv4 yet (%d/%d)",
                record.server_id, attempt, attempts,
            )
            if attempt < attempts:
                time.sleep(self.config.poll_interval)

        raise ProvisioningTimeoutError(
            f"server has no public IPv4 after {attempts} polls; "
            "run remove to clean up",
            step="poll-server",
            resource_id=record.server_id,
        )

    def remove(self) -> None:
        """Delete the server, then the SSH key, then the local private key.

        Each step is attempted even if an earlier one failed. Resources
        that are already gone count as deleted. The record always ends
        up REMOVED.

        Raises:
            ConfigurationError: Remote ids are set but there is no token.
            CleanupError: One or more deletions failed.
        """
        record = self.record
        failures: List[DriverError] = []
        if record.server_id or record.ssh_key_id:
            gateway = self.gateway

        if record.server_id:
            server_id = record.server_id
            try:
                with _step("delete-server", server_id):
                    action_id = gateway.delete_instance(server_id)
                    if action_id:
                        gateway.await_action(action_id)
            except NotFoundError:
                logger.info("Server %d already deleted", server_id)
                record.server_id = 0
            except DriverError as exc:
                logger.error("Failed to delete server %d: %s", server_id, exc)
                failures.append(exc)
            else:
                logger.info("Deleted server %d", server_id)
                record.server_id = 0

        if record.ssh_key_id:
            key_id = record.ssh_key_id
            try:
                with _step("delete-key", key_id):
                    gateway.delete_key(key_id)
            except NotFoundError:
                logger.info("SSH key %d already deleted", key_id)
                record.ssh_key_id = 0
            except DriverError as exc:
                logger.error("Failed to delete SSH key %d: %s", key_id, exc)
                failures.append(exc)
            else:
                logger.info("Deleted SSH key %d", key_id)
                record.ssh_key_id = 0

        try:
            with _step("delete-local-key"):
                remove_identity(record.ssh_key_path)
        except DriverError as exc:
            logger.error("Failed to remove private key: %s", exc)
            failures.append(exc)

        record.lifecycle = LifecycleState.REMOVED
        if failures:
            raise CleanupError(
                f"{len(failures)} cleanup step(s) failed for "
                f"{record.machine_name}: " + "; ".join(str(f) for f in failures),
                failures,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_ip(self) -> str:
        """Return the server's public IPv4.

        Raises:
            AddressUnavailableError: Before a successful create or after remove.
        """
        if not self.record.ip_address or self.record.lifecycle == LifecycleState.REMOVED:
            raise AddressUnavailableError("IP address not available")
        return self.record.ip_address

    def get_ssh_hostname(self) -> str:
        return self.get_ip()

    def get_ssh_key_path(self) -> str:
        return self.record.ssh_key_path

    def get_ssh_username(self) -> str:
        return self.record.ssh_user or self.config.ssh_user

    def get_url(self) -> str:
        """Return the Docker endpoint URL, e.g. ``tcp://203.0.113.5:2376``."""
        ip = self.get_ip()
        return f"{self.config.url_scheme}://{ip}:{self.config.docker_port}"

    def get_state(self) -> MachineState:
        """Query the provider for the server's run state.

        Returns ERROR when the provider cannot be reached or the server
        no longer exists.

        Raises:
            NotProvisionedError: No server has been created.
        """
        server_id = self._require_server()
        try:
            server = self.gateway.get_instance(server_id)
        except (TransientError, NotFoundError) as exc:
            logger.warning("Cannot fetch server %d: %s", server_id, exc)
            return MachineState.ERROR
        return state_from_status(server.status)

    # ------------------------------------------------------------------
    # Power
    # ------------------------------------------------------------------

    def _power(self, operation: str, step: str) -> None:
        server_id = self._require_server()
        gateway = self.gateway
        try:
            with _step(step, server_id):
                server = gateway.get_instance(server_id)
        except NotFoundError as exc:
            raise NotProvisionedError(
                f"server no longer exists: {exc.message}",
                step=step,
                resource_id=server_id,
            ) from exc
        with _step(step, server_id):
            getattr(gateway, operation)(server.id)
        logger.info("Sent %s to server %d", step, server_id)

    def start(self) -> None:
        """Power on the server."""
        self._power("power_on", "power-on")

    def stop(self) -> None:
        """Power off the server."""
        self._power("power_off", "power-off")

    def restart(self) -> None:
        """Reboot the server."""
        self._power("reboot", "reboot")

    def kill(self) -> None:
        """Forcibly power off the server (same as stop)."""
        self.stop()
