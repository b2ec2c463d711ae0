"""Tests for the Hetzner driver lifecycle.

The provider is replaced by FakeGateway from conftest; poll sleeps are
patched out.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from conftest import FakeGateway
from hcloud_machine.driver import HetznerDriver
from hcloud_machine.errors import (
    ActionFailedError,
    AddressUnavailableError,
    AlreadyProvisionedError,
    CleanupError,
    ConfigurationError,
    NotFoundError,
    NotProvisionedError,
    ProvisioningTimeoutError,
    QuotaError,
    TransientError,
)
from hcloud_machine.keys import public_key_from_private
from hcloud_machine.models import DriverConfig, LifecycleState, MachineRecord, MachineState


@pytest.fixture()
def driver(record, gateway) -> HetznerDriver:
    return HetznerDriver(record, gateway=gateway)


@pytest.fixture()
def no_sleep():
    with patch("hcloud_machine.driver.time.sleep") as mock_sleep:
        yield mock_sleep


def _created(driver: HetznerDriver) -> HetznerDriver:
    driver.create()
    return driver


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestConfiguration:
    def test_defaults_applied(self, driver):
        driver.set_config_from_options({"hetzner-api-token": "tok"}, environ={})
        r = driver.record
        assert (r.api_token, r.server_type, r.image, r.location) == (
            "tok", "cx11", "ubuntu-20.04", "nbg1",
        )
        assert r.ssh_user == "root"

    def test_explicit_options_win(self, driver):
        driver.set_config_from_options({
            "hetzner-api-token": "tok",
            "hetzner-server-type": "cx21",
            "hetzner-image": "debian-12",
            "hetzner-location": "fsn1",
        }, environ={"HETZNER_SERVER_TYPE": "cx51"})
        assert driver.record.server_type == "cx21"
        assert driver.record.location == "fsn1"

    def test_token_from_environment(self, driver):
        driver.set_config_from_options({}, environ={"HETZNER_API_TOKEN": "env-tok"})
        assert driver.record.api_token == "env-tok"

    def test_missing_token_is_configuration_error(self, driver):
        with pytest.raises(ConfigurationError, match="hetzner-api-token is required"):
            driver.set_config_from_options({}, environ={})

    def test_pre_create_check_without_token(self, store_path, gateway):
        d = HetznerDriver(MachineRecord(machine_name="n", store_path=store_path), gateway=gateway)
        with pytest.raises(ConfigurationError):
            d.pre_create_check()
        with pytest.raises(ConfigurationError):
            d.create()
        assert gateway.calls == []
        assert not store_path.exists()

    def test_fixed_accessors(self, driver):
        assert driver.driver_name() == "hetzner"
        assert driver.get_ssh_username() == "root"
        assert [f.name for f in driver.get_create_flags()] == [
            "hetzner-api-token", "hetzner-server-type", "hetzner-image", "hetzner-location",
        ]

    def test_gateway_built_from_token(self, record):
        d = HetznerDriver(record, DriverConfig(api_endpoint="https://api.test/v1"))
        assert d.gateway._token == "tok"
        assert d.gateway._endpoint == "https://api.test/v1"


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


class TestCreate:
    def test_end_to_end(self, driver, gateway, no_sleep):
        driver.set_config_from_options({
            "hetzner-api-token": "tok",
            "hetzner-server-type": "cx11",
            "hetzner-image": "ubuntu-20.04",
            "hetzner-location": "nbg1",
        }, environ={})

        driver.create()

        r = driver.record
        assert r.server_id == 42
        assert r.ssh_key_id == 7
        assert r.ip_address == "203.0.113.5"
        assert r.lifecycle == LifecycleState.ADDRESSABLE
        assert driver.get_ip() == "203.0.113.5"
        assert driver.get_ssh_hostname() == "203.0.113.5"
        assert driver.get_url() == "tcp://203.0.113.5:2376"
        no_sleep.assert_not_called()

    def test_call_order(self, driver, gateway, no_sleep):
        driver.create()
        assert gateway.call_names() == [
            "upload_key", "create_instance", "await_action", "get_instance",
        ]
        _, key_name, public_key = gateway.calls[0]
        assert key_name == "rancher-node-1"
        assert public_key.startswith("ssh-rsa ")
        assert gateway.calls[1] == (
            "create_instance", "node-1", "cx11", "ubuntu-20.04", "nbg1", 7,
        )

    def test_uploaded_key_matches_stored_private_key(self, driver, gateway, no_sleep):
        driver.create()
        uploaded = gateway.calls[0][2]
        key_path = driver.get_ssh_key_path()
        assert key_path.endswith("node-1_id_rsa")
        assert public_key_from_private(key_path).decode().strip() == uploaded

    def test_address_on_last_poll(self, record, no_sleep):
        gateway = FakeGateway(addresses=[None] * 29 + ["203.0.113.9"])
        d = HetznerDriver(record, gateway=gateway)

        d.create()

        assert d.get_ip() == "203.0.113.9"
        assert gateway.call_names().count("get_instance") == 30
        assert no_sleep.call_count == 29
        no_sleep.assert_called_with(2.0)

    def test_no_address_times_out(self, record, no_sleep):
        gateway = FakeGateway(addresses=[None] * 30)
        d = HetznerDriver(record, gateway=gateway)

        with pytest.raises(ProvisioningTimeoutError) as exc_info:
            d.create()

        assert exc_info.value.resource_id == 42
        assert gateway.call_names().count("get_instance") == 30
        r = d.record
        assert r.lifecycle == LifecycleState.INSTANCE_REQUESTED
        assert (r.server_id, r.ssh_key_id) == (42, 7)
        with pytest.raises(AddressUnavailableError):
            d.get_ip()

    def test_poll_bound_comes_from_config(self, record, no_sleep):
        gateway = FakeGateway(addresses=[None] * 10)
        d = HetznerDriver(record, DriverConfig(poll_attempts=3, poll_interval=0.5), gateway)
        with pytest.raises(ProvisioningTimeoutError):
            d.create()
        assert gateway.call_names().count("get_instance") == 3
        assert no_sleep.call_count == 2

    def test_rejected_instance_leaves_key_uploaded(self, driver, gateway, no_sleep):
        gateway.errors["create_instance"] = QuotaError("server limit reached")

        with pytest.raises(QuotaError) as exc_info:
            driver.create()

        assert exc_info.value.step == "create-server"
        r = driver.record
        assert r.lifecycle == LifecycleState.KEY_UPLOADED
        assert r.ssh_key_id == 7
        assert r.server_id == 0

    def test_failed_create_action_leaves_instance_requested(self, driver, gateway, no_sleep):
        gateway.errors["await_action"] = ActionFailedError("no capacity", resource_id=99)

        with pytest.raises(ActionFailedError) as exc_info:
            driver.create()

        assert exc_info.value.step == "await-create"
        r = driver.record
        assert r.lifecycle == LifecycleState.INSTANCE_REQUESTED
        assert (r.server_id, r.ssh_key_id) == (42, 7)
        assert "get_instance" not in gateway.call_names()

    def test_upload_failure_tagged_with_step(self, driver, gateway):
        gateway.errors["upload_key"] = TransientError("503")
        with pytest.raises(TransientError) as exc_info:
            driver.create()
        assert str(exc_info.value).startswith("upload-key")
        assert driver.record.lifecycle == LifecycleState.UNPROVISIONED
        assert "create_instance" not in gateway.call_names()

    def test_create_twice_for_same_name(self, store_path, no_sleep):
        """Known hazard: the second create overwrites the first private key."""
        gateway = FakeGateway(server_ids=[42, 43], addresses=["203.0.113.5"])
        first = HetznerDriver(
            MachineRecord(machine_name="node-1", store_path=store_path, api_token="tok"),
            gateway=gateway,
        )
        second = HetznerDriver(
            MachineRecord(machine_name="node-1", store_path=store_path, api_token="tok"),
            gateway=gateway,
        )

        first.create()
        key_before = (store_path / "node-1_id_rsa").read_bytes()
        second.create()

        assert first.record.server_id == 42
        assert second.record.server_id == 43
        assert first.get_ssh_key_path() == second.get_ssh_key_path()
        assert (store_path / "node-1_id_rsa").read_bytes() != key_before

    def test_create_on_provisioned_record_refused(self, driver, gateway, no_sleep):
        driver.create()
        calls = len(gateway.calls)
        with pytest.raises(AlreadyProvisionedError):
            driver.create()
        assert len(gateway.calls) == calls


# ---------------------------------------------------------------------------
# Remove
# ---------------------------------------------------------------------------


class TestRemove:
    def test_deletes_server_then_key(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.calls.clear()

        driver.remove()

        assert gateway.calls == [
            ("delete_instance", 42), ("await_action", 100), ("delete_key", 7),
        ]
        r = driver.record
        assert (r.server_id, r.ssh_key_id) == (0, 0)
        assert r.lifecycle == LifecycleState.REMOVED
        assert not (driver.record.store_path / "node-1_id_rsa").exists()

    def test_already_deleted_resources_are_fine(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["delete_instance"] = NotFoundError("gone", status_code=404)
        gateway.errors["delete_key"] = NotFoundError("gone", status_code=404)

        driver.remove()
        driver.remove()

        assert driver.record.lifecycle == LifecycleState.REMOVED
        assert (driver.record.server_id, driver.record.ssh_key_id) == (0, 0)

    def test_failed_server_delete_still_deletes_key(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["delete_instance"] = TransientError("503")

        with pytest.raises(CleanupError) as exc_info:
            driver.remove()

        assert len(exc_info.value.failures) == 1
        assert exc_info.value.failures[0].step == "delete-server"
        assert "delete_key" in gateway.call_names()
        r = driver.record
        assert r.lifecycle == LifecycleState.REMOVED
        assert r.server_id == 42
        assert r.ssh_key_id == 0

    def test_retry_after_partial_failure(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["delete_instance"] = TransientError("503")
        with pytest.raises(CleanupError):
            driver.remove()

        del gateway.errors["delete_instance"]
        gateway.calls.clear()
        driver.remove()

        assert gateway.call_names() == ["delete_instance", "await_action"]
        assert driver.record.server_id == 0

    def test_remove_unprovisioned_needs_no_provider(self, store_path):
        d = HetznerDriver(MachineRecord(machine_name="n", store_path=store_path))
        d.remove()
        assert d.record.lifecycle == LifecycleState.REMOVED

    def test_remove_after_key_only(self, driver, gateway, no_sleep):
        gateway.errors["create_instance"] = QuotaError("limit")
        with pytest.raises(QuotaError):
            driver.create()
        gateway.calls.clear()

        driver.remove()

        assert gateway.calls == [("delete_key", 7)]

    def test_address_unavailable_after_remove(self, driver, gateway, no_sleep):
        _created(driver)
        driver.remove()
        with pytest.raises(AddressUnavailableError):
            driver.get_url()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    def test_address_before_create(self, driver):
        with pytest.raises(AddressUnavailableError):
            driver.get_ip()
        with pytest.raises(AddressUnavailableError):
            driver.get_url()

    @pytest.mark.parametrize("status,expected", [
        ("running", MachineState.RUNNING),
        ("off", MachineState.STOPPED),
        ("starting", MachineState.UNKNOWN),
        ("migrating", MachineState.UNKNOWN),
    ])
    def test_get_state(self, driver, gateway, no_sleep, status, expected):
        _created(driver)
        gateway.status = status
        assert driver.get_state() == expected

    def test_get_state_unreachable_is_error(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["get_instance"] = TransientError("timeout")
        assert driver.get_state() == MachineState.ERROR

    def test_get_state_server_gone_is_error(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["get_instance"] = NotFoundError("gone", status_code=404)
        assert driver.get_state() == MachineState.ERROR

    def test_get_state_before_create(self, driver):
        with pytest.raises(NotProvisionedError):
            driver.get_state()

    def test_get_state_does_not_change_record(self, driver, gateway, no_sleep):
        _created(driver)
        before = driver.record.model_copy()
        gateway.status = "off"
        driver.get_state()
        assert driver.record == before


# ---------------------------------------------------------------------------
# Power
# ---------------------------------------------------------------------------


class TestPower:
    @pytest.mark.parametrize("operation,remote", [
        ("start", "power_on"),
        ("stop", "power_off"),
        ("restart", "reboot"),
        ("kill", "power_off"),
    ])
    def test_power_operation(self, driver, gateway, no_sleep, operation, remote):
        _created(driver)
        gateway.calls.clear()

        getattr(driver, operation)()

        assert gateway.calls == [("get_instance", 42), (remote, 42)]

    def test_not_provisioned(self, driver, gateway):
        with pytest.raises(NotProvisionedError):
            driver.start()
        assert gateway.calls == []

    def test_server_vanished(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["get_instance"] = NotFoundError("gone", status_code=404)
        with pytest.raises(NotProvisionedError) as exc_info:
            driver.stop()
        assert exc_info.value.resource_id == 42
        assert "power_off" not in gateway.call_names()

    def test_prefetch_failure_tagged_with_step(self, driver, gateway, no_sleep):
        _created(driver)
        gateway.errors["get_instance"] = TransientError("503")
        with pytest.raises(TransientError) as exc_info:
            driver.start()
        assert exc_info.value.step == "power-on"
        assert exc_info.value.resource_id == 42
        assert "power_on" not in gateway.call_names()
