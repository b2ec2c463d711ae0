"""
Hetzner Cloud gateway: a thin blocking client for the API verbs the driver needs.

One method per remote operation, one HTTP request per call (awaiting an
action is the only polling loop). Provider errors are translated into
the ``hcloud_machine.errors`` taxonomy; nothing is retried here.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests

from .errors import (
    ActionFailedError,
    ActionTimeoutError,
    AuthError,
    ConfigurationError,
    ConflictError,
    InvalidParameterError,
    NotFoundError,
    ProviderError,
    QuotaError,
    TransientError,
)
from .models import MachineState, ServerInfo

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.hetzner.cloud/v1"

_ERRORS_BY_CODE = {
    "unauthorized": AuthError,
    "forbidden": AuthError,
    "token_readonly": AuthError,
    "uniqueness_error": ConflictError,
    "conflict": ConflictError,
    "resource_limit_exceeded": QuotaError,
    "placement_error": QuotaError,
    "invalid_input": InvalidParameterError,
    "json_error": InvalidParameterError,
    "not_found": NotFoundError,
    "rate_limit_exceeded": TransientError,
    "server_error": TransientError,
    "timeout": TransientError,
    "unavailable": TransientError,
}

_ERRORS_BY_STATUS = {
    400: InvalidParameterError,
    401: AuthError,
    403: AuthError,
    404: NotFoundError,
    409: ConflictError,
    422: InvalidParameterError,
    429: TransientError,
}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def state_from_status(status: Optional[str]) -> MachineState:
    """Map a Hetzner server status to a host run state.

    Never raises: anything that is not ``running`` or ``off``
    (initializing, starting, migrating, unknown values, None) maps to
    UNKNOWN.
    """
    if status == "running":
        return MachineState.RUNNING
    if status == "off":
        return MachineState.STOPPED
    return MachineState.UNKNOWN


def error_for_response(
    status_code: int,
    body: Any,
    context: str,
) -> ProviderError:
    """Build the taxonomy error for a failed API response.

    The provider error code wins over the HTTP status when both are
    recognised.

    Args:
        status_code: HTTP status.
        body: Decoded JSON body, if any (any JSON type).
        context: ``METHOD /endpoint`` of the failed call.

    Returns:
        A ProviderError subclass instance (not raised).
    """
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}
    code = str(error.get("code") or "")
    message = str(error.get("message") or "")

    cls = _ERRORS_BY_CODE.get(code) or _ERRORS_BY_STATUS.get(status_code)
    if cls is None:
        cls = TransientError if status_code >= 500 else ProviderError

    detail = f"{code}: {message}" if code else (message or "no error details")
    return cls(
        f"Hetzner API {context}: {status_code} {detail}",
        status_code=status_code,
        code=code,
    )


def _malformed(context: str, what: str) -> ProviderError:
    return ProviderError(f"Hetzner API {context}: malformed response ({what})")


def _field(result: Dict[str, Any], key: str, context: str) -> Dict[str, Any]:
    """Return the ``key`` object of a response, or raise ProviderError."""
    value = result.get(key)
    if not isinstance(value, dict):
        raise _malformed(context, f"missing {key!r} object")
    return value


def _object_id(data: Dict[str, Any], context: str) -> int:
    try:
        return int(data["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise _malformed(context, "missing or invalid id") from exc


def _server_info(data: Dict[str, Any], context: str) -> ServerInfo:
    public_net = data.get("public_net")
    ipv4 = public_net.get("ipv4") if isinstance(public_net, dict) else None
    ip = ipv4.get("ip") if isinstance(ipv4, dict) else None
    return ServerInfo(
        id=_object_id(data, context),
        name=str(data.get("name") or ""),
        status=str(data["status"]) if data.get("status") is not None else None,
        ipv4=str(ip) if ip else None,
    )


def _action_id(result: Dict[str, Any]) -> Optional[int]:
    action = result.get("action")
    if not isinstance(action, dict):
        return None
    action_id = action.get("id")
    return action_id if isinstance(action_id, int) else None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class HetznerGateway:
    """Authenticated Hetzner Cloud API client.

    Args:
        token: Hetzner API token.
        endpoint: API base URL.
        timeout: Per-request timeout in seconds.
        action_poll_interval: Seconds between action status checks.
        action_timeout: Ceiling in seconds for await_action.
    """

    def __init__(
        self,
        token: str,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 30.0,
        action_poll_interval: float = 1.0,
        action_timeout: float = 300.0,
    ) -> None:
        if not token:
            raise ConfigurationError("hetzner-api-token is required")
        self._token = token
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._action_poll_interval = action_poll_interval
        self._action_timeout = action_timeout

    def _api_call(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Make an authenticated Hetzner API call.

        Args:
            method: HTTP method.
            endpoint: API endpoint, relative to the base URL.
            data: JSON request body.

        Returns:
            Parsed JSON response ({} for empty bodies).

        Raises:
            ProviderError: On network failure or any non-2xx response.
        """
        url = f"{self._endpoint}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        context = f"{method} {endpoint}"

        try:
            resp = requests.request(
                method, url, headers=headers, json=data, timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransientError(f"Hetzner API {context}: {exc}") from exc

        body: Any = None
        if resp.content:
            try:
                body = resp.json()
            except ValueError:
                body = None

        if resp.status_code >= 400:
            raise error_for_response(resp.status_code, body, context)

        logger.debug("Hetzner API %s -> %d", context, resp.status_code)
        return body if isinstance(body, dict) else {}

    # -- SSH keys ----------------------------------------------------------

    def upload_key(self, name: str, public_key: str) -> int:
        """Register a public key and return its remote id."""
        result = self._api_call(
            "POST", "/ssh_keys", data={"name": name, "public_key": public_key},
        )
        context = "POST /ssh_keys"
        return _object_id(_field(result, "ssh_key", context), context)

    def delete_key(self, key_id: int) -> None:
        """Delete a registered SSH key."""
        self._api_call("DELETE", f"/ssh_keys/{key_id}")

    # -- Servers -----------------------------------------------------------

    def create_instance(
        self,
        name: str,
        server_type: str,
        image: str,
        location: str,
        ssh_key_id: int,
    ) -> Tuple[int, Optional[int]]:
        """Request a new server.

        Returns:
            Tuple of (server id, id of the create action or None).
        """
        result = self._api_call("POST", "/servers", data={
            "name": name,
            "server_type": server_type,
            "image": image,
            "location": location,
            "ssh_keys": [ssh_key_id],
            "start_after_create": True,
        })
        context = "POST /servers"
        return _object_id(_field(result, "server", context), context), _action_id(result)

    def get_instance(self, server_id: int) -> ServerInfo:
        """Fetch a server's status and public IPv4."""
        context = f"GET /servers/{server_id}"
        result = self._api_call("GET", f"/servers/{server_id}")
        return _server_info(_field(result, "server", context), context)

    def delete_instance(self, server_id: int) -> Optional[int]:
        """Delete a server, returning the delete action id if any."""
        return _action_id(self._api_call("DELETE", f"/servers/{server_id}"))

    def power_on(self, server_id: int) -> Optional[int]:
        """Start a server without waiting for it to boot."""
        return self._server_action(server_id, "poweron")

    def power_off(self, server_id: int) -> Optional[int]:
        """Cut power to a server without waiting."""
        return self._server_action(server_id, "poweroff")

    def reboot(self, server_id: int) -> Optional[int]:
        """Hard reset a server without waiting."""
        return self._server_action(server_id, "reboot")

    def _server_action(self, server_id: int, action: str) -> Optional[int]:
        result = self._api_call("POST", f"/servers/{server_id}/actions/{action}")
        body = result.get("action")
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error:
            raise ActionFailedError(
                f"{action} on server {server_id}: {error.get('message', error)}",
                code=str(error.get("code") or ""),
                resource_id=server_id,
            )
        return _action_id(result)

    # -- Actions -----------------------------------------------------------

    def await_action(self, action_id: int) -> None:
        """Block until an asynchronous action finishes.

        Raises:
            ActionFailedError: If the action ends in ``error``.
            ActionTimeoutError: If it is still running after the ceiling.
        """
        context = f"GET /actions/{action_id}"
        deadline = time.monotonic() + self._action_timeout
        while True:
            result = self._api_call("GET", f"/actions/{action_id}")
            action = _field(result, "action", context)
            status = action.get("status")
            if status == "success":
                return
            if status == "error":
                error = action.get("error")
                if not isinstance(error, dict):
                    error = {}
                raise ActionFailedError(
                    f"action {action_id} ({action.get('command', 'unknown')}) "
                    f"failed: {error.get('message', 'no details')}",
                    code=str(error.get("code") or ""),
                    resource_id=action_id,
                )
            if time.monotonic() >= deadline:
                raise ActionTimeoutError(
                    f"action {action_id} still {status} after "
                    f"{self._action_timeout:.0f}s",
                    resource_id=action_id,
                )
            time.sleep(self._action_poll_interval)
