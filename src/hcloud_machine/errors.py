"""
Driver errors.

Every failure the driver surfaces to the host is a ``DriverError``.
Provider-side failures are ``ProviderError`` subclasses so callers can
tell a rejected request from a local problem.
"""

from __future__ import annotations

from typing import List, Optional


class DriverError(Exception):
    """Base class for every error raised by the driver.

    Args:
        message: Human readable description.
        step: Workflow step that failed (e.g. ``upload-key``).
        resource_id: Remote identifier involved, if any.
    """

    def __init__(
        self,
        message: str,
        step: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.resource_id = resource_id

    def __str__(self) -> str:
        prefix = ""
        if self.step:
            prefix = f"{self.step}"
            if self.resource_id:
                prefix += f" ({self.resource_id})"
            prefix += ": "
        return f"{prefix}{self.message}"


class ConfigurationError(DriverError):
    """Missing or invalid driver options, detected before any remote call."""


class KeyGenerationError(DriverError):
    """The SSH key pair could not be generated."""


class PersistenceError(DriverError):
    """A local filesystem operation failed."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class ProviderError(DriverError):
    """The provider rejected a request or could not be reached.

    Args:
        message: Description (usually the provider's own message).
        status_code: HTTP status of the response, if there was one.
        code: Provider error code (e.g. ``uniqueness_error``).
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: str = "",
        step: Optional[str] = None,
        resource_id: Optional[int] = None,
    ) -> None:
        super().__init__(message, step=step, resource_id=resource_id)
        self.status_code = status_code
        self.code = code


class AuthError(ProviderError):
    """Invalid, expired or insufficiently privileged API token."""


class ConflictError(ProviderError):
    """A resource with the same unique attribute already exists."""


class QuotaError(ProviderError):
    """Account limits prevent the request."""


class InvalidParameterError(ProviderError):
    """Unknown server type, image, location or malformed input."""


class NotFoundError(ProviderError):
    """The referenced remote object does not exist."""


class TransientError(ProviderError):
    """Network failure, rate limiting or a provider-side 5xx."""


class ActionFailedError(ProviderError):
    """An asynchronous provider action finished with an error."""


class ActionTimeoutError(ProviderError):
    """An asynchronous provider action did not finish in time."""


# ---------------------------------------------------------------------------
# Lifecycle errors
# ---------------------------------------------------------------------------

class ProvisioningTimeoutError(DriverError):
    """The server never reported a public IPv4 address."""


class StateError(DriverError):
    """An operation was requested before its prerequisite state was reached."""


class AddressUnavailableError(StateError):
    """No public address has been resolved for the machine yet."""


class NotProvisionedError(StateError):
    """The machine has no remote server."""


class AlreadyProvisionedError(StateError):
    """Create was called on a machine that already owns a remote server."""


class CleanupError(DriverError):
    """Remove finished but at least one deletion failed.

    Args:
        message: Summary of what was left behind.
        failures: The underlying errors, in the order they occurred.
    """

    def __init__(self, message: str, failures: List[DriverError]) -> None:
        super().__init__(message, step="remove")
        self.failures = failures
