"""
SSH identity provisioning.

Each machine gets its own RSA key pair. The private key stays on disk
under the machine's storage directory; the public key is returned for
registration with the provider.

Storage layout:
    <store_path>/
    └── <machine_name>_id_rsa    # PEM, mode 0600
"""

from __future__ import annotations

import functools
import logging
import os
from pathlib import Path
from typing import Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .errors import ConfigurationError, KeyGenerationError, PersistenceError

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
DIR_MODE = 0o700
FILE_MODE = 0o600


def key_path_for(store_path: Union[str, Path], machine_name: str) -> Path:
    """Return the private key path for a machine.

    Args:
        store_path: Machine storage directory.
        machine_name: Logical machine name.

    Returns:
        Path of the private key file.
    """
    return Path(store_path) / f"{machine_name}_id_rsa"


def _generate_rsa_key_pair() -> Tuple[bytes, bytes]:
    """Generate a key pair as (private PEM, OpenSSH public line)."""
    key = rsa.generate_private_key(
        public_exponent=PUBLIC_EXPONENT,
        key_size=KEY_SIZE,
    )
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_line = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )
    return private_pem, public_line + b"\n"


def _ensure_store_dir(store_path: Path) -> None:
    """Create the storage directory with owner-only permissions if absent."""
    if store_path.is_dir():
        return
    store_path.mkdir(parents=True, mode=DIR_MODE, exist_ok=True)
    # mkdir's mode is filtered through the umask
    os.chmod(store_path, DIR_MODE)


def _write_private_key(key_path: Path, private_pem: bytes) -> None:
    with open(
        key_path,
        "wb",
        opener=functools.partial(os.open, mode=FILE_MODE),
    ) as f:
        f.write(private_pem)
    # an existing file keeps its old mode on truncate
    os.chmod(key_path, FILE_MODE)


def generate_identity(
    store_path: Union[str, Path],
    machine_name: str,
) -> Tuple[bytes, Path]:
    """Create a fresh SSH identity for a machine.

    An existing key file for the same machine name is overwritten.

    Args:
        store_path: Machine storage directory (created if missing).
        machine_name: Logical machine name, used to derive the key path.

    Returns:
        Tuple of (OpenSSH public key bytes, private key path).

    Raises:
        ConfigurationError: If store_path or machine_name is empty.
        KeyGenerationError: If the key pair cannot be generated.
        PersistenceError: If the directory or key file cannot be written.
    """
    if store_path is None or not str(store_path).strip():
        raise ConfigurationError("store path is empty, cannot write SSH key")
    if not machine_name:
        raise ConfigurationError("machine name is empty, cannot name SSH key")

    try:
        private_pem, public_line = _generate_rsa_key_pair()
    except Exception as exc:
        raise KeyGenerationError(
            f"generating RSA key: {exc}", step="generate-key",
        ) from exc

    store = Path(store_path)
    key_path = key_path_for(store, machine_name)
    try:
        _ensure_store_dir(store)
    except OSError as exc:
        raise PersistenceError(
            f"creating store directory {store}: {exc}", step="generate-key",
        ) from exc
    try:
        _write_private_key(key_path, private_pem)
    except OSError as exc:
        raise PersistenceError(
            f"writing private key {key_path}: {exc}", step="generate-key",
        ) from exc

    logger.debug("Wrote SSH private key to %s", key_path)
    return public_line, key_path


def public_key_from_private(key_path: Union[str, Path]) -> bytes:
    """Derive the OpenSSH public key line from a stored private key.

    Args:
        key_path: Path to a PEM private key written by generate_identity.

    Returns:
        Public key bytes in authorized-key format, newline terminated.

    Raises:
        PersistenceError: If the file cannot be read.
        KeyGenerationError: If the file is not a usable private key.
    """
    try:
        data = Path(key_path).read_bytes()
    except OSError as exc:
        raise PersistenceError(f"reading private key {key_path}: {exc}") from exc
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError) as exc:
        raise KeyGenerationError(f"loading private key {key_path}: {exc}") from exc
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ) + b"\n"


def remove_identity(key_path: Union[str, Path]) -> bool:
    """Delete a machine's private key file.

    Args:
        key_path: Path to the private key.

    Returns:
        True if a file was removed, False if it was already gone.

    Raises:
        PersistenceError: On any other filesystem error.
    """
    if not str(key_path):
        return False
    try:
        Path(key_path).unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise PersistenceError(f"removing private key {key_path}: {exc}") from exc
    logger.debug("Removed SSH private key %s", key_path)
    return True
