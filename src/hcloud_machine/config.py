"""
Driver configuration: create flags, option resolution, and the
optional YAML file that overrides driver constants.

Example ``~/.hcloud-machine/config.yaml``::

    poll_interval: 3
    poll_attempts: 40
    key_name_prefix: "cluster-"
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError
from .models import DEFAULT_IMAGE, DEFAULT_LOCATION, DEFAULT_SERVER_TYPE, DriverConfig

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.yaml"

API_TOKEN_FLAG = "hetzner-api-token"
SERVER_TYPE_FLAG = "hetzner-server-type"
IMAGE_FLAG = "hetzner-image"
LOCATION_FLAG = "hetzner-location"


class Flag(BaseModel):
    """A create option the host exposes to its users."""

    name: str
    usage: str
    env_var: str
    default: Optional[str] = None


CREATE_FLAGS: List[Flag] = [
    Flag(
        name=API_TOKEN_FLAG,
        usage="Hetzner Cloud API Token",
        env_var="HETZNER_API_TOKEN",
    ),
    Flag(
        name=SERVER_TYPE_FLAG,
        usage="Hetzner server type (e.g. cx11)",
        env_var="HETZNER_SERVER_TYPE",
        default=DEFAULT_SERVER_TYPE,
    ),
    Flag(
        name=IMAGE_FLAG,
        usage="Image name (e.g. ubuntu-20.04)",
        env_var="HETZNER_IMAGE",
        default=DEFAULT_IMAGE,
    ),
    Flag(
        name=LOCATION_FLAG,
        usage="Datacenter location (e.g. fsn1, nbg1)",
        env_var="HETZNER_LOCATION",
        default=DEFAULT_LOCATION,
    ),
]


def resolve_options(
    options: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Resolve every create flag: explicit option, then env var, then default.

    Args:
        options: Options supplied by the host, keyed by flag name.
        environ: Environment to consult (defaults to os.environ).

    Returns:
        Dict mapping flag name to its value ("" when nothing is set).
    """
    env = os.environ if environ is None else environ
    resolved: Dict[str, str] = {}
    for flag in CREATE_FLAGS:
        value = options.get(flag.name)
        if value in (None, ""):
            value = env.get(flag.env_var) or flag.default or ""
        resolved[flag.name] = str(value).strip()
    return resolved


def load_config(path: Union[str, Path]) -> DriverConfig:
    """Load driver constants from a YAML file.

    A missing file is not an error; the built-in defaults apply.

    Args:
        path: Config file path, or a directory containing config.yaml.

    Returns:
        DriverConfig with the file's overrides applied.

    Raises:
        ConfigurationError: If the file is unreadable, not a mapping,
            or contains unknown or invalid settings.
    """
    config_path = Path(path).expanduser()
    if config_path.is_dir():
        config_path = config_path / CONFIG_FILE_NAME
    if not config_path.exists():
        return DriverConfig()

    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"reading {config_path}: {exc}") from exc

    if data is None:
        return DriverConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping")

    try:
        config = DriverConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid settings in {config_path}: {exc}") from exc

    logger.debug("Loaded driver config from %s", config_path)
    return config
