"""Settings loader: YAML file, then environment, then command-line overrides."""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from labkeeper.config.models import Settings
from labkeeper.utils.errors import ConfigurationError
from labkeeper.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILE = "labkeeper.yaml"

# Environment variable -> settings path
ENV_OVERRIDES: Dict[str, Tuple[str, ...]] = {
    "AWS_REGION": ("region",),
    "AWS_PROFILE": ("profile",),
    "STATE_BUCKET": ("state", "bucket"),
    "STATE_KEY": ("state", "key"),
    "LABKEEPER_PROJECT": ("project",),
    "LOG_LEVEL": ("logging", "level"),
    "SSH_CIDR": ("network", "ssh_cidr"),
    "HTTP_CIDR": ("network", "http_cidr"),
    "INSTANCE_TYPE": ("instance", "type"),
}


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build settings from defaults, an optional YAML file, the environment and overrides.

    Args:
        config_path: YAML file to read; when None, ``labkeeper.yaml`` in the
            working directory is used if it exists
        overrides: Dotted settings paths to values (e.g. ``{"state.bucket": "x"}``);
            None values are ignored
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    data = _read_file(config_path)

    environ = os.environ if environ is None else environ
    for variable, path in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            _set_path(data, path, value)
            logger.debug(f"{'.'.join(path)} set from {variable}")

    for dotted, value in (overrides or {}).items():
        if value is not None:
            _set_path(data, tuple(dotted.split(".")), value)

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Configuration validation failed with {e.error_count()} error(s)",
            _format_errors(e),
        )


def _read_file(config_path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    if config_path is None:
        path = Path(DEFAULT_CONFIG_FILE)
        if not path.exists():
            return {}
    else:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML in {path}: {e}", cause=e)
    except OSError as e:
        raise ConfigurationError(f"Could not read {path}: {e}", cause=e)

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")

    logger.debug(f"Loaded configuration from {path}")
    return data


def _set_path(data: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    target = data
    for key in path[:-1]:
        section = target.get(key)
        if not isinstance(section, dict):
            section = {}
            target[key] = section
        target = section
    target[path[-1]] = value


def _format_errors(error: ValidationError) -> List[Dict[str, Any]]:
    return [{"loc": list(e["loc"]), "msg": e["msg"]} for e in error.errors()]
