"""Run settings for fleetplay.

Settings are layered, lowest to highest precedence:

1. Built-in defaults
2. ~/.fleetplay/config.yml
3. ./fleetplay.yml
4. FLEETPLAY_<FIELD> environment variables (e.g. FLEETPLAY_FORKS=20)
5. Command-line options
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLEETPLAY_"

DEFAULT_CONFIG_PATHS = [
    Path.home() / ".fleetplay" / "config.yml",
    Path("fleetplay.yml"),
]

MAX_FORKS = 500


@dataclass(frozen=True)
class Settings:
    """Configuration for a run.

    Attributes:
        forks: Maximum number of hosts processed concurrently
        timeout: Timeout in seconds for a single remote command
        connect_timeout: Timeout in seconds for establishing a connection
        inventory: Default inventory file when -i is not given
        remote_user: SSH user for hosts that do not set ansible_user
        private_key_file: SSH private key for hosts that do not set one
        host_key_checking: Verify SSH host keys against known_hosts
        log_file: Also write logs to this file
        retry_delay: Delay between retries for tasks that set retries but no delay
    """

    forks: int = 5
    timeout: int = 300
    connect_timeout: float = 30.0
    inventory: str | None = None
    remote_user: str | None = None
    private_key_file: str | None = None
    host_key_checking: bool = True
    log_file: str | None = None
    retry_delay: float = 5.0

    def __post_init__(self) -> None:
        if not 1 <= self.forks <= MAX_FORKS:
            raise ConfigError(f"forks must be between 1 and {MAX_FORKS}, got {self.forks}")
        if self.timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {self.timeout}")
        if self.connect_timeout <= 0:
            raise ConfigError(f"connect_timeout must be positive, got {self.connect_timeout}")
        if self.retry_delay < 0:
            raise ConfigError(f"retry_delay cannot be negative, got {self.retry_delay}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source: str = "settings") -> "Settings":
        """Create settings from a mapping, validating keys and value types."""
        return cls().merged(data, source=source)

    def merged(self, data: Mapping[str, Any], source: str = "settings") -> "Settings":
        """Return a copy with values from `data` applied; None values are ignored."""
        known = {f.name: f for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"{source}: unknown setting '{key}'")
            if value is None:
                continue
            changes[key] = _coerce(key, getattr(self, key), value, source)
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(key: str, current: Any, value: Any, source: str) -> Any:
    """Convert a raw value to the type of the setting it overrides."""
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in ("1", "true", "yes", "on"):
                    return True
                if lowered in ("0", "false", "no", "off"):
                    return False
                raise ValueError(f"not a boolean: {value!r}")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{source}: invalid value for '{key}': {e}")


def read_config_file(path: Path) -> dict[str, Any]:
    """Read a YAML settings file.

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def settings_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect FLEETPLAY_* environment variables that name a setting."""
    names = {f.name for f in fields(Settings)}
    result: dict[str, Any] = {}
    for key, value in environ.items():
        if key.startswith(ENV_PREFIX):
            name = key[len(ENV_PREFIX):].lower()
            if name in names:
                result[name] = value
    return result


def load_settings(
    paths: list[Path] | None = None,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load settings from files, environment and explicit overrides.

    Args:
        paths: Config files to read in order (default: DEFAULT_CONFIG_PATHS)
        environ: Environment mapping (default: os.environ)
        overrides: Highest-precedence values, typically CLI options

    Returns:
        Validated Settings

    Raises:
        ConfigError: If any source contains unknown keys or invalid values
    """
    settings = Settings()
    for path in DEFAULT_CONFIG_PATHS if paths is None else paths:
        if path.is_file():
            logger.debug(f"Reading settings from {path}")
            settings = settings.merged(read_config_file(path), source=str(path))

    env = os.environ if environ is None else environ
    settings = settings.merged(settings_from_env(env), source="environment")

    if overrides:
        settings = settings.merged(overrides, source="command line")
    return settings
