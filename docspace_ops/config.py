"""Settings for docspace-ops.

Values are resolved as: built-in defaults, then an optional YAML file, then
``DOCSPACE_*`` environment variables (a ``.env`` in the working directory is
loaded first so it can supply those variables).
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError

log = logging.getLogger(__name__)

ENV_PREFIX = "DOCSPACE_"
CONFIG_ENV_VAR = "DOCSPACE_OPS_CONFIG"
DEFAULT_CONFIG_FILE = "/etc/docspace-ops.yml"


@dataclass
class Settings:
    # --- Deployment layout ---
    compose_dir: str = "/app/onlyoffice"
    container_prefix: str = "onlyoffice-"
    network_name: str = "onlyoffice"
    volume_pattern: str = "onlyoffice|docspace"
    storage_mount: str = "/mnt/docspace_data"
    storage_dirs: list = field(default_factory=lambda: ["app_data", "log_data", "mysql_data"])
    # --- Health thresholds (percent) ---
    warn_percent: int = 80
    critical_percent: int = 90
    # --- Timeouts and waits (seconds) ---
    command_timeout: int = 30
    compose_timeout: int = 300
    stop_timeout: int = 30
    settle_seconds: int = 3
    restart_wait: int = 5
    stabilize_seconds: int = 15
    http_timeout: int = 10
    # --- Misc ---
    expected_running: int = 15
    http_host: str = "localhost"
    log_lines: int = 100
    discovery_dir: str = "/root/docspace-ops/architecture-capture"

    def __post_init__(self):
        if not 0 < self.warn_percent < self.critical_percent <= 100:
            raise ConfigError(
                f"Thresholds must satisfy 0 < warn ({self.warn_percent}) "
                f"< critical ({self.critical_percent}) <= 100"
            )
        if self.command_timeout <= 0 or self.compose_timeout <= 0:
            raise ConfigError("Command timeouts must be positive")

    @property
    def compose_path(self):
        return Path(self.compose_dir)

    def container_name(self, service_name):
        return f"{self.container_prefix}{service_name}"


def _coerce(name, current, raw):
    """Convert a raw (string or YAML) value to the type of the default."""
    try:
        if isinstance(current, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, list):
            if isinstance(raw, (list, tuple)):
                return [str(item) for item in raw]
            return [part.strip() for part in str(raw).split(",") if part.strip()]
        return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for '{name}': {raw!r} ({e})") from e


def _load_yaml(path):
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse config file {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def load_settings(config_file=None, environ=None, load_env_file=True):
    """Build Settings from defaults, an optional YAML file and the environment."""
    if load_env_file:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path, override=False)
            log.debug("Loaded environment from %s", dotenv_path)

    environ = os.environ if environ is None else environ
    defaults = Settings()
    known = {f.name: getattr(defaults, f.name) for f in fields(Settings)}
    values = {}

    path = config_file or environ.get(CONFIG_ENV_VAR)
    if not path and os.path.isfile(DEFAULT_CONFIG_FILE):
        path = DEFAULT_CONFIG_FILE
    if path:
        log.debug("Reading settings from %s", path)
        for key, raw in _load_yaml(path).items():
            key = str(key).replace("-", "_")
            if key not in known:
                raise ConfigError(f"Unknown setting '{key}' in {path}")
            values[key] = _coerce(key, known[key], raw)

    for name, default in known.items():
        env_key = f"{ENV_PREFIX}{name.upper()}"
        if env_key in environ:
            values[name] = _coerce(name, default, environ[env_key])

    return Settings(**values)
