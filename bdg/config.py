"""Configuration management for bdg.

Supports multiple configuration sources with precedence:
CLI flags > Environment variables > Config file > Defaults

Usage:
    >>> config = Configuration()
    >>> config.load_from_file("~/.bdgrc")
    >>> config.load_from_env()
    >>> config.merge(chrome_port=9333)  # CLI overrides
    >>> print(config.chrome_port)
    9333
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "~/.bdgrc"


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class Configuration:
    """Configuration manager with layered precedence.

    Precedence order (highest to lowest):
    1. CLI arguments (via merge method)
    2. Environment variables (BDG_* prefix)
    3. Config file (~/.bdgrc JSON)
    4. Default values

    Attributes:
        chrome_host: Chrome remote debugging host (default: "localhost")
        chrome_port: Chrome remote debugging port (default: 9222)
        timeout: CDP command timeout in seconds (default: 30.0)
        max_size: Maximum WebSocket message size in bytes (default: 10MB)
        log_level: Logging level (default: "INFO")
        log_format: Log output format "text" or "json" (default: "text")
        session_dir: Directory holding PID, lock, socket and cache files
        worker_timeout: Seconds the daemon waits for a worker query reply
        command_timeout: Seconds the daemon waits for a worker CDP passthrough reply
        ready_timeout: Seconds the daemon waits for the worker to report ready
        max_network_requests: Hard cap on stored network requests
        max_console_messages: Hard cap on stored console messages
        stale_request_timeout: Age in seconds after which in-flight requests are swept
        stale_cleanup_interval: Seconds between stale-request sweeps
        max_body_size: Response bodies above this size are not fetched
        fetch_all_bodies: Fetch every response body regardless of heuristics
        include_all: Disable the default tracking-domain and console-noise filters
    """

    DEFAULTS: Dict[str, Any] = {
        "chrome_host": "localhost",
        "chrome_port": 9222,
        "timeout": 30.0,
        "max_size": 10_485_760,  # 10MB
        "log_level": "INFO",
        "log_format": "text",
        "session_dir": "~/.bdg",
        "worker_timeout": 5.0,
        "command_timeout": 10.0,
        "ready_timeout": 40.0,
        "max_network_requests": 10_000,
        "max_console_messages": 10_000,
        "stale_request_timeout": 60.0,
        "stale_cleanup_interval": 30.0,
        "max_body_size": 5_242_880,  # 5MB
        "fetch_all_bodies": False,
        "include_all": False,
    }

    ENV_PREFIX = "BDG_"

    def __init__(self):
        """Initialize configuration with default values."""
        self.chrome_host: str = self.DEFAULTS["chrome_host"]
        self.chrome_port: int = self.DEFAULTS["chrome_port"]
        self.timeout: float = self.DEFAULTS["timeout"]
        self.max_size: int = self.DEFAULTS["max_size"]
        self.log_level: str = self.DEFAULTS["log_level"]
        self.log_format: str = self.DEFAULTS["log_format"]
        self.session_dir: str = self.DEFAULTS["session_dir"]
        self.worker_timeout: float = self.DEFAULTS["worker_timeout"]
        self.command_timeout: float = self.DEFAULTS["command_timeout"]
        self.ready_timeout: float = self.DEFAULTS["ready_timeout"]
        self.max_network_requests: int = self.DEFAULTS["max_network_requests"]
        self.max_console_messages: int = self.DEFAULTS["max_console_messages"]
        self.stale_request_timeout: float = self.DEFAULTS["stale_request_timeout"]
        self.stale_cleanup_interval: float = self.DEFAULTS["stale_cleanup_interval"]
        self.max_body_size: int = self.DEFAULTS["max_body_size"]
        self.fetch_all_bodies: bool = self.DEFAULTS["fetch_all_bodies"]
        self.include_all: bool = self.DEFAULTS["include_all"]

    @property
    def session_path(self) -> Path:
        """Expanded session directory as a Path."""
        return Path(self.session_dir).expanduser()

    def load_from_file(self, file_path: str = DEFAULT_CONFIG_FILE) -> None:
        """Load configuration from JSON file.

        Args:
            file_path: Path to config file (typically ~/.bdgrc)

        Note:
            Invalid JSON or missing file is ignored with a warning log.
            Partial configs are merged with existing values.
        """
        path = Path(file_path).expanduser()

        if not path.exists():
            logger.debug(f"Config file not found: {path}")
            return

        try:
            with open(path, "r") as f:
                data = json.load(f)

            if not isinstance(data, dict):
                logger.warning(f"Config file {path} must contain a JSON object")
                return

            self._merge_dict(data)
            logger.info(f"Loaded configuration from {path}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in config file {path}: {e}")
        except OSError as e:
            logger.warning(f"Error loading config file {path}: {e}")

    def load_from_env(self) -> None:
        """Load configuration from environment variables.

        Every key in DEFAULTS maps to ``BDG_<KEY>`` (e.g. BDG_CHROME_PORT,
        BDG_SESSION_DIR, BDG_FETCH_ALL_BODIES). Values are converted to the
        type of the default. Invalid values are ignored with a warning log.
        """
        for attr_name, default in self.DEFAULTS.items():
            env_var = f"{self.ENV_PREFIX}{attr_name.upper()}"
            value = os.getenv(env_var)
            if value is None:
                continue

            if isinstance(default, bool):
                type_converter = _parse_bool
            else:
                type_converter = type(default)

            try:
                converted_value = type_converter(value)
                setattr(self, attr_name, converted_value)
                logger.debug(f"Loaded {attr_name}={converted_value} from {env_var}")
            except (ValueError, TypeError) as e:
                logger.warning(f"Invalid value for {env_var}: {value} ({e})")

    def merge(self, **kwargs) -> None:
        """Merge CLI arguments into configuration (highest precedence).

        Example:
            >>> config.merge(chrome_port=9333, timeout=15.0)
        """
        self._merge_dict(kwargs)

    def _merge_dict(self, data: dict) -> None:
        for key, value in data.items():
            if key in self.DEFAULTS and value is not None:
                setattr(self, key, value)
                logger.debug(f"Set {key}={value}")

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return {key: getattr(self, key) for key in self.DEFAULTS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        """Rebuild a configuration exported with to_dict (used by the worker)."""
        config = cls()
        config._merge_dict(data)
        return config

    @classmethod
    def load(cls, file_path: str = DEFAULT_CONFIG_FILE, **overrides) -> "Configuration":
        """Build a configuration from file, environment and overrides in precedence order."""
        config = cls()
        config.load_from_file(file_path)
        config.load_from_env()
        config.merge(**overrides)
        return config

    def __repr__(self) -> str:
        return f"Configuration({self.to_dict()})"
