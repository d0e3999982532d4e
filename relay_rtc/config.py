"""Configuration management for relay-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (RELAY_RTC_SIGNALING_WS, RELAY_RTC_HOST, RELAY_RTC_PORT, PORT)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- relay-rtc.toml in current working directory
- ~/.relay-rtc/config.toml

Environment selection via RELAY_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://relay.example.org"
    port = 3000

    [transport]
    max_retries = 5
    retry_delay = 1.0

    [[ice.servers]]
    urls = "stun:stun.l.google.com:19302"
"""

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from loguru import logger

# Relay server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000
WEBSOCKET_PATH = "/ws"

# Default signaling server URL used by clients
DEFAULT_SIGNALING_WEBSOCKET = f"ws://localhost:{DEFAULT_PORT}"

DEFAULT_ICE_SERVERS: List[Dict[str, Any]] = [
    {"urls": ["stun:stun.l.google.com:19302"]}
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class TransportConfig:
    """Reconnection settings for the client signaling transport.

    Attributes:
        max_retries: Automatic reconnection attempts before giving up.
        retry_delay: Base delay in seconds; attempt ``n`` waits ``n * retry_delay``.
    """

    max_retries: int = 5
    retry_delay: float = 1.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.retry_delay < 0:
            raise ValueError("retry_delay cannot be negative")

    @classmethod
    def from_dict(cls, data: dict) -> "TransportConfig":
        """Create TransportConfig from the TOML [transport] section.

        Invalid values are logged and replaced by defaults.
        """
        defaults = cls()
        try:
            return cls(
                max_retries=int(data.get("max_retries", defaults.max_retries)),
                retry_delay=float(data.get("retry_delay", defaults.retry_delay)),
            )
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid [transport] settings: {e}. Using defaults.")
            return defaults


class Config:
    """Configuration manager for relay-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.environment: str = "production"
        self.transport: TransportConfig = TransportConfig()
        self.ice_servers: List[Dict[str, Any]] = [
            dict(server) for server in DEFAULT_ICE_SERVERS
        ]
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from RELAY_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("RELAY_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid RELAY_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. relay-rtc.toml in current working directory
        2. ~/.relay-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "relay-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".relay-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        A file that cannot be read or parsed leaves the defaults in place.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.transport = TransportConfig.from_dict(
            self._config_data.get("transport", {})
        )

        ice_servers = self._config_data.get("ice", {}).get("servers")
        if ice_servers is not None:
            self.ice_servers = self._parse_ice_servers(ice_servers)

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "host" in env_config:
            self.host = env_config["host"]

        if "port" in env_config:
            self.port = self._parse_port(env_config["port"], source=str(config_file))

    @staticmethod
    def _parse_ice_servers(entries: Any) -> List[Dict[str, Any]]:
        """Keep the [[ice.servers]] entries that carry ``urls``."""
        servers = []
        if not isinstance(entries, list):
            logger.warning("Ignoring [ice] servers: expected a list of tables")
            return servers

        for entry in entries:
            if not isinstance(entry, dict) or "urls" not in entry:
                logger.warning(f"Skipping invalid ICE server entry: {entry}")
                continue
            server = {"urls": entry["urls"]}
            if "username" in entry:
                server["username"] = entry["username"]
            if "credential" in entry:
                server["credential"] = entry["credential"]
            servers.append(server)
        return servers

    def _parse_port(self, value: Any, source: str) -> int:
        try:
            port = int(value)
        except (TypeError, ValueError):
            logger.warning(f"Invalid port '{value}' from {source}, keeping {self.port}")
            return self.port
        if not 0 < port < 65536:
            logger.warning(f"Port {port} from {source} out of range, keeping {self.port}")
            return self.port
        return port

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("RELAY_RTC_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )

        host_override = os.getenv("RELAY_RTC_HOST")
        if host_override:
            self.host = host_override
            logger.info(f"Overriding host from env: {self.host}")

        # PORT is honoured for hosting platforms that inject it
        for name in ("PORT", "RELAY_RTC_PORT"):
            port_override = os.getenv(name)
            if port_override:
                self.port = self._parse_port(port_override, source=name)
                logger.info(f"Overriding port from {name}: {self.port}")

    def get_websocket_url(self, user_id: str, base: Optional[str] = None) -> str:
        """Get the raw socket URL for a user.

        Args:
            user_id: Id to register with; sent as the ``userId`` query parameter.
            base: Relay URL to use instead of ``signaling_websocket``.

        Returns:
            WebSocket URL including the ``/ws`` path.
        """
        base = (base or self.signaling_websocket).rstrip("/")
        if not base.endswith(WEBSOCKET_PATH):
            base = f"{base}{WEBSOCKET_PATH}"
        return f"{base}?{urlencode({'userId': user_id})}"


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
