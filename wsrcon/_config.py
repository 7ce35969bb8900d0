import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union
from ._constants import DEFAULT_HOST, DEFAULT_MAX_CONNECTIONS, ENV_PREFIX


logger = logging.getLogger("wsrcon.config")

# Value of ``websocket-port`` that selects the host application's own port
DEFAULT_PORT_VALUES = ("default", "", None)


def _parse_port(value: Any) -> Optional[int]:
    if value in DEFAULT_PORT_VALUES:
        return None
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid websocket-port {value!r}, expected an integer or 'default'")
    if not 0 <= port <= 65535:
        raise ValueError(f"Invalid websocket-port {port}, expected a value between 0 and 65535")
    return port


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class ServerConfig:
    """
    Configuration of the WebSocket console server.

    Attributes:
        host: Bind address.
        port: Port to listen on. ``None`` reuses the host application's port (see :meth:`resolve_port`).
        password: Password required from clients. Empty string disables authentication.
        max_connections: Maximum number of simultaneously registered connections.
        debug: Enables debug logging.
    """
    host: str = DEFAULT_HOST
    port: Optional[int] = None
    password: str = ""
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    debug: bool = False

    def __post_init__(self):
        if self.port is not None and not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port {self.port}, expected a value between 0 and 65535")
        if self.max_connections < 1:
            raise ValueError(f"Invalid max-connections {self.max_connections}, expected a positive integer")

    @property
    def password_required(self) -> bool:
        return bool(self.password)

    def resolve_port(self, host_port: int) -> int:
        if self.port is None:
            logger.debug(f"Using server port for WebSocket: {host_port}")
            return host_port
        logger.debug(f"Using configured WebSocket port: {self.port}")
        return self.port

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerConfig":
        """
        Build the config from a mapping using the plugin configuration keys
        (``websocket-host``, ``websocket-port``, ``websocket-password``, ``max-connections``, ``debug``).
        """
        kwargs: dict = {}
        if "websocket-host" in data:
            kwargs["host"] = str(data["websocket-host"])
        if "websocket-port" in data:
            kwargs["port"] = _parse_port(data["websocket-port"])
        if "websocket-password" in data:
            kwargs["password"] = str(data["websocket-password"] or "")
        if "max-connections" in data:
            try:
                kwargs["max_connections"] = int(data["max-connections"])
            except (TypeError, ValueError):
                raise ValueError(f"Invalid max-connections {data['max-connections']!r}, expected an integer")
        if "debug" in data:
            kwargs["debug"] = _parse_bool(data["debug"])
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, base: Optional["ServerConfig"] = None) -> "ServerConfig":
        """
        Override the values of ``base`` with ``WSRCON_HOST``, ``WSRCON_PORT``, ``WSRCON_PASSWORD``,
        ``WSRCON_MAX_CONNECTIONS`` and ``WSRCON_DEBUG`` environment variables.
        """
        if environ is None:
            environ = os.environ
        data = base.to_dict() if base is not None else {}
        for key, name in [("websocket-host", "HOST"),
                          ("websocket-port", "PORT"),
                          ("websocket-password", "PASSWORD"),
                          ("max-connections", "MAX_CONNECTIONS"),
                          ("debug", "DEBUG")]:
            value = environ.get(ENV_PREFIX + name)
            if value is not None:
                data[key] = value
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return {
            "websocket-host": self.host,
            "websocket-port": self.port if self.port is not None else "default",
            "websocket-password": self.password,
            "max-connections": self.max_connections,
            "debug": self.debug,
        }


def load_config(path: Union[str, Path, None]) -> ServerConfig:
    """
    Load the config from a YAML (``.yml``/``.yaml``) or JSON file.
    A missing file yields the default config.
    """
    if path is None:
        return ServerConfig()
    path = Path(path)
    if not path.exists():
        logger.info(f"Config file {path} does not exist, using defaults")
        return ServerConfig()
    with path.open("r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yml", ".yaml"):
            import yaml
            data = yaml.safe_load(f)
        elif path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format {path.suffix}, expected .yml, .yaml or .json")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return ServerConfig.from_dict(data)
