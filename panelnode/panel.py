"""The panel: one proxy core shared by a controller for every configured node."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from .config import Config, ConfigError
from .controller import ApiClient, Controller
from .core import ProxyCore
from .service import Service

log = logging.getLogger(__name__)

SUPPORTED_PANEL_TYPES = ("SSpanel", "V2board", "PMpanel", "Proxypanel")

ApiFactory = Callable[[Any], ApiClient]


@dataclass
class LogConfig:
    """Log level and log file paths of the core."""

    level: str = "none"
    access_path: str = ""
    error_path: str = ""


@dataclass
class ConnectionConfig:
    """Connection timeouts, in seconds, and buffer size, in kilobytes."""

    handshake: int = 4
    conn_idle: int = 30
    uplink_only: int = 2
    downlink_only: int = 4
    buffer_size: int = 64


@dataclass
class NodesConfig:
    """One node: which panel it comes from, how to reach it and how to run it."""

    panel_type: str = ""
    api_config: Any = None
    controller_config: Config | None = None


@dataclass
class PanelConfig:
    """Settings of the whole panel."""

    log_config: LogConfig | None = None
    dns_config_path: str = ""
    outbound_config_path: str = ""
    route_config_path: str = ""
    connection_config: ConnectionConfig | None = None
    nodes_config: list[NodesConfig] = field(default_factory=list)


def default_log_config() -> LogConfig:
    return LogConfig(level="none", access_path="", error_path="")


def default_connection_config() -> ConnectionConfig:
    return ConnectionConfig(
        handshake=4, conn_idle=30, uplink_only=2, downlink_only=4, buffer_size=64
    )


def default_controller_config() -> Config:
    return Config(listen_ip="0.0.0.0", send_ip="0.0.0.0", update_periodic=60, dns_type="AsIs")


def parse_connection_config(c: ConnectionConfig | None) -> dict[str, Any]:
    """Return the level-0 policy built from *c*, or from the defaults when *c* is None."""
    connection = replace(c) if c is not None else default_connection_config()
    return {
        "statsUserUplink": True,
        "statsUserDownlink": True,
        "handshake": connection.handshake,
        "connIdle": connection.conn_idle,
        "uplinkOnly": connection.uplink_only,
        "downlinkOnly": connection.downlink_only,
        "bufferSize": connection.buffer_size,
    }


def _read_json(path: str) -> Any:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError:
        raise ConfigError(f"Failed to read file at: {path}") from None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        raise ConfigError(f"Failed to unmarshal: {path}") from None


def _read_object(path: str, what: str) -> dict[str, Any]:
    if not path:
        return {}
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ConfigError(f"Failed to understand {what} config at: {path}")
    return data


def _read_outbounds(path: str) -> list[dict[str, Any]]:
    if not path:
        return []
    data = _read_json(path)
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ConfigError(f"Failed to understand outbound config at: {path}")
    return data


def build_core_config(panel_config: PanelConfig) -> dict[str, Any]:
    """Assemble the core config: log, DNS, routing, custom outbounds and policy."""
    log_config = (
        replace(panel_config.log_config)
        if panel_config.log_config is not None
        else default_log_config()
    )
    return {
        "log": {
            "loglevel": log_config.level,
            "access": log_config.access_path,
            "error": log_config.error_path,
        },
        "dns": _read_object(panel_config.dns_config_path, "dns"),
        "routing": _read_object(panel_config.route_config_path, "routing"),
        "outbounds": _read_outbounds(panel_config.outbound_config_path),
        "policy": {"levels": {0: parse_connection_config(panel_config.connection_config)}},
        "stats": {},
    }


class Panel:
    """Runs a proxy core and a controller for every node of the config."""

    def __init__(
        self,
        panel_config: PanelConfig,
        api_factories: Mapping[str, ApiFactory] | None = None,
    ) -> None:
        self.panel_config = panel_config
        self.api_factories: dict[str, ApiFactory] = dict(api_factories or {})
        self.core: ProxyCore | None = None
        self.services: list[Service] = []
        self.running = False
        self._lock = threading.Lock()

    def __enter__(self) -> Panel:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _api_client(self, node: NodesConfig) -> ApiClient:
        factory = self.api_factories.get(node.panel_type)
        if factory is None:
            raise ConfigError(f"Unsupport panel type: {node.panel_type}")
        return factory(node.api_config)

    def start(self) -> None:
        with self._lock:
            log.info("Start the panel..")
            core = ProxyCore(build_core_config(self.panel_config))
            core.start()
            self.core = core
            for node in self.panel_config.nodes_config:
                api_client = self._api_client(node)
                controller_config = default_controller_config()
                if node.controller_config is not None:
                    controller_config = controller_config.merged(node.controller_config)
                self.services.append(Controller(core, api_client, controller_config))
            for service in self.services:
                service.start()
            self.running = True

    def close(self) -> None:
        with self._lock:
            for service in self.services:
                service.close()
            if self.core is not None:
                self.core.close()
            self.running = False

    def as_dict(self) -> dict[str, Any]:
        """The panel config as plain data."""
        return asdict(self.panel_config)