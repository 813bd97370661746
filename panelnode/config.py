"""Configuration and data records shared by the node controller."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass
class CertConfig:
    """How the TLS certificate for a node is obtained."""

    cert_mode: str = ""  # none, file, http, dns
    cert_domain: str = ""
    cert_file: str = ""
    key_file: str = ""
    provider: str = ""  # alidns, cloudflare, gandi, godaddy, ...
    email: str = ""
    dns_env: dict[str, str] = field(default_factory=dict)


@dataclass
class FallBackConfig:
    """A fallback destination for VLESS and Trojan inbounds."""

    sni: str = ""
    path: str = ""
    dest: str = ""
    proxy_protocol_ver: int = 0


@dataclass
class Config:
    """Settings of one node controller."""

    listen_ip: str = ""
    send_ip: str = ""
    update_periodic: int = 0
    cert_config: CertConfig | None = None
    enable_dns: bool = False
    dns_type: str = ""
    disable_upload_traffic: bool = False
    disable_get_rule: bool = False
    enable_proxy_protocol: bool = False
    enable_fallback: bool = False
    disable_iv_check: bool = False
    disable_sniffing: bool = False
    fallback_configs: list[FallBackConfig] | None = None

    def merged(self, other: Config) -> Config:
        """Return a copy of this config overridden by every non-empty field of *other*."""
        if not isinstance(other, Config):
            raise ConfigError(f"cannot merge {type(other).__name__} into Config")
        overrides = {
            f.name: getattr(other, f.name) for f in fields(other) if getattr(other, f.name)
        }
        return replace(self, **overrides)


@dataclass
class NodeInfo:
    """A node as described by the panel."""

    node_type: str = ""
    node_id: int = 0
    port: int = 0
    speed_limit: int = 0
    alter_id: int = 0
    transport_protocol: str = ""
    host: str = ""
    path: str = ""
    enable_tls: bool = False
    tls_type: str = ""
    enable_vless: bool = False
    cypher_method: str = ""
    service_name: str = ""
    header: Any = None

    def tag(self) -> str:
        """The inbound and outbound tag for this node."""
        return f"{self.node_type}_{self.port}"


@dataclass(frozen=True)
class UserInfo:
    """A user account as described by the panel."""

    uid: int = 0
    email: str = ""
    passwd: str = ""
    port: int = 0
    method: str = ""
    speed_limit: int = 0
    device_limit: int = 0
    uuid: str = ""


@dataclass(frozen=True)
class UserTraffic:
    """Traffic used by one user since the last report."""

    uid: int
    email: str
    upload: int
    download: int


@dataclass(frozen=True)
class NodeStatus:
    """System load of the machine a node runs on."""

    cpu: float
    mem: float
    disk: float
    uptime: int