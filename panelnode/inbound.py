"""Build the inbound handler config for a node."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from .config import CertConfig, Config, ConfigError, FallBackConfig, NodeInfo

OCSP_STAPLING_SECONDS = 3600
SHADOWSOCKS_PLUGIN = "Shadowsocks-Plugin"

_NETWORK_TYPES = {
    "tcp": "tcp",
    "kcp": "mkcp",
    "mkcp": "mkcp",
    "ws": "websocket",
    "websocket": "websocket",
    "h2": "http",
    "http": "http",
    "ds": "domainsocket",
    "domainsocket": "domainsocket",
    "quic": "quic",
    "grpc": "grpc",
    "gun": "grpc",
}


def network_type(transport_protocol: str) -> str:
    """Map a transport protocol name, case-insensitively, to its network type."""
    try:
        return _NETWORK_TYPES[transport_protocol.lower()]
    except KeyError:
        raise ConfigError(f"unknown transport protocol: {transport_protocol}") from None


def get_cert_file(cert_config: CertConfig) -> tuple[str, str]:
    """Return the certificate and key file paths for *cert_config*."""
    mode = cert_config.cert_mode
    if mode == "file":
        if not cert_config.cert_file or not cert_config.key_file:
            raise ConfigError("Cert file path or key file path not exist")
        return cert_config.cert_file, cert_config.key_file
    if mode in ("dns", "http"):
        raise ConfigError(f"certificate mode {mode} needs an ACME issuer, and none is available")
    raise ConfigError(f"Unsupported certmode: {mode}")


def build_fallbacks(fallback_configs: Iterable[FallBackConfig] | None) -> list[dict[str, Any]]:
    """Build the fallback list shared by VLESS and Trojan inbounds."""
    if fallback_configs is None:
        raise ConfigError("You must provide FallBackConfigs")
    fallbacks = []
    for fallback in fallback_configs:
        if not fallback.dest:
            raise ConfigError("Dest is required for fallback")
        fallbacks.append(
            {
                "name": fallback.sni,
                "path": fallback.path,
                "dest": fallback.dest,
                "xver": fallback.proxy_protocol_ver,
            }
        )
    return fallbacks


def _proxy_settings(config: Config, node_info: NodeInfo) -> tuple[str, dict[str, Any]]:
    node_type = node_info.node_type
    if node_type == "V2ray":
        if node_info.enable_vless:
            settings: dict[str, Any] = {"decryption": "none"}
            if config.enable_fallback:
                settings["fallbacks"] = build_fallbacks(config.fallback_configs)
            return "vless", settings
        return "vmess", {}
    if node_type == "Trojan":
        settings = {}
        if config.enable_fallback:
            settings["fallbacks"] = build_fallbacks(config.fallback_configs)
        return "trojan", settings
    if node_type in ("Shadowsocks", SHADOWSOCKS_PLUGIN):
        default_user = {"cipher": "aes-128-gcm", "password": str(uuid.uuid4())}
        return "shadowsocks", {
            "users": [default_user],
            "network": ["tcp", "udp"],
            "ivCheck": not config.disable_iv_check,
        }
    if node_type == "dokodemo-door":
        return "dokodemo-door", {"address": "v1.mux.cool", "network": ["tcp", "udp"]}
    raise ConfigError(
        f"Unsupported node type: {node_type}, "
        "Only support: V2ray, Trojan, Shadowsocks, and Shadowsocks-Plugin"
    )


def _stream_settings(config: Config, node_info: NodeInfo) -> dict[str, Any]:
    network = network_type(node_info.transport_protocol)
    stream: dict[str, Any] = {}
    if network == "tcp":
        stream["tcpSettings"] = {
            "acceptProxyProtocol": config.enable_proxy_protocol,
            "header": node_info.header,
        }
    elif network == "websocket":
        stream["wsSettings"] = {
            "acceptProxyProtocol": config.enable_proxy_protocol,
            "path": node_info.path,
            "headers": {"Host": node_info.host},
        }
    elif network == "http":
        stream["httpSettings"] = {"host": [node_info.host], "path": node_info.path}
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": node_info.service_name}
    stream["network"] = node_info.transport_protocol

    if node_info.enable_tls:
        cert_config = config.cert_config
        if cert_config is None:
            raise ConfigError("TLS is enabled but no CertConfig is given")
        if cert_config.cert_mode != "none":
            stream["security"] = node_info.tls_type
            cert_file, key_file = get_cert_file(cert_config)
            certificates = [
                {
                    "certificateFile": cert_file,
                    "keyFile": key_file,
                    "ocspStapling": OCSP_STAPLING_SECONDS,
                }
            ]
            if node_info.tls_type == "tls":
                stream["tlsSettings"] = {"certificates": certificates}
            elif node_info.tls_type == "xtls":
                stream["xtlsSettings"] = {"certificates": certificates}

    # Proxy protocol is accepted at socket level for transports without their own switch.
    if network not in ("tcp", "ws") and config.enable_proxy_protocol:
        stream["sockopt"] = {"acceptProxyProtocol": True}
    return stream


def build_inbound(config: Config, node_info: NodeInfo) -> dict[str, Any]:
    """Return the inbound handler config for a node."""
    inbound: dict[str, Any] = {}
    if node_info.node_type == SHADOWSOCKS_PLUGIN:
        # The plain Shadowsocks inbound of a plugin node is only reachable locally.
        inbound["listen"] = "127.0.0.1"
    elif config.listen_ip:
        inbound["listen"] = config.listen_ip
    inbound["port"] = node_info.port
    inbound["tag"] = node_info.tag()
    inbound["sniffing"] = {
        "enabled": not config.disable_sniffing,
        "destOverride": ["http", "tls"],
    }
    protocol, settings = _proxy_settings(config, node_info)
    inbound["protocol"] = protocol
    inbound["settings"] = settings
    inbound["streamSettings"] = _stream_settings(config, node_info)
    return inbound