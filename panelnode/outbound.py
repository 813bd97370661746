"""Build the freedom outbound that accompanies each node inbound."""

from __future__ import annotations

from typing import Any

from .config import Config, NodeInfo


def build_outbound(config: Config, node_info: NodeInfo) -> dict[str, Any]:
    """Return the outbound handler config for a node."""
    outbound: dict[str, Any] = {"protocol": "freedom", "tag": node_info.tag()}
    if config.send_ip:
        outbound["sendThrough"] = config.send_ip

    domain_strategy = "Asis"
    if config.enable_dns:
        domain_strategy = config.dns_type or "UseIP"
    settings: dict[str, Any] = {"domainStrategy": domain_strategy}
    # The dokodemo-door inbound of a Shadowsocks-Plugin node forwards to the port below it.
    if node_info.node_type == "dokodemo-door":
        settings["redirect"] = f"127.0.0.1:{node_info.port - 1}"
    outbound["settings"] = settings
    return outbound