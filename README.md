# panelnode

`panelnode` keeps a proxy node in step with a management panel. A controller
fetches the node's description and user list from a panel client, builds the
matching inbound and outbound handler configurations, registers the users with
an in-process proxy core, and periodically reports traffic, online devices,
rule hits and server status back to the panel.

It has no dependencies outside the standard library.

## Modules

- **`panelnode.config`**: `Config`, `CertConfig` and `FallBackConfig` describe
  how a node is run; `NodeInfo`, `UserInfo`, `UserTraffic` and `NodeStatus`
  carry the data exchanged with the panel. `NodeInfo.tag()` returns the
  handler tag `<node_type>_<port>`. `Config.merged(other)` returns a copy in
  which every non-empty field of `other` overrides the original.
  Configuration problems raise `ConfigError` (a `ValueError`).
- **`panelnode.service`**: `Service`, the abstract base of everything the
  panel runs, with `start()` and `close()`; it also works as a context
  manager.
- **`panelnode.users`**: `build_vmess_user`, `build_vless_user`,
  `build_trojan_user`, `build_ss_user` and `build_ss_plugin_user` turn
  `UserInfo` records into `User` records. Every user is identified inside an
  inbound as `tag|email|uid`, as returned by `user_email`.
  `cipher_from_string` maps names such as `aes-128-gcm`,
  `AEAD_AES_256_GCM` or `chacha20-ietf-poly1305` (case-insensitively) to a
  `CipherType`, and anything unknown to `CipherType.UNKNOWN`.
  `build_ss_plugin_user` keeps only users whose own method is an AEAD cipher.
- **`panelnode.inbound`**: `build_inbound(config, node_info)` returns the
  inbound config as a dict for `V2ray` (VMess, or VLESS when
  `enable_vless` is set), `Trojan`, `Shadowsocks`, `Shadowsocks-Plugin`
  (listening on `127.0.0.1` only) and `dokodemo-door` nodes, with sniffing,
  transport settings for tcp, ws, http and grpc, TLS/XTLS certificates and
  VLESS/Trojan fallbacks (`build_fallbacks`). `network_type` maps transport
  names such as `ws`, `h2` or `gun` to their network type.
  `get_cert_file` returns the certificate and key paths for `cert_mode="file"`.
- **`panelnode.outbound`**: `build_outbound(config, node_info)` returns the
  matching `freedom` outbound; a `dokodemo-door` node redirects to
  `127.0.0.1:<port - 1>`.
- **`panelnode.core`**: `ProxyCore` holds inbounds, outbounds, users per
  inbound, per-user traffic counters, speed limiters and detection rules.
  `record_traffic` adds to a user's counters and `get_traffic` returns
  `(up, down)` and resets them. `dispatch(email, destination, ip)` admits a
  connection: a destination matched by a rule's regular expression is
  refused and recorded as a `DetectResult`; otherwise the user is recorded
  as an `OnlineUser`. `get_online_device` and `get_detect_result` return what
  was recorded since the previous call. Refused operations raise `CoreError`.
- **`panelnode.controller`**: `Controller` is a `Service` for one node. On
  `start()` it adds the node's handlers, users, limiter and rules to the core,
  then runs `node_info_monitor` and `user_info_monitor` on a `Periodic` timer
  every `Config.update_periodic` seconds. `Periodic` runs its task once on
  `start()` and then on every interval until `close()` or until the task
  raises. `compare_user_list(old, new)` returns the users only in `old`
  (deleted) and only in `new` (added). System status is read from the load
  average, `/proc/meminfo`, the root disk and `/proc/uptime`, or from a
  `status_source` callable passed to the controller.
- **`panelnode.panel`**: `Panel` builds one `ProxyCore` from a `PanelConfig`
  (`build_core_config`) and starts a `Controller` for each entry in
  `nodes_config`. DNS and routing files are read as JSON objects and the
  outbound file as a JSON list of outbound configs. Missing settings fall
  back to `default_log_config()`, `default_connection_config()` and
  `default_controller_config()`; `parse_connection_config` turns connection
  settings into the level-0 policy.

## Example

```python
from panelnode.config import Config, NodeInfo, UserInfo
from panelnode.core import ProxyCore
from panelnode.inbound import build_inbound
from panelnode.outbound import build_outbound
from panelnode.users import build_trojan_user, user_email

config = Config(listen_ip="0.0.0.0")
node = NodeInfo(node_type="Trojan", port=443, transport_protocol="tcp")
user = UserInfo(uid=1, email="alice@example.com", uuid="00000000-0000-0000-0000-000000000001")

core = ProxyCore()
core.add_inbound(build_inbound(config, node))
core.add_outbound(build_outbound(config, node))
core.add_users(build_trojan_user(node.tag(), [user]), node.tag())

email = user_email(node.tag(), user)        # "Trojan_443|alice@example.com|1"
core.record_traffic(email, 100, 200)
assert core.get_traffic(email) == (100, 200)
assert core.get_traffic(email) == (0, 0)
```

A `Panel` is given a factory for each panel type it should serve; the factory
receives the node's `api_config` and returns a client with the methods listed
by `panelnode.controller.ApiClient`:

```python
from panelnode.panel import NodesConfig, Panel, PanelConfig

panel_config = PanelConfig(nodes_config=[NodesConfig(panel_type="V2board", api_config=...)])
with Panel(panel_config, api_factories={"V2board": make_v2board_client}) as panel:
    ...
```

A node whose panel type has no factory raises `ConfigError`.

## What it does not do

- It ships no panel clients: the HTTP clients for the panels must be
  supplied through `api_factories`.
- `ProxyCore` keeps the state of a proxy but carries no traffic itself; it
  opens no sockets. Traffic and connections are fed to it through
  `record_traffic` and `dispatch`.
- Certificates are not issued: `cert_mode` `"dns"` and `"http"` raise
  `ConfigError`; only `"file"` (and `"none"`) can be used.
- There is no command-line program and no loader for a configuration file;
  `PanelConfig` is built in code.