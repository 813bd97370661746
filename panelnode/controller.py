"""The controller that keeps one node of the core in step with its panel."""

from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from typing import Any, Protocol

from .config import Config, ConfigError, NodeInfo, NodeStatus, UserInfo, UserTraffic
from .core import DetectResult, DetectRule, OnlineUser, ProxyCore
from .inbound import SHADOWSOCKS_PLUGIN, build_inbound
from .outbound import build_outbound
from .service import Service
from .users import (
    build_ss_plugin_user,
    build_ss_user,
    build_trojan_user,
    build_vless_user,
    build_vmess_user,
    user_email,
)

log = logging.getLogger(__name__)


class ApiClient(Protocol):
    """What the controller needs from a panel client."""

    def describe(self) -> Any: ...

    def get_node_info(self) -> NodeInfo: ...

    def get_user_list(self) -> list[UserInfo]: ...

    def get_node_rule(self) -> list[DetectRule]: ...

    def report_node_status(self, status: NodeStatus) -> None: ...

    def report_user_traffic(self, traffic: list[UserTraffic]) -> None: ...

    def report_node_online_users(self, users: list[OnlineUser]) -> None: ...

    def report_illegal(self, results: list[DetectResult]) -> None: ...


class Periodic:
    """Run a task now and then every *interval* seconds until closed or it fails."""

    def __init__(self, interval: float, execute: Callable[[], object]) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.execute = execute
        self._lock = threading.Lock()
        self._running = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop = threading.Event()
            stop = self._stop
        try:
            self.execute()
        except BaseException:
            with self._lock:
                self._running = False
            raise
        thread = threading.Thread(target=self._loop, args=(stop,), daemon=True)
        with self._lock:
            self._thread = thread
        thread.start()

    def _loop(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval):
            try:
                self.execute()
            except Exception:
                log.exception("periodic task failed")
                with self._lock:
                    self._running = False
                return

    def close(self) -> None:
        with self._lock:
            self._running = False
            stop, thread = self._stop, self._thread
            self._thread = None
        stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()


def compare_user_list(
    old: Iterable[UserInfo], new: Iterable[UserInfo]
) -> tuple[list[UserInfo], list[UserInfo]]:
    """Return the users only in *old* (deleted) and only in *new* (added)."""
    old_users = dict.fromkeys(old)
    new_users = dict.fromkeys(new)
    deleted = [user for user in old_users if user not in new_users]
    added = [user for user in new_users if user not in old_users]
    return deleted, added


def _read_proc(path: str) -> str:
    with open(path, encoding="ascii") as handle:
        return handle.read()


def _system_status() -> NodeStatus:
    """CPU, memory and disk use in percent, and uptime in seconds."""
    cpu = mem = disk = 0.0
    uptime = 0
    try:
        cpu = min(100.0, os.getloadavg()[0] / (os.cpu_count() or 1) * 100)
    except (AttributeError, OSError):
        pass
    try:
        info = {}
        for line in _read_proc("/proc/meminfo").splitlines():
            key, _, value = line.partition(":")
            info[key] = int(value.split()[0])
        mem = (1 - info["MemAvailable"] / info["MemTotal"]) * 100
    except (OSError, KeyError, ValueError, IndexError, ZeroDivisionError):
        pass
    try:
        usage = shutil.disk_usage(os.sep)
        disk = usage.used / usage.total * 100
    except (OSError, ZeroDivisionError):
        pass
    try:
        uptime = int(float(_read_proc("/proc/uptime").split()[0]))
    except (OSError, ValueError, IndexError):
        pass
    return NodeStatus(cpu=cpu, mem=mem, disk=disk, uptime=uptime)


class Controller(Service):
    """Sync one panel node into the core and report its usage back."""

    def __init__(
        self,
        core: ProxyCore,
        api_client: ApiClient,
        config: Config,
        status_source: Callable[[], NodeStatus] | None = None,
    ) -> None:
        self.core = core
        self.api_client = api_client
        self.config = config
        self.status_source = status_source or _system_status
        self.client_info: Any = None
        self.node_info: NodeInfo | None = None
        self.tag = ""
        self.user_list: list[UserInfo] = []
        self._node_monitor: Periodic | None = None
        self._user_report: Periodic | None = None

    def start(self) -> None:
        self.client_info = self.api_client.describe()
        node_info = self.api_client.get_node_info()
        self._add_new_tag(node_info)
        user_info = list(self.api_client.get_user_list())
        self.node_info = node_info
        self.tag = node_info.tag()
        self._add_new_user(user_info, node_info)
        self.user_list = user_info
        try:
            self.core.add_inbound_limiter(self.tag, node_info.speed_limit, user_info)
        except Exception as err:
            log.warning("%s", err)
        self._check_rules()

        self._node_monitor = Periodic(self.config.update_periodic, self.node_info_monitor)
        self._user_report = Periodic(self.config.update_periodic, self.user_info_monitor)
        log.info("Start monitor node status")
        self._node_monitor.start()
        log.info("Start report node status")
        self._user_report.start()

    def close(self) -> None:
        if self._node_monitor is not None:
            self._node_monitor.close()
        if self._user_report is not None:
            self._user_report.close()

    def _check_rules(self) -> None:
        if self.config.disable_get_rule:
            return
        try:
            rules = list(self.api_client.get_node_rule())
        except Exception as err:
            log.warning("Get rule list failed: %s", err)
            return
        if rules:
            try:
                self.core.update_rule(self.tag, rules)
            except Exception as err:
                log.warning("%s", err)

    def node_info_monitor(self) -> None:
        """Fetch node and users from the panel and apply any change to the core."""
        try:
            new_node_info = self.api_client.get_node_info()
            new_user_info = list(self.api_client.get_user_list())
        except Exception as err:
            log.warning("%s", err)
            return

        node_info_changed = False
        if self.node_info != new_node_info:
            old_tag = self.tag
            try:
                self._remove_old_tag(old_tag)
                if self.node_info is not None and self.node_info.node_type == SHADOWSOCKS_PLUGIN:
                    self._remove_old_tag(f"dokodemo-door_{self.node_info.port + 1}")
                self._add_new_tag(new_node_info)
            except Exception as err:
                log.warning("%s", err)
                return
            node_info_changed = True
            self.node_info = new_node_info
            self.tag = new_node_info.tag()
            try:
                self.core.delete_inbound_limiter(old_tag)
            except Exception as err:
                log.warning("%s", err)
                return

        self._check_rules()

        if node_info_changed:
            try:
                self._add_new_user(new_user_info, new_node_info)
                self.core.add_inbound_limiter(self.tag, new_node_info.speed_limit, new_user_info)
            except Exception as err:
                log.warning("%s", err)
                return
        else:
            deleted, added = compare_user_list(self.user_list, new_user_info)
            if deleted:
                try:
                    self.core.remove_users([user_email(self.tag, u) for u in deleted], self.tag)
                except Exception as err:
                    log.warning("%s", err)
            if added:
                try:
                    self._add_new_user(added, self.node_info)
                except Exception as err:
                    log.warning("%s", err)
                try:
                    self.core.update_inbound_limiter(self.tag, added)
                except Exception as err:
                    log.warning("%s", err)
            log.info("%d user deleted, %d user added", len(deleted), len(added))
        self.user_list = new_user_info

    def _remove_old_tag(self, tag: str) -> None:
        self.core.remove_inbound(tag)
        self.core.remove_outbound(tag)

    def _add_node_handlers(self, node_info: NodeInfo) -> None:
        self.core.add_inbound(build_inbound(self.config, node_info))
        self.core.add_outbound(build_outbound(self.config, node_info))

    def _add_new_tag(self, node_info: NodeInfo) -> None:
        if node_info.node_type != SHADOWSOCKS_PLUGIN:
            self._add_node_handlers(node_info)
            return
        # A plain Shadowsocks inbound, fed by a dokodemo-door for the upper transport.
        self._add_node_handlers(replace(node_info, transport_protocol="tcp", enable_tls=False))
        self._add_node_handlers(replace(node_info, port=node_info.port + 1, node_type="dokodemo-door"))

    def _add_new_user(self, user_info: Sequence[UserInfo], node_info: NodeInfo) -> None:
        node_type = node_info.node_type
        if node_type == "V2ray":
            if node_info.enable_vless:
                users = build_vless_user(self.tag, user_info)
            else:
                users = build_vmess_user(self.tag, user_info, node_info.alter_id)
        elif node_type == "Trojan":
            users = build_trojan_user(self.tag, user_info)
        elif node_type == "Shadowsocks":
            users = build_ss_user(self.tag, user_info, node_info.cypher_method)
        elif node_type == SHADOWSOCKS_PLUGIN:
            users = build_ss_plugin_user(self.tag, user_info)
        else:
            raise ConfigError(f"Unsupported node type: {node_type}")
        self.core.add_users(users, self.tag)
        log.info("Added %d new users", len(user_info))

    def user_info_monitor(self) -> None:
        """Report system status, traffic, online users and rule hits to the panel."""
        try:
            status = self.status_source()
        except Exception as err:
            log.warning("%s", err)
            status = NodeStatus(cpu=0.0, mem=0.0, disk=0.0, uptime=0)
        try:
            self.api_client.report_node_status(status)
        except Exception as err:
            log.warning("%s", err)

        traffic = []
        for user in self.user_list:
            up, down = self.core.get_traffic(user_email(self.tag, user))
            if up > 0 or down > 0:
                traffic.append(UserTraffic(uid=user.uid, email=user.email, upload=up, download=down))
        if traffic and not self.config.disable_upload_traffic:
            try:
                self.api_client.report_user_traffic(traffic)
            except Exception as err:
                log.warning("%s", err)

        try:
            online = self.core.get_online_device(self.tag)
        except Exception as err:
            log.warning("%s", err)
        else:
            if online:
                try:
                    self.api_client.report_node_online_users(online)
                except Exception as err:
                    log.warning("%s", err)
                else:
                    log.info("Report %d online users", len(online))

        try:
            detected = self.core.get_detect_result(self.tag)
        except Exception as err:
            log.warning("%s", err)
        else:
            if detected:
                try:
                    self.api_client.report_illegal(detected)
                except Exception as err:
                    log.warning("%s", err)
                else:
                    log.info("Report %d illegal behaviors", len(detected))