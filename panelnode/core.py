"""An in-process proxy core: inbounds, outbounds, users, statistics and limits."""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import UserInfo
from .users import User, user_email

USER_PROTOCOLS = frozenset({"vmess", "vless", "trojan", "shadowsocks"})


class CoreError(RuntimeError):
    """Raised when the core refuses an operation."""


@dataclass(frozen=True)
class OnlineUser:
    """A user seen connecting from an address."""

    uid: int
    ip: str


@dataclass(frozen=True)
class DetectRule:
    """A destination pattern that users of a node may not reach."""

    id: int
    pattern: str


@dataclass(frozen=True)
class DetectResult:
    """A user that tried to reach a destination matched by a rule."""

    uid: int
    rule_id: int


@dataclass
class _Limiter:
    speed_limit: int
    users: dict[str, UserInfo] = field(default_factory=dict)
    online: dict[OnlineUser, None] = field(default_factory=dict)


def _split_email(email: str) -> tuple[str, int]:
    tag, _, rest = email.partition("|")
    _, _, uid = rest.rpartition("|")
    try:
        return tag, int(uid)
    except ValueError:
        raise CoreError(f"malformed user identifier: {email}") from None


class ProxyCore:
    """Holds the handlers and per-user state of a running proxy."""

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.config: dict[str, Any] = dict(config or {})
        self.running = False
        self._lock = threading.RLock()
        self._inbounds: dict[str, dict[str, Any]] = {}
        self._users: dict[str, dict[str, User]] = {}
        self._outbounds: dict[str, dict[str, Any]] = {}
        self._counters: dict[str, list[int]] = {}
        self._limiters: dict[str, _Limiter] = {}
        self._rules: dict[str, list[tuple[DetectRule, re.Pattern[str]]]] = {}
        self._detected: dict[str, list[DetectResult]] = {}
        for outbound in self.config.get("outbounds", ()):
            self.add_outbound(outbound)

    def __enter__(self) -> ProxyCore:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def start(self) -> None:
        self.running = True

    def close(self) -> None:
        self.running = False

    @property
    def inbounds(self) -> dict[str, dict[str, Any]]:
        """Inbound configs by tag."""
        with self._lock:
            return dict(self._inbounds)

    @property
    def outbounds(self) -> dict[str, dict[str, Any]]:
        """Outbound configs by tag."""
        with self._lock:
            return dict(self._outbounds)

    def inbound_users(self, tag: str) -> dict[str, User]:
        """Users of the inbound *tag*, by identifier."""
        with self._lock:
            if tag not in self._inbounds:
                raise CoreError(f"No such inbound tag: {tag}")
            return dict(self._users[tag])

    # Handlers

    def add_inbound(self, config: Mapping[str, Any]) -> None:
        tag = config.get("tag", "")
        with self._lock:
            if tag in self._inbounds:
                raise CoreError(f"existing tag found: {tag}")
            self._inbounds[tag] = dict(config)
            self._users[tag] = {}

    def remove_inbound(self, tag: str) -> None:
        with self._lock:
            if tag not in self._inbounds:
                raise CoreError(f"handler not found: {tag}")
            del self._inbounds[tag]
            del self._users[tag]

    def add_outbound(self, config: Mapping[str, Any]) -> None:
        tag = config.get("tag", "")
        with self._lock:
            if tag in self._outbounds:
                raise CoreError(f"existing tag found: {tag}")
            self._outbounds[tag] = dict(config)

    def remove_outbound(self, tag: str) -> None:
        with self._lock:
            if tag not in self._outbounds:
                raise CoreError(f"handler not found: {tag}")
            del self._outbounds[tag]

    # Users

    def _user_manager(self, tag: str) -> dict[str, User]:
        inbound = self._inbounds.get(tag)
        if inbound is None:
            raise CoreError(f"No such inbound tag: {tag}")
        if inbound.get("protocol") not in USER_PROTOCOLS:
            raise CoreError(f"handler {tag} does not manage users")
        return self._users[tag]

    def add_users(self, users: Iterable[User], tag: str) -> None:
        with self._lock:
            manager = self._user_manager(tag)
            for user in users:
                if user.email in manager:
                    raise CoreError(f"User {user.email} already exists")
                manager[user.email] = user

    def remove_users(self, emails: Iterable[str], tag: str) -> None:
        with self._lock:
            manager = self._user_manager(tag)
            for email in emails:
                if manager.pop(email, None) is None:
                    raise CoreError(f"User {email} not found")

    # Statistics

    def record_traffic(self, email: str, up: int, down: int) -> None:
        """Add traffic to a user's uplink and downlink counters."""
        with self._lock:
            counter = self._counters.setdefault(email, [0, 0])
            counter[0] += up
            counter[1] += down

    def get_traffic(self, email: str) -> tuple[int, int]:
        """Return a user's (uplink, downlink) and reset both counters."""
        with self._lock:
            counter = self._counters.get(email)
            if counter is None:
                return 0, 0
            up, down = counter
            counter[:] = [0, 0]
            return up, down

    # Limiter

    def add_inbound_limiter(
        self, tag: str, node_speed_limit: int, user_list: Iterable[UserInfo]
    ) -> None:
        with self._lock:
            if tag in self._limiters:
                raise CoreError(f"InboundLimiter {tag} already exists")
            self._limiters[tag] = _Limiter(
                node_speed_limit, {user_email(tag, user): user for user in user_list}
            )

    def update_inbound_limiter(self, tag: str, updated_user_list: Iterable[UserInfo]) -> None:
        with self._lock:
            limiter = self._limiters.get(tag)
            if limiter is None:
                raise CoreError(f"no such inbound in limiter: {tag}")
            limiter.users.update({user_email(tag, user): user for user in updated_user_list})

    def delete_inbound_limiter(self, tag: str) -> None:
        with self._lock:
            if self._limiters.pop(tag, None) is None:
                raise CoreError(f"no such inbound in limiter: {tag}")

    def get_online_device(self, tag: str) -> list[OnlineUser]:
        """Return users seen since the last call, and forget them."""
        with self._lock:
            limiter = self._limiters.get(tag)
            if limiter is None:
                raise CoreError(f"no such inbound in limiter: {tag}")
            online = list(limiter.online)
            limiter.online.clear()
            return online

    # Rules

    def update_rule(self, tag: str, new_rule_list: Iterable[DetectRule]) -> None:
        compiled = []
        for rule in new_rule_list:
            try:
                compiled.append((rule, re.compile(rule.pattern)))
            except re.error as err:
                raise CoreError(f"invalid rule {rule.id}: {err}") from None
        with self._lock:
            self._rules[tag] = compiled

    def get_detect_result(self, tag: str) -> list[DetectResult]:
        """Return detections since the last call, and forget them."""
        with self._lock:
            return self._detected.pop(tag, [])

    def dispatch(self, email: str, destination: str, ip: str) -> bool:
        """Admit a connection of a user to *destination*; return False if a rule blocks it."""
        tag, uid = _split_email(email)
        with self._lock:
            for rule, regex in self._rules.get(tag, ()):
                if regex.search(destination):
                    self._detected.setdefault(tag, []).append(DetectResult(uid, rule.id))
                    return False
            limiter = self._limiters.get(tag)
            if limiter is not None and email in limiter.users:
                limiter.online[OnlineUser(uid, ip)] = None
            return True