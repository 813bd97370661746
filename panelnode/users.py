"""Build proxy users for the different node protocols."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from .config import UserInfo

XTLS_FLOW = "xtls-rprx-direct"


class CipherType(IntEnum):
    """Shadowsocks cipher types."""

    UNKNOWN = 0
    AES_128_GCM = 5
    AES_256_GCM = 6
    CHACHA20_POLY1305 = 7
    NONE = 9


AEAD_METHODS = (CipherType.AES_128_GCM, CipherType.AES_256_GCM, CipherType.CHACHA20_POLY1305)

_CIPHER_NAMES = {
    "aes-128-gcm": CipherType.AES_128_GCM,
    "aead_aes_128_gcm": CipherType.AES_128_GCM,
    "aes-256-gcm": CipherType.AES_256_GCM,
    "aead_aes_256_gcm": CipherType.AES_256_GCM,
    "chacha20-poly1305": CipherType.CHACHA20_POLY1305,
    "aead_chacha20_poly1305": CipherType.CHACHA20_POLY1305,
    "chacha20-ietf-poly1305": CipherType.CHACHA20_POLY1305,
    "none": CipherType.NONE,
    "plain": CipherType.NONE,
}


@dataclass
class User:
    """A user as handed to a proxy inbound."""

    email: str
    protocol: str
    account: dict[str, Any] = field(default_factory=dict)
    level: int = 0


def user_email(tag: str, user: UserInfo) -> str:
    """The identifier of a user inside an inbound: ``tag|email|uid``."""
    return f"{tag}|{user.email}|{user.uid}"


def cipher_from_string(c: str) -> CipherType:
    """Map a cipher name, case-insensitively, to its cipher type."""
    return _CIPHER_NAMES.get(c.lower(), CipherType.UNKNOWN)


def build_vmess_user(tag: str, user_info: Iterable[UserInfo], server_alter_id: int) -> list[User]:
    alter_id = server_alter_id & 0xFFFF
    return [
        User(
            email=user_email(tag, user),
            protocol="vmess",
            account={"id": user.uuid, "alterId": alter_id, "security": "auto"},
        )
        for user in user_info
    ]


def build_vless_user(tag: str, user_info: Iterable[UserInfo]) -> list[User]:
    return [
        User(
            email=user_email(tag, user),
            protocol="vless",
            account={"id": user.uuid, "flow": XTLS_FLOW},
        )
        for user in user_info
    ]


def build_trojan_user(tag: str, user_info: Iterable[UserInfo]) -> list[User]:
    return [
        User(
            email=user_email(tag, user),
            protocol="trojan",
            account={"password": user.uuid, "flow": XTLS_FLOW},
        )
        for user in user_info
    ]


def build_ss_user(tag: str, user_info: Iterable[UserInfo], method: str) -> list[User]:
    cipher = cipher_from_string(method)
    return [
        User(
            email=user_email(tag, user),
            protocol="shadowsocks",
            account={"password": user.passwd, "cipher_type": cipher},
        )
        for user in user_info
    ]


def build_ss_plugin_user(tag: str, user_info: Iterable[UserInfo]) -> list[User]:
    """Build Shadowsocks users, keeping only those whose own cipher is AEAD."""
    users = []
    for user in user_info:
        cipher = cipher_from_string(user.method)
        if cipher in AEAD_METHODS:
            users.append(
                User(
                    email=user_email(tag, user),
                    protocol="shadowsocks",
                    account={"password": user.passwd, "cipher_type": cipher},
                )
            )
    return users