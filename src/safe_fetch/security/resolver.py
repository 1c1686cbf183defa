#!/usr/bin/env python3
"""名前解決と宛先アドレスのフィルタリング."""

from __future__ import annotations

import logging
import socket
from collections.abc import Sequence
from dataclasses import dataclass

from safe_fetch.exceptions import ErrorKind, SafeFetchError
from safe_fetch.security.address import is_blocked_ip
from safe_fetch.security.cidr import Cidr


@dataclass(frozen=True)
class ResolvedAddressSet:
    """名前解決結果"""

    all_addresses: tuple[str, ...]
    safe_addresses: tuple[str, ...]

    @property
    def is_blocked(self) -> bool:
        return not self.safe_addresses


def _lookup_all(hostname: str) -> list[str]:
    """A / AAAA を全て解決（リゾルバの返した順序を維持）."""
    try:
        infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as e:
        raise SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"DNS resolution failed for {hostname}: {e}") from e

    addresses: list[str] = []
    for family, _, _, _, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        host = sockaddr[0]
        if not isinstance(host, str):
            continue
        # IPv6 のゾーン ID を除去
        host = host.split("%", 1)[0]
        if host not in addresses:
            addresses.append(host)
    return addresses


def resolve(hostname: str, extra_cidrs: Sequence[Cidr]) -> ResolvedAddressSet:
    """ホスト名を解決し、安全なアドレスだけを抽出.

    安全なアドレスが無くても例外は送出しない。
    呼び出し側が all_addresses をログに出した上で拒否する。

    Args:
        hostname: ホスト名（IP リテラルも可）
        extra_cidrs: 追加拒否 CIDR

    Returns:
        全アドレスと安全なアドレス

    Raises:
        SafeFetchError: 名前解決自体に失敗した場合（upstream_error）
    """
    all_addresses = _lookup_all(hostname)
    safe_addresses = [ip for ip in all_addresses if not is_blocked_ip(ip, extra_cidrs)]
    logging.debug("Resolved %s: all=%s safe=%s", hostname, all_addresses, safe_addresses)
    return ResolvedAddressSet(all_addresses=tuple(all_addresses), safe_addresses=tuple(safe_addresses))


class SafeResolver:
    """追加拒否 CIDR を保持するリゾルバ.

    CIDR リストは構築後に変更しないため、複数スレッドから共有できる。
    """

    def __init__(self, extra_cidrs: Sequence[Cidr] = ()) -> None:
        self.extra_cidrs: tuple[Cidr, ...] = tuple(extra_cidrs)

    def resolve(self, hostname: str) -> ResolvedAddressSet:
        return resolve(hostname, self.extra_cidrs)
