#!/usr/bin/env python3
"""IP アドレスの種別判定."""

from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from enum import Enum

from safe_fetch.security.cidr import Cidr, is_ip_in_list


class AddressClass(Enum):
    """アドレス種別."""

    UNICAST = "unicast"
    LOOPBACK = "loopback"
    PRIVATE = "private"
    LINK_LOCAL = "link-local"
    MULTICAST = "multicast"
    RESERVED = "reserved"
    UNSPECIFIED = "unspecified"
    OTHER = "other"


def classify(ip: str) -> AddressClass:
    """IP アドレスを種別に分類.

    グローバルに到達可能なアドレスのみ UNICAST とする。
    IPv4 射影アドレス・6to4・Teredo は OTHER。

    Args:
        ip: IP アドレス文字列

    Returns:
        アドレス種別。解析できない場合は OTHER
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return AddressClass.OTHER

    # 判定順序が重要（0.0.0.0 は private にも該当する）
    if addr.is_unspecified:
        return AddressClass.UNSPECIFIED
    if addr.is_loopback:
        return AddressClass.LOOPBACK
    if addr.is_link_local:
        return AddressClass.LINK_LOCAL
    if addr.is_multicast:
        return AddressClass.MULTICAST
    if isinstance(addr, ipaddress.IPv6Address) and (
        addr.ipv4_mapped is not None or addr.sixtofour is not None or addr.teredo is not None
    ):
        return AddressClass.OTHER
    if addr.is_reserved:
        return AddressClass.RESERVED
    if addr.is_private:
        return AddressClass.PRIVATE
    if addr.is_global:
        return AddressClass.UNICAST
    return AddressClass.OTHER


def is_blocked_ip(ip: str, extra_cidrs: Sequence[Cidr]) -> bool:
    """接続を拒否すべきアドレスか判定.

    UNICAST 以外は追加拒否リストに関係なく拒否する。
    """
    if classify(ip) is not AddressClass.UNICAST:
        return True
    return is_ip_in_list(ip, extra_cidrs)
