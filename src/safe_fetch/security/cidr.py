#!/usr/bin/env python3
"""追加拒否 CIDR リストの解析と照合."""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network

_SEPARATOR_RE = re.compile(r"[\s,]+")


@dataclass(frozen=True)
class Cidr:
    """解析済み CIDR（IPv4 / IPv6）"""

    network: IPNetwork

    @property
    def address(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
        return self.network.network_address

    @property
    def prefix_length(self) -> int:
        return self.network.prefixlen

    def contains(self, addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
        # アドレスファミリが異なる場合は常に False
        return addr.version == self.network.version and addr in self.network

    def __str__(self) -> str:
        return str(self.network)


def parse_cidr(text: str) -> Cidr | None:
    """CIDR 表記を解析.

    ホスト部にビットが立っていてもネットワークアドレスに正規化します。

    Args:
        text: "10.0.0.0/8" や "fd00::/8" 形式の文字列

    Returns:
        解析結果。不正な表記の場合は None
    """
    text = text.strip()
    if "/" not in text:
        return None
    try:
        return Cidr(ipaddress.ip_network(text, strict=False))
    except ValueError:
        return None


def parse_cidr_list(raw: str | Iterable[str] | None) -> tuple[Cidr, ...]:
    """空白またはカンマ区切りの CIDR リストを解析.

    拒否リストなので、解析できないエントリは読み飛ばします。

    Args:
        raw: 区切り文字列、または文字列のリスト

    Returns:
        解析できた CIDR のタプル
    """
    if not raw:
        return ()
    tokens = _SEPARATOR_RE.split(raw) if isinstance(raw, str) else [t for r in raw for t in _SEPARATOR_RE.split(r)]

    cidrs: list[Cidr] = []
    for token in tokens:
        if not token:
            continue
        cidr = parse_cidr(token)
        if cidr is None:
            logging.warning("Ignoring malformed deny CIDR: %s", token)
            continue
        cidrs.append(cidr)
    return tuple(cidrs)


def is_ip_in_list(ip: str, cidrs: Sequence[Cidr]) -> bool:
    """IP アドレスがリストのいずれかに含まれるか判定.

    解析できないアドレスは含まれるものとして扱う（安全側）。
    """
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return any(cidr.contains(addr) for cidr in cidrs)
