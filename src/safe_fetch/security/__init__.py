#!/usr/bin/env python3
"""宛先検証パッケージ.

URL 検証・名前解決・アドレス分類を提供します。
"""

from safe_fetch.security.address import AddressClass, classify, is_blocked_ip
from safe_fetch.security.cidr import Cidr, is_ip_in_list, parse_cidr, parse_cidr_list
from safe_fetch.security.resolver import ResolvedAddressSet, SafeResolver, resolve
from safe_fetch.security.url_guard import ParsedTarget, validate_url

__all__ = [
    "AddressClass",
    "Cidr",
    "ParsedTarget",
    "ResolvedAddressSet",
    "SafeResolver",
    "classify",
    "is_blocked_ip",
    "is_ip_in_list",
    "parse_cidr",
    "parse_cidr_list",
    "resolve",
    "validate_url",
]
