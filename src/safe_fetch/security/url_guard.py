#!/usr/bin/env python3
"""URL safety checks for outbound requests."""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass

import safe_fetch.const
from safe_fetch.exceptions import ErrorKind, SafeFetchError


@dataclass(frozen=True)
class ParsedTarget:
    """検証済みの接続先"""

    url: str
    scheme: str
    hostname: str
    port: int
    request_target: str  # path + query

    @property
    def is_https(self) -> bool:
        return self.scheme == "https"


def _encode_hostname(hostname: str) -> str:
    if hostname.isascii():
        return hostname.rstrip(".")
    try:
        return hostname.encode("idna").decode("ascii").rstrip(".")
    except UnicodeError as e:
        raise SafeFetchError(ErrorKind.INVALID_URL, f"Invalid hostname: {hostname}") from e


def validate_url(url: str, *, allow_http: bool) -> ParsedTarget:
    """Validate that a URL may be fetched before any DNS lookup happens.

    Raises SafeFetchError (invalid_url, disallowed_scheme, disallowed_port)
    if the URL is not allowed.
    """
    if not url or not url.strip():
        raise SafeFetchError(ErrorKind.INVALID_URL, "URL is empty")
    if any(c.isspace() for c in url.strip()):
        raise SafeFetchError(ErrorKind.INVALID_URL, "URL must not contain whitespace")

    try:
        parsed = urllib.parse.urlsplit(url.strip())
        port = parsed.port
    except ValueError as e:
        raise SafeFetchError(ErrorKind.INVALID_URL, f"Invalid URL: {e}") from e

    if not parsed.scheme or not parsed.netloc:
        raise SafeFetchError(ErrorKind.INVALID_URL, f"Invalid URL: {url}")

    scheme = parsed.scheme.lower()
    if not (scheme == "https" or (allow_http and scheme == "http")):
        raise SafeFetchError(ErrorKind.DISALLOWED_SCHEME, f"Disallowed URL scheme: {scheme}")

    if not parsed.hostname:
        raise SafeFetchError(ErrorKind.INVALID_URL, "URL hostname is missing")
    if parsed.username is not None or parsed.password is not None:
        raise SafeFetchError(ErrorKind.INVALID_URL, "URL userinfo is not allowed")

    if port is None:
        port = safe_fetch.const.DEFAULT_PORTS[scheme]
    if port not in safe_fetch.const.ALLOWED_PORTS:
        raise SafeFetchError(ErrorKind.DISALLOWED_PORT, f"Port {port} is not allowed")

    request_target = parsed.path or "/"
    if parsed.query:
        request_target = f"{request_target}?{parsed.query}"

    return ParsedTarget(
        url=urllib.parse.urlunsplit((scheme, parsed.netloc, parsed.path, parsed.query, "")),
        scheme=scheme,
        hostname=_encode_hostname(parsed.hostname),
        port=port,
        request_target=request_target,
    )
