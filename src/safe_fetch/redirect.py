#!/usr/bin/env python3
"""
リダイレクト追跡

各ホップで URL 検証 → 名前解決 → 固定アドレス接続 をやり直し、
リダイレクト先も初回の URL と同じ規則で検証します。
全体期限は追跡開始時に1度だけ確定し、ホップ間で共有します。
"""

from __future__ import annotations

import logging
import time
import urllib.parse
from dataclasses import dataclass
from typing import Protocol

import safe_fetch.const
from safe_fetch.exceptions import ErrorKind, SafeFetchError
from safe_fetch.security.resolver import ResolvedAddressSet
from safe_fetch.security.url_guard import ParsedTarget, validate_url
from safe_fetch.timing import AbortSignal, TimingWindow
from safe_fetch.transport import GuardedTransport, TransportResponse


class Resolver(Protocol):
    def resolve(self, hostname: str) -> ResolvedAddressSet: ...


@dataclass
class FetchAttemptState:
    """ホップごとの状態"""

    url: str
    hop_index: int
    deadline: float  # 全体期限（time.monotonic() 基準）


class RedirectWalker:
    """リダイレクトを最大 max_redirects 回まで追跡する."""

    def __init__(
        self,
        resolver: Resolver,
        transport: GuardedTransport,
        *,
        allow_http: bool,
        max_redirects: int,
    ) -> None:
        self.resolver = resolver
        self.transport = transport
        self.allow_http = allow_http
        self.max_redirects = max_redirects

    def walk(self, url: str, window: TimingWindow, abort: AbortSignal | None = None) -> TransportResponse:
        """URL を取得し、リダイレクト以外の最終応答を返す.

        4xx / 5xx もそのまま返す（ステータスの解釈は呼び出し側の責務）。

        Args:
            url: 取得する URL
            window: タイムアウト設定（全体期限は確定済み）
            abort: 呼び出し側からの中断シグナル

        Returns:
            最終応答（ボディ未読）

        Raises:
            SafeFetchError: 検証・接続・リダイレクト処理に失敗した場合
        """
        state = FetchAttemptState(url=url, hop_index=0, deadline=window.total_deadline)

        while True:
            target = validate_url(state.url, allow_http=self.allow_http)
            pinned_address = self._resolve(target)

            remaining = state.deadline - time.monotonic()
            if (abort is not None and abort.aborted) or remaining <= 0:
                raise SafeFetchError(ErrorKind.TIMEOUT_TOTAL, "Total timeout reached")

            logging.debug(
                "Fetching hop %d: %s via %s (%.2fs left)", state.hop_index, target.url, pinned_address, remaining
            )
            response = self.transport.connect_and_get(target, pinned_address, window, abort)

            status = response.status
            if status not in safe_fetch.const.REDIRECT_STATUSES:
                if 300 <= status < 400:
                    response.discard()
                    raise SafeFetchError(ErrorKind.REDIRECT_ERROR, f"Unhandled redirect status: {status}")
                return response

            location = response.headers.get("Location")
            response.discard()
            if not location:
                raise SafeFetchError(ErrorKind.MISSING_LOCATION, "Redirect Location header missing")

            state.hop_index += 1
            if state.hop_index > self.max_redirects:
                raise SafeFetchError(ErrorKind.REDIRECT_ERROR, "Too many redirects")

            next_url = urllib.parse.urljoin(target.url, location.strip())
            logging.info("Redirect %d: %s -> %s", status, target.url, next_url)
            state.url = next_url

    def _resolve(self, target: ParsedTarget) -> str:
        resolved = self.resolver.resolve(target.hostname)
        if resolved.is_blocked:
            logging.warning(
                "blocked destination by IP policy: host=%s ips=%s",
                target.hostname,
                ",".join(resolved.all_addresses),
            )
            raise SafeFetchError(ErrorKind.BLOCKED_DESTINATION, "Destination blocked by IP policy")
        return resolved.safe_addresses[0]
