#!/usr/bin/env python3
"""
SSRF 対策済みフィード取得クライアント

利用者が指定した任意の URL からフィードを取得します。
呼び出し側に公開する操作は SafeFetcher.fetch() のみです。

Usage:
    fetcher = SafeFetcher(FetchConfig.parse(settings))
    with fetcher.fetch("https://example.com/rss.xml") as response:
        if response.ok:
            body = response.read()
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

import urllib3

import safe_fetch.const
from safe_fetch.config import FetchConfig
from safe_fetch.decoding import DecodingPipeline
from safe_fetch.exceptions import ErrorKind, SafeFetchError
from safe_fetch.redirect import RedirectWalker, Resolver
from safe_fetch.security.cidr import parse_cidr_list
from safe_fetch.security.resolver import SafeResolver
from safe_fetch.timing import AbortSignal, TimingWindow
from safe_fetch.transport import GuardedTransport, TransportResponse


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


class FetchResponse:
    """取得結果.

    ボディは遅延読み出しで、展開とサイズ制限が適用済み。
    使用後は close() するか with 文で使用すること。
    """

    def __init__(self, raw: TransportResponse, *, max_bytes: int) -> None:
        self._raw = raw
        self._max_bytes = max_bytes
        self.status: int = raw.status
        self.url: str = raw.url
        self.headers: urllib3.HTTPHeaderDict = raw.headers
        self._pipeline: DecodingPipeline | None = None

        # 2xx 以外はボディを読むまで展開器を選ばない
        if self.ok:
            try:
                self._check_media_type()
                self._pipeline = self._build_pipeline()
            except SafeFetchError:
                raw.close()
                raise

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "")

    @property
    def bytes_read(self) -> int:
        return self._pipeline.counter.total if self._pipeline is not None else 0

    def _needs_sniff(self) -> bool:
        media_type = _media_type(self.content_type)
        return not media_type or media_type in safe_fetch.const.COMPRESSED_CONTAINER_TYPES

    def _check_media_type(self) -> None:
        media_type = _media_type(self.content_type)
        if not media_type:
            return
        if media_type in safe_fetch.const.FEED_MEDIA_TYPES:
            return
        if media_type in safe_fetch.const.COMPRESSED_CONTAINER_TYPES:
            return
        raise SafeFetchError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, f"Unsupported Content-Type: {media_type}")

    def _build_pipeline(self) -> DecodingPipeline:
        return DecodingPipeline(
            self._raw,
            content_encoding=self.headers.get("Content-Encoding", ""),
            content_type=self.content_type,
            max_bytes=self._max_bytes,
            require_markup=self.ok and self._needs_sniff(),
        )

    def iter_content(self) -> Iterator[bytes]:
        """展開済みボディを順に返す.

        Raises:
            SafeFetchError: payload_too_large / timeout_idle / unsupported_media_type / upstream_error
        """
        if self._pipeline is None:
            try:
                self._pipeline = self._build_pipeline()
            except SafeFetchError:
                self._raw.close()
                raise
        return self._pipeline.iter_chunks()

    def read(self) -> bytes:
        return b"".join(self.iter_content())

    def close(self) -> None:
        self._raw.close()

    def __enter__(self) -> FetchResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"FetchResponse(status={self.status}, url={self.url!r})"


class SafeFetcher:
    """SSRF 対策済みフェッチャー.

    拒否 CIDR リストは構築時に1度だけ解析し、以降は変更しない。
    fetch() ごとの状態は共有しないため、複数スレッドから同時に呼び出せる。
    """

    def __init__(
        self,
        config: FetchConfig | None = None,
        *,
        resolver: Resolver | None = None,
        transport: GuardedTransport | None = None,
    ) -> None:
        self.config = config or FetchConfig()
        self.resolver: Resolver = resolver or SafeResolver(parse_cidr_list(self.config.extra_deny_cidrs))
        self.transport = transport or GuardedTransport(self.config.user_agent)
        self.walker = RedirectWalker(
            self.resolver,
            self.transport,
            allow_http=self.config.allow_http,
            max_redirects=self.config.max_redirects,
        )

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> SafeFetcher:
        """フラットな設定 dict から生成."""
        return cls(FetchConfig.parse(settings))

    def fetch(self, url: str, abort: AbortSignal | None = None) -> FetchResponse:
        """URL を取得.

        2xx 以外の応答も例外にせずそのまま返す。

        Args:
            url: 取得する URL
            abort: 中断シグナル（中断は timeout_total として扱う）

        Returns:
            取得結果

        Raises:
            SafeFetchError: 取得に失敗した場合
        """
        window = TimingWindow.start(
            connect_timeout_sec=self.config.connect_timeout_sec,
            response_timeout_sec=self.config.response_timeout_sec,
            idle_timeout_sec=self.config.idle_timeout_sec,
            total_timeout_sec=self.config.total_timeout_sec,
        )
        try:
            raw = self.walker.walk(url, window, abort)
        except SafeFetchError as e:
            logging.info("Fetch failed: url=%s kind=%s message=%s", url, e.kind.value, e.message)
            raise

        logging.info("Fetched %s -> %d (%s)", url, raw.status, raw.url)
        return FetchResponse(raw, max_bytes=self.config.max_bytes)
