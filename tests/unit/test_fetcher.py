#!/usr/bin/env python3
# ruff: noqa: S101
"""
fetcher.py のユニットテスト

SafeFetcher.fetch() の結果と、応答ボディの検証を確認します。
"""

from __future__ import annotations

import gzip
from unittest.mock import patch

import pytest

from safe_fetch.config import FetchConfig
from safe_fetch.exceptions import ErrorKind, SafeFetchError
from safe_fetch.fetcher import FetchResponse, SafeFetcher
from safe_fetch.security.resolver import SafeResolver
from safe_fetch.timing import AbortSignal
from safe_fetch.transport import GuardedTransport

FEED = b'<?xml version="1.0"?><rss version="2.0"><channel><title>Example</title></channel></rss>'
URL = "https://example.com/rss.xml"


@pytest.fixture
def fetcher(fake_resolver, fake_transport) -> SafeFetcher:
    return SafeFetcher(FetchConfig(), resolver=fake_resolver, transport=fake_transport)


class TestSafeFetcherInit:
    """SafeFetcher の構築テスト"""

    def test_defaults(self) -> None:
        """設定省略時はデフォルト値で構築"""
        fetcher = SafeFetcher()
        assert fetcher.config == FetchConfig()
        assert isinstance(fetcher.resolver, SafeResolver)
        assert isinstance(fetcher.transport, GuardedTransport)
        assert fetcher.transport.user_agent == "SafeFeedFetcher/1.0"
        assert fetcher.walker.max_redirects == 3
        assert fetcher.walker.allow_http is False

    def test_deny_cidrs_parsed_once(self) -> None:
        """追加拒否 CIDR は構築時に解析される（不正な項目は無視）"""
        fetcher = SafeFetcher(FetchConfig(extra_deny_cidrs="203.0.113.0/24, bogus 2001:db8::/32"))
        assert isinstance(fetcher.resolver, SafeResolver)
        assert [str(c) for c in fetcher.resolver.extra_cidrs] == ["203.0.113.0/24", "2001:db8::/32"]

    def test_from_settings(self) -> None:
        """フラットな設定 dict から構築"""
        fetcher = SafeFetcher.from_settings(
            {"allow_http": "true", "max_redirects": "1", "user_agent": "TestAgent/2.0"}
        )
        assert fetcher.walker.allow_http is True
        assert fetcher.walker.max_redirects == 1
        assert fetcher.transport.user_agent == "TestAgent/2.0"


class TestFetch:
    """fetch のテスト"""

    def test_gzip_feed(self, fetcher, fake_transport) -> None:
        """gzip 圧縮された RSS を展開して返す"""
        fake_transport.add(
            URL,
            200,
            {"Content-Type": "application/rss+xml; charset=utf-8", "Content-Encoding": "gzip"},
            gzip.compress(FEED),
        )

        with fetcher.fetch(URL) as response:
            assert response.ok is True
            assert response.status == 200
            assert response.url == URL
            assert response.read() == FEED
            assert response.bytes_read == len(FEED)

        assert fake_transport.responses[0].closed is True

    def test_window_uses_config(self, fake_resolver, fake_transport) -> None:
        """タイムアウト設定を秒に変換して渡す"""
        config = FetchConfig(connect_timeout_ms=1500, response_timeout_ms=2500, idle_timeout_ms=500)
        fake_transport.add(URL, 200, {"Content-Type": "text/xml"}, FEED)
        SafeFetcher(config, resolver=fake_resolver, transport=fake_transport).fetch(URL).close()

        window = fake_transport.calls[0][2]
        assert window.connect_timeout_sec == 1.5
        assert window.response_timeout_sec == 2.5
        assert window.idle_timeout_sec == 0.5

    def test_follows_redirect(self, fetcher, fake_transport) -> None:
        """リダイレクト後の最終 URL を返す"""
        fake_transport.add(URL, 301, {"Location": "https://feeds.example.com/rss"})
        fake_transport.add("https://feeds.example.com/rss", 200, {"Content-Type": "application/atom+xml"}, FEED)
        response = fetcher.fetch(URL)
        assert response.url == "https://feeds.example.com/rss"
        assert response.read() == FEED

    def test_non_2xx_is_returned(self, fetcher, fake_transport) -> None:
        """4xx はそのまま返し、ボディも読める"""
        fake_transport.add(URL, 404, {"Content-Type": "text/html"}, b"<html>not found</html>")
        response = fetcher.fetch(URL)
        assert response.ok is False
        assert response.status == 404
        assert response.read() == b"<html>not found</html>"

    @pytest.mark.parametrize("status", [404, 500])
    def test_non_2xx_with_unknown_encoding_is_returned(self, fetcher, fake_transport, status: int) -> None:
        """2xx 以外は未対応の Content-Encoding でも応答を返し、ボディ読み出し時に失敗する"""
        fake_transport.add(URL, status, {"Content-Encoding": "compress"}, b"\x1f\x9d\x90")
        response = fetcher.fetch(URL)
        assert response.status == status
        assert response.ok is False
        assert fake_transport.responses[0].closed is False

        with pytest.raises(SafeFetchError) as exc_info:
            response.read()
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE
        assert fake_transport.responses[0].closed is True

    def test_non_2xx_gzip_body(self, fetcher, fake_transport) -> None:
        """2xx 以外のボディも展開して読める"""
        fake_transport.add(URL, 503, {"Content-Encoding": "gzip"}, gzip.compress(b"maintenance"))
        response = fetcher.fetch(URL)
        assert response.bytes_read == 0
        assert response.read() == b"maintenance"
        assert response.bytes_read == len(b"maintenance")

    def test_html_is_rejected(self, fetcher, fake_transport) -> None:
        """2xx でもフィード以外の Content-Type は unsupported_media_type"""
        fake_transport.add(URL, 200, {"Content-Type": "text/html; charset=utf-8"}, b"<html></html>")
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch(URL)
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE
        assert fake_transport.responses[0].closed is True

    def test_unknown_encoding_is_rejected(self, fetcher, fake_transport) -> None:
        """未対応の Content-Encoding は unsupported_media_type"""
        fake_transport.add(URL, 200, {"Content-Type": "application/xml", "Content-Encoding": "zstd"}, FEED)
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch(URL)
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE
        assert fake_transport.responses[0].closed is True

    def test_gzip_container_with_xml(self, fetcher, fake_transport) -> None:
        """application/gzip の中身が XML なら受け付ける"""
        fake_transport.add(URL, 200, {"Content-Type": "application/gzip"}, gzip.compress(FEED))
        assert fetcher.fetch(URL).read() == FEED

    def test_gzip_container_without_xml(self, fetcher, fake_transport) -> None:
        """application/gzip の中身が XML でなければ読み出し時に unsupported_media_type"""
        fake_transport.add(URL, 200, {"Content-Type": "application/gzip"}, gzip.compress(b"\x00binary"))
        response = fetcher.fetch(URL)
        with pytest.raises(SafeFetchError) as exc_info:
            response.read()
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE

    def test_missing_content_type_is_sniffed(self, fetcher, fake_transport) -> None:
        """Content-Type が無ければ中身で判定"""
        fake_transport.add(URL, 200, {}, b"\n  " + FEED)
        assert fetcher.fetch(URL).read() == b"\n  " + FEED

        fake_transport.add("https://example.com/other", 200, {}, b"plain text")
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch("https://example.com/other").read()
        assert exc_info.value.kind is ErrorKind.UNSUPPORTED_MEDIA_TYPE

    def test_payload_too_large(self, fake_resolver, fake_transport) -> None:
        """展開後のサイズが上限を超えると payload_too_large"""
        fake_transport.add(
            URL,
            200,
            {"Content-Type": "application/xml", "Content-Encoding": "gzip"},
            gzip.compress(b"<rss>" + b" " * 200_000 + b"</rss>"),
        )
        fetcher = SafeFetcher(FetchConfig(max_bytes=10_000), resolver=fake_resolver, transport=fake_transport)
        response = fetcher.fetch(URL)
        with pytest.raises(SafeFetchError) as exc_info:
            response.read()
        assert exc_info.value.kind is ErrorKind.PAYLOAD_TOO_LARGE
        assert response.bytes_read <= 10_001 + 1024
        assert fake_transport.responses[0].closed is True

    @pytest.mark.parametrize(
        ("url", "kind"),
        [
            ("not a url", ErrorKind.INVALID_URL),
            ("ftp://example.com/rss", ErrorKind.DISALLOWED_SCHEME),
            ("https://example.com:8443/rss", ErrorKind.DISALLOWED_PORT),
        ],
    )
    def test_invalid_url(self, fetcher, fake_transport, url: str, kind: ErrorKind) -> None:
        """検証エラーでは接続しない"""
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch(url)
        assert exc_info.value.kind is kind
        assert fake_transport.calls == []

    def test_blocked_destination_is_logged(self, fetcher, fake_resolver, fake_transport, caplog) -> None:
        """拒否時は解決された全アドレスを警告ログに出す"""
        fake_resolver.set("internal.example.com", ["10.0.0.5", "127.0.0.1"], [])
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch("https://internal.example.com/rss")
        assert exc_info.value.kind is ErrorKind.BLOCKED_DESTINATION
        assert fake_transport.calls == []
        assert "ips=10.0.0.5,127.0.0.1" in caplog.text

    def test_aborted_before_start(self, fetcher, fake_transport) -> None:
        """中断済みのシグナルでは接続しない"""
        abort = AbortSignal()
        abort.abort()
        with pytest.raises(SafeFetchError) as exc_info:
            fetcher.fetch(URL, abort)
        assert exc_info.value.kind is ErrorKind.TIMEOUT_TOTAL
        assert fake_transport.calls == []


class TestFetchResponse:
    """FetchResponse のテスト"""

    def test_repr_and_iter(self, fetcher, fake_transport) -> None:
        """チャンク単位で読める"""
        fake_transport.add(URL, 200, {"Content-Type": "text/xml"}, FEED * 100)
        response = fetcher.fetch(URL)
        raw = fake_transport.responses[0]
        assert isinstance(response, FetchResponse)
        assert repr(response) == f"FetchResponse(status=200, url={URL!r})"
        chunks = list(response.iter_content())
        assert len(chunks) > 1
        assert b"".join(chunks) == FEED * 100
        assert raw.closed is True
