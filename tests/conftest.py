#!/usr/bin/env python3
# ruff: noqa: S101
"""
共通テストフィクスチャ

テスト全体で使用する共通のフィクスチャとヘルパーを定義します。
"""

from __future__ import annotations

import http.server
import socket
import threading
import time
from collections.abc import Callable, Iterator

import pytest
import urllib3

from safe_fetch.security.resolver import ResolvedAddressSet
from safe_fetch.security.url_guard import ParsedTarget
from safe_fetch.timing import TimingWindow


# === ローカル HTTP サーバー ===
class _RouteHandler(http.server.BaseHTTPRequestHandler):
    server: _RouteServer

    def do_GET(self) -> None:
        self.server.requests.append((self.path, dict(self.headers)))
        route = self.server.routes.get(self.path)
        if route is None:
            reply(self, 404, b"not found")
            return
        route(self)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A002
        pass


class _RouteServer(http.server.ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _RouteHandler)
        self.routes: dict[str, Callable[[http.server.BaseHTTPRequestHandler], None]] = {}
        self.requests: list[tuple[str, dict[str, str]]] = []

    @property
    def port(self) -> int:
        return self.server_address[1]

    def handle_error(self, request: object, client_address: object) -> None:
        # クライアント側のタイムアウトで切断された場合の BrokenPipe などは無視
        pass


def reply(
    handler: http.server.BaseHTTPRequestHandler,
    status: int,
    body: bytes = b"",
    headers: dict[str, str] | None = None,
    *,
    delay: float = 0.0,
) -> None:
    """テスト用の応答を返す."""
    if delay:
        time.sleep(delay)
    handler.send_response(status)
    for name, value in (headers or {}).items():
        handler.send_header(name, value)
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


@pytest.fixture
def http_server() -> Iterator[_RouteServer]:
    """127.0.0.1 で待ち受けるテスト用サーバー"""
    server = _RouteServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def make_target() -> Callable[..., ParsedTarget]:
    """テスト用サーバー向けの接続先を生成（ポート検証を経由しない）"""

    def _make(port: int, path: str = "/", hostname: str = "feeds.example.test") -> ParsedTarget:
        return ParsedTarget(
            url=f"http://{hostname}:{port}{path}",
            scheme="http",
            hostname=hostname,
            port=port,
            request_target=path,
        )

    return _make


@pytest.fixture
def make_window() -> Callable[..., TimingWindow]:
    """タイムアウト設定を生成"""

    def _make(
        connect: float = 1.0,
        response: float = 1.0,
        idle: float = 1.0,
        total: float = 5.0,
    ) -> TimingWindow:
        return TimingWindow.start(
            connect_timeout_sec=connect,
            response_timeout_sec=response,
            idle_timeout_sec=idle,
            total_timeout_sec=total,
        )

    return _make


@pytest.fixture
def silent_listener() -> Iterator[socket.socket]:
    """接続を受け付けるが何も送らない待ち受けソケット（TLS ハンドシェイクが進まない）"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield sock
    sock.close()


# === フェイク ===
class FakeRawResponse:
    """TransportResponse の代替"""

    def __init__(self, url: str, status: int, headers: dict[str, str] | None = None, body: bytes = b"") -> None:
        self.url = url
        self.status = status
        self.headers = urllib3.HTTPHeaderDict(headers or {})
        self._body = body
        self.closed = False
        self.discarded = False

    def stream(self) -> Iterator[bytes]:
        for offset in range(0, len(self._body), 1024):
            yield self._body[offset : offset + 1024]

    def discard(self) -> None:
        self.discarded = True
        self.close()

    def close(self) -> None:
        self.closed = True


class FakeResolver:
    """名前解決のフェイク（未登録のホストは公開アドレスに解決）"""

    def __init__(self) -> None:
        self.results: dict[str, ResolvedAddressSet] = {}
        self.calls: list[str] = []

    def set(self, hostname: str, all_addresses: list[str], safe_addresses: list[str]) -> None:
        self.results[hostname] = ResolvedAddressSet(tuple(all_addresses), tuple(safe_addresses))

    def resolve(self, hostname: str) -> ResolvedAddressSet:
        self.calls.append(hostname)
        return self.results.get(hostname, ResolvedAddressSet(("93.184.216.34",), ("93.184.216.34",)))


class FakeTransport:
    """GuardedTransport のフェイク（URL ごとに応答を登録）"""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, dict[str, str], bytes]] = {}
        self.calls: list[tuple[str, str, TimingWindow]] = []
        self.responses: list[FakeRawResponse] = []

    def add(self, url: str, status: int, headers: dict[str, str] | None = None, body: bytes = b"") -> None:
        self.routes[url] = (status, headers or {}, body)

    def connect_and_get(
        self, target: ParsedTarget, pinned_address: str, window: TimingWindow, abort: object = None
    ) -> FakeRawResponse:
        self.calls.append((target.url, pinned_address, window))
        status, headers, body = self.routes.get(target.url, (404, {}, b"not found"))
        response = FakeRawResponse(target.url, status, headers, body)
        self.responses.append(response)
        return response


@pytest.fixture
def fake_resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def send_reply() -> Callable[..., None]:
    """テスト用サーバーのハンドラから応答を返すヘルパー"""
    return reply
