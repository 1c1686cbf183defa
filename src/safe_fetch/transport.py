#!/usr/bin/env python3
"""
アドレス固定の HTTP(S) 接続

SafeResolver が承認した IP アドレスにのみ接続し、GET を1回だけ発行します。
TLS の SNI と証明書検証には元のホスト名を使用します。

接続・応答ヘッダ・全体の各期限はホップごとのタイマーで監視し、
期限切れや中断シグナルの際はソケットを shutdown して待機中の I/O を打ち切ります。
"""

from __future__ import annotations

import http.client
import logging
import socket
import threading
import time
from collections.abc import Callable, Iterator

import urllib3.connection
import urllib3.exceptions
import urllib3.response
import urllib3.util.connection

import safe_fetch.const
from safe_fetch.exceptions import ErrorKind, SafeFetchError
from safe_fetch.security.url_guard import ParsedTarget
from safe_fetch.timing import AbortSignal, TimingWindow

_TIMEOUT_ERRORS = (
    TimeoutError,
    urllib3.exceptions.ConnectTimeoutError,
    urllib3.exceptions.ReadTimeoutError,
)
_TRANSPORT_ERRORS = (
    OSError,
    http.client.HTTPException,
    urllib3.exceptions.HTTPError,
)


class _PinnedDialMixin:
    """接続先を固定アドレスに差し替える.

    TLS でラップすると元のソケットオブジェクトは fd を失うため、
    ハンドシェイク中でも shutdown できるよう複製を dialed_socket に保持する。
    """

    pinned_address: str
    dialed_socket: socket.socket | None = None
    dial_listener: Callable[[], None] | None = None

    def _new_conn(self) -> socket.socket:
        try:
            sock = urllib3.util.connection.create_connection(
                (self.pinned_address, self.port),  # type: ignore[attr-defined]
                self.timeout,  # type: ignore[attr-defined]
                source_address=self.source_address,  # type: ignore[attr-defined]
                socket_options=self.socket_options,  # type: ignore[attr-defined]
            )
        except TimeoutError as e:
            raise urllib3.exceptions.ConnectTimeoutError(
                self,
                f"Connection to {self.host} ({self.pinned_address}) timed out",  # type: ignore[attr-defined]
            ) from e
        except OSError as e:
            raise urllib3.exceptions.NewConnectionError(
                self,  # type: ignore[arg-type]
                f"Failed to establish a new connection: {e}",
            ) from e
        self.dialed_socket = sock.dup()
        if self.dial_listener is not None:
            self.dial_listener()
        return sock

    def release_dialed_socket(self) -> None:
        sock, self.dialed_socket = self.dialed_socket, None
        if sock is not None:
            sock.close()

    def close(self) -> None:
        self.release_dialed_socket()
        super().close()  # type: ignore[misc]


class PinnedHTTPConnection(_PinnedDialMixin, urllib3.connection.HTTPConnection):
    """固定アドレスに接続する HTTP 接続."""

    def __init__(self, host: str, port: int, *, pinned_address: str, timeout: float) -> None:
        super().__init__(host, port, timeout=timeout)
        self.pinned_address = pinned_address


class PinnedHTTPSConnection(_PinnedDialMixin, urllib3.connection.HTTPSConnection):
    """固定アドレスに接続する HTTPS 接続.

    host は元のホスト名のままなので、SNI と証明書のホスト名検証は元のホスト名で行われる。
    """

    def __init__(self, host: str, port: int, *, pinned_address: str, timeout: float) -> None:
        super().__init__(
            host,
            port,
            timeout=timeout,
            cert_reqs="CERT_REQUIRED",
            server_hostname=host,
        )
        self.pinned_address = pinned_address


class _HopTimers:
    """1ホップ分のタイマー群.

    最初に発火したタイマー（または中断シグナル）の理由を reason に記録し、
    ソケットを shutdown して待機中の I/O を終了させる。
    """

    def __init__(
        self, conn: PinnedHTTPConnection | PinnedHTTPSConnection, abort: AbortSignal | None
    ) -> None:
        self._conn = conn
        self._abort = abort
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._closed = False
        self.reason: SafeFetchError | None = None

    def __enter__(self) -> _HopTimers:
        self._conn.dial_listener = self._on_dialed
        if self._abort is not None:
            self._abort.add_listener(self._on_abort)
        return self

    def __exit__(self, *exc: object) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
            self._conn.dial_listener = None
            self._conn.release_dialed_socket()
        for timer in timers:
            timer.cancel()
        if self._abort is not None:
            self._abort.remove_listener(self._on_abort)

    def arm(self, name: str, delay: float, kind: ErrorKind, message: str) -> None:
        timer = threading.Timer(max(0.0, delay), self._fire, args=(kind, message))
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            self._timers[name] = timer
        timer.start()

    def cancel(self, name: str) -> None:
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _on_dialed(self) -> None:
        # TCP 接続中に発火していた場合はハンドシェイク前に打ち切る
        with self._lock:
            if not self._closed and self.reason is not None:
                self._shutdown_locked()

    def _on_abort(self) -> None:
        self._fire(ErrorKind.TIMEOUT_TOTAL, "Aborted by caller")

    def _fire(self, kind: ErrorKind, message: str) -> None:
        with self._lock:
            if self._closed or self.reason is not None:
                return
            self.reason = SafeFetchError(kind, message)
            self._shutdown_locked()
        logging.debug("Hop interrupted: %s", self.reason)

    def _shutdown_locked(self) -> None:
        # 複製したソケットは TLS ハンドシェイク中も有効
        sock = self._conn.dialed_socket
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # 既に切断済み
            pass


class TransportResponse:
    """ボディ未読の応答.

    ボディは生のバイト列（圧縮されたまま）として読み出す。
    使用後は必ず close() すること。
    """

    def __init__(
        self,
        url: str,
        response: urllib3.response.BaseHTTPResponse,
        connection: urllib3.connection.HTTPConnection,
    ) -> None:
        self.url = url
        self._response = response
        self._connection = connection
        self._closed = False

    @property
    def status(self) -> int:
        return self._response.status

    @property
    def headers(self) -> urllib3.HTTPHeaderDict:
        return self._response.headers

    @property
    def closed(self) -> bool:
        return self._closed

    def read_chunk(self, amt: int = safe_fetch.const.READ_CHUNK_SIZE) -> bytes:
        """生のボディを最大 amt バイト読む. 終端では b"" を返す.

        Raises:
            SafeFetchError: 無通信タイムアウト（timeout_idle）または通信エラー（upstream_error）
        """
        if self._closed:
            return b""
        try:
            return self._response.read(amt, decode_content=False)
        except _TIMEOUT_ERRORS as e:
            self.close()
            raise SafeFetchError(ErrorKind.TIMEOUT_IDLE, "Body idle timeout") from e
        except _TRANSPORT_ERRORS as e:
            self.close()
            raise SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Body read failed: {e}") from e

    def stream(self, amt: int = safe_fetch.const.READ_CHUNK_SIZE) -> Iterator[bytes]:
        while True:
            chunk = self.read_chunk(amt)
            if not chunk:
                return
            yield chunk

    def discard(self) -> None:
        """ボディを読まずに破棄."""
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._response.close()
        finally:
            self._connection.close()


class GuardedTransport:
    """固定アドレスへ GET を1回発行するトランスポート."""

    def __init__(self, user_agent: str = safe_fetch.const.DEFAULT_USER_AGENT) -> None:
        self.user_agent = user_agent

    def build_headers(self, target: ParsedTarget) -> dict[str, str]:
        host = f"[{target.hostname}]" if ":" in target.hostname else target.hostname
        if target.port != safe_fetch.const.DEFAULT_PORTS[target.scheme]:
            host = f"{host}:{target.port}"
        return {
            "Accept": safe_fetch.const.ACCEPT_HEADER,
            "Accept-Encoding": safe_fetch.const.ACCEPT_ENCODING_HEADER,
            "User-Agent": self.user_agent,
            "Host": host,
        }

    def open_connection(
        self, target: ParsedTarget, pinned_address: str, timeout: float
    ) -> PinnedHTTPConnection | PinnedHTTPSConnection:
        if target.is_https:
            return PinnedHTTPSConnection(
                target.hostname, target.port, pinned_address=pinned_address, timeout=timeout
            )
        return PinnedHTTPConnection(target.hostname, target.port, pinned_address=pinned_address, timeout=timeout)

    def connect_and_get(
        self,
        target: ParsedTarget,
        pinned_address: str,
        window: TimingWindow,
        abort: AbortSignal | None = None,
    ) -> TransportResponse:
        """固定アドレスに接続して GET を発行し、応答ヘッダまで受信する.

        Args:
            target: 検証済みの接続先
            pinned_address: 接続する IP アドレス（SafeResolver が承認したもの）
            window: タイムアウト設定（全体期限は呼び出し側で確定済み）
            abort: 呼び出し側からの中断シグナル

        Returns:
            ボディ未読の応答

        Raises:
            SafeFetchError: timeout_connect / timeout_response / timeout_total / upstream_error
        """
        if (abort is not None and abort.aborted) or window.is_expired():
            raise SafeFetchError(ErrorKind.TIMEOUT_TOTAL, "Total timeout reached")

        started = time.monotonic()
        connect_timeout = min(window.connect_timeout_sec, window.remaining())
        conn = self.open_connection(target, pinned_address, connect_timeout)

        try:
            with _HopTimers(conn, abort) as timers:
                timers.arm("total", window.remaining(), ErrorKind.TIMEOUT_TOTAL, "Total timeout reached")
                timers.arm("connect", window.connect_timeout_sec, ErrorKind.TIMEOUT_CONNECT, "Connect timeout")
                timers.arm("response", window.response_timeout_sec, ErrorKind.TIMEOUT_RESPONSE, "Response header timeout")

                self._connect(conn, timers, window, clamped=connect_timeout < window.connect_timeout_sec)
                timers.cancel("connect")
                sock = conn.sock

                response_budget = window.response_timeout_sec - (time.monotonic() - started)
                if response_budget <= 0:
                    raise SafeFetchError(ErrorKind.TIMEOUT_RESPONSE, "Response header timeout")
                response_timeout = min(response_budget, window.remaining())
                conn.timeout = response_timeout
                if sock is not None:
                    sock.settimeout(response_timeout)

                response = self._request(conn, target, timers, window, clamped=response_timeout < response_budget)
                timers.cancel("response")

            if timers.reason is not None:
                response.close()
                raise timers.reason
        except BaseException:
            conn.close()
            raise

        if sock is not None:
            sock.settimeout(window.idle_timeout_sec)
        logging.debug("Response %d from %s (%s)", response.status, target.url, pinned_address)
        return TransportResponse(target.url, response, conn)

    def _connect(
        self,
        conn: urllib3.connection.HTTPConnection,
        timers: _HopTimers,
        window: TimingWindow,
        *,
        clamped: bool,
    ) -> None:
        if timers.reason is not None:
            raise timers.reason
        try:
            conn.connect()
        except urllib3.exceptions.NewConnectionError as e:
            # ConnectTimeoutError のサブクラスなので先に判定する
            raise timers.reason or SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Connect failed: {e}") from e
        except _TIMEOUT_ERRORS as e:
            raise self._timeout_error(timers, window, clamped, ErrorKind.TIMEOUT_CONNECT, "Connect timeout") from e
        except _TRANSPORT_ERRORS as e:
            raise timers.reason or SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Connect failed: {e}") from e
        if timers.reason is not None:
            raise timers.reason

    def _request(
        self,
        conn: urllib3.connection.HTTPConnection,
        target: ParsedTarget,
        timers: _HopTimers,
        window: TimingWindow,
        *,
        clamped: bool,
    ) -> urllib3.response.BaseHTTPResponse:
        try:
            conn.request(
                "GET",
                target.request_target,
                headers=self.build_headers(target),
                preload_content=False,
                decode_content=False,
            )
            return conn.getresponse()
        except _TIMEOUT_ERRORS as e:
            raise self._timeout_error(
                timers, window, clamped, ErrorKind.TIMEOUT_RESPONSE, "Response header timeout"
            ) from e
        except _TRANSPORT_ERRORS as e:
            raise timers.reason or SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Request failed: {e}") from e

    @staticmethod
    def _timeout_error(
        timers: _HopTimers, window: TimingWindow, clamped: bool, kind: ErrorKind, message: str
    ) -> SafeFetchError:
        if timers.reason is not None:
            return timers.reason
        if clamped or window.is_expired():
            return SafeFetchError(ErrorKind.TIMEOUT_TOTAL, "Total timeout reached")
        return SafeFetchError(kind, message)
