#!/usr/bin/env python3
"""
応答ボディの展開とサイズ制限

Content-Encoding（無ければ Content-Type）に応じて urllib3 の展開器を選び、
展開後のバイト数で上限を判定します。展開器には1回あたりの出力上限を渡すため、
圧縮爆弾でも残り上限を大きく超えて展開されることはありません。
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Protocol

import urllib3.exceptions
import urllib3.response

import safe_fetch.const
from safe_fetch.exceptions import ErrorKind, SafeFetchError

_DECODER_ERRORS = (
    *urllib3.response.BaseHTTPResponse.DECODER_ERROR_CLASSES,
    urllib3.exceptions.DecodeError,
)

_BOM = b"\xef\xbb\xbf"
_WHITESPACE = b" \t\r\n"


class RawBodySource(Protocol):
    def stream(self) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class ByteCounter:
    """展開後のバイト数を数える.

    上限を超えた時点で終端状態になり、以降は常に payload_too_large を送出する。
    """

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.total = 0
        self.tripped = False

    @property
    def remaining(self) -> int:
        return max(0, self.max_bytes - self.total)

    def feed(self, chunk: bytes) -> bytes:
        if self.tripped:
            raise SafeFetchError(ErrorKind.PAYLOAD_TOO_LARGE, "Decompressed size exceeded")
        self.total += len(chunk)
        if self.total > self.max_bytes:
            self.tripped = True
            raise SafeFetchError(ErrorKind.PAYLOAD_TOO_LARGE, "Decompressed size exceeded")
        return chunk


def _media_type(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def select_decoder(content_encoding: str, content_type: str) -> urllib3.response.ContentDecoder | None:
    """展開器を選択.

    Args:
        content_encoding: Content-Encoding ヘッダ値（無ければ空文字）
        content_type: Content-Type ヘッダ値（無ければ空文字）

    Returns:
        展開器。展開不要なら None

    Raises:
        SafeFetchError: 未対応の Content-Encoding（unsupported_media_type）
    """
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    codings = [c for c in codings if c != "identity"]

    if len(codings) > 1:
        raise SafeFetchError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, f"Unsupported Content-Encoding: {content_encoding}")
    if codings:
        coding = codings[0]
        if coding in ("gzip", "x-gzip"):
            return urllib3.response.GzipDecoder()
        if coding == "deflate":
            return urllib3.response.DeflateDecoder()
        if coding == "br":
            return urllib3.response.BrotliDecoder()
        raise SafeFetchError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, f"Unsupported Content-Encoding: {coding}")

    # Content-Type が圧縮コンテナの場合
    if _media_type(content_type) in safe_fetch.const.COMPRESSED_CONTAINER_TYPES:
        return urllib3.response.GzipDecoder()
    return None


class DecodingPipeline:
    """生ボディ → 展開 → バイト数制限 のパイプライン.

    require_markup を指定すると、展開後の最初の非空白バイトが "<" であることを確認する。
    """

    def __init__(
        self,
        source: RawBodySource,
        *,
        content_encoding: str,
        content_type: str,
        max_bytes: int,
        require_markup: bool = False,
    ) -> None:
        self._source = source
        self._decoder = select_decoder(content_encoding, content_type)
        self.counter = ByteCounter(max_bytes)
        self._sniffing = require_markup
        self._at_start = True

    def __iter__(self) -> Iterator[bytes]:
        return self.iter_chunks()

    def iter_chunks(self) -> Iterator[bytes]:
        """展開済みかつサイズ制限済みのチャンクを順に返す.

        途中で失敗した場合や途中で反復をやめた場合も上流は閉じられる。
        """
        if self.counter.tripped:
            raise SafeFetchError(ErrorKind.PAYLOAD_TOO_LARGE, "Decompressed size exceeded")
        try:
            for raw in self._source.stream():
                for chunk in self._decode(raw):
                    yield self._check(chunk)
            for chunk in self._finish():
                yield self._check(chunk)
            if self._sniffing:
                raise SafeFetchError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, "Response body is not XML")
        except SafeFetchError as e:
            logging.debug("Body pipeline aborted: %s", e)
            raise
        finally:
            self._source.close()

    def read(self) -> bytes:
        return b"".join(self.iter_chunks())

    def _decode(self, raw: bytes) -> Iterator[bytes]:
        if self._decoder is None:
            yield raw
            return
        data = raw
        while True:
            try:
                # 残り上限 +1 バイトまでしか1度に展開しない
                out = self._decoder.decompress(data, max_length=self.counter.remaining + 1)
            except _DECODER_ERRORS as e:
                raise SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Corrupt compressed body: {e}") from e
            if not out:
                return
            yield out
            if not self._decoder.has_unconsumed_tail:
                return
            data = b""

    def _finish(self) -> Iterator[bytes]:
        if self._decoder is None:
            return
        # 展開器の内部に残った分も上限付きで取り出す
        yield from self._decode(b"")
        try:
            tail = self._decoder.flush()
        except _DECODER_ERRORS as e:
            raise SafeFetchError(ErrorKind.UPSTREAM_ERROR, f"Corrupt compressed body: {e}") from e
        if tail:
            yield tail

    def _check(self, chunk: bytes) -> bytes:
        self.counter.feed(chunk)
        if self._sniffing:
            head = chunk
            if self._at_start and head.startswith(_BOM):
                head = head[len(_BOM) :]
            if chunk:
                self._at_start = False
            head = head.lstrip(_WHITESPACE)
            if head:
                if not head.startswith(b"<"):
                    raise SafeFetchError(ErrorKind.UNSUPPORTED_MEDIA_TYPE, "Response body is not XML")
                self._sniffing = False
        return chunk
