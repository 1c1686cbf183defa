#!/usr/bin/env python3
"""定数定義."""

from __future__ import annotations

# 許可ポート
ALLOWED_PORTS = frozenset({80, 443})
DEFAULT_PORTS = {"http": 80, "https": 443}

# リダイレクトとして追跡するステータス
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

# リクエストヘッダ
ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml, text/xml;q=0.9"
ACCEPT_ENCODING_HEADER = "gzip, deflate, br"

# フィードとして受け付ける Content-Type
FEED_MEDIA_TYPES = frozenset(
    {
        "application/rss+xml",
        "application/atom+xml",
        "application/rdf+xml",
        "application/xml",
        "text/xml",
    }
)
# 圧縮コンテナ（中身を確認して判定）
COMPRESSED_CONTAINER_TYPES = frozenset({"application/gzip", "application/x-gzip"})

# デフォルト設定値
DEFAULT_USER_AGENT = "SafeFeedFetcher/1.0"
DEFAULT_CONNECT_TIMEOUT_MS = 2000
DEFAULT_RESPONSE_TIMEOUT_MS = 5000
DEFAULT_IDLE_TIMEOUT_MS = 5000
DEFAULT_TOTAL_TIMEOUT_MS = 15000
DEFAULT_MAX_REDIRECTS = 3
DEFAULT_MAX_BYTES = 5 * 1024 * 1024

# ボディ読み出し単位
READ_CHUNK_SIZE = 16 * 1024
