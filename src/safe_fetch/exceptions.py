#!/usr/bin/env python3
"""Safe Fetch 例外階層.

フェッチ処理の失敗は全て SafeFetchError に集約し、kind で種別を区別します。
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """フェッチ失敗の種別."""

    INVALID_URL = "invalid_url"
    DISALLOWED_SCHEME = "disallowed_scheme"
    DISALLOWED_PORT = "disallowed_port"
    BLOCKED_DESTINATION = "blocked_destination"
    TIMEOUT_CONNECT = "timeout_connect"
    TIMEOUT_RESPONSE = "timeout_response"
    TIMEOUT_IDLE = "timeout_idle"
    TIMEOUT_TOTAL = "timeout_total"
    REDIRECT_ERROR = "redirect_error"
    MISSING_LOCATION = "missing_location"
    UNSUPPORTED_MEDIA_TYPE = "unsupported_media_type"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    UPSTREAM_ERROR = "upstream_error"


class SafeFetchBaseError(Exception):
    """Safe Fetch 基底例外.

    アプリケーション固有の全ての例外の基底クラス。
    """


class ConfigError(SafeFetchBaseError):
    """設定エラー.

    設定値の型変換やバリデーションに失敗した場合。
    """


class SafeFetchError(SafeFetchBaseError):
    """フェッチエラー.

    1回の fetch が失敗した場合に必ず1つだけ送出される。
    再試行するかどうかは呼び出し側が判断する。
    """

    def __init__(self, kind: ErrorKind, message: str | None = None) -> None:
        self.kind = kind
        self.message = message or kind.value
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"SafeFetchError({self.kind.value!r}, {self.message!r})"


# 上流が 2xx 以外を返した場合に利用側が返すべきステータス
UPSTREAM_STATUS_FOR_NON_2XX = 502

_HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INVALID_URL: 400,
    ErrorKind.DISALLOWED_SCHEME: 400,
    ErrorKind.DISALLOWED_PORT: 400,
    ErrorKind.BLOCKED_DESTINATION: 400,
    ErrorKind.REDIRECT_ERROR: 400,
    ErrorKind.MISSING_LOCATION: 400,
    ErrorKind.TIMEOUT_CONNECT: 504,
    ErrorKind.TIMEOUT_RESPONSE: 504,
    ErrorKind.TIMEOUT_IDLE: 504,
    ErrorKind.TIMEOUT_TOTAL: 504,
    ErrorKind.UNSUPPORTED_MEDIA_TYPE: 415,
    ErrorKind.PAYLOAD_TOO_LARGE: 413,
    ErrorKind.UPSTREAM_ERROR: 502,
}


def http_status_for(kind: ErrorKind) -> int:
    """エラー種別を利用側 API のステータスコードに変換.

    Args:
        kind: エラー種別

    Returns:
        HTTP ステータスコード
    """
    return _HTTP_STATUS[kind]
