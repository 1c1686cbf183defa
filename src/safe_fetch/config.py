#!/usr/bin/env python3
"""
フェッチ設定を定義する dataclass

外部で読み込まれたフラットなキー・バリュー設定を型付きの設定クラスに変換します。
設定ファイルの読み込み自体はこのパッケージの責務ではありません。
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import safe_fetch.const
from safe_fetch.exceptions import ConfigError

_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off", ""})


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ConfigError(f"{key}: boolean expected, got {value!r}")


def _to_int(key: str, value: Any, *, minimum: int) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key}: integer expected, got {value!r}")
    try:
        number = int(str(value).strip()) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}: integer expected, got {value!r}") from e
    if number < minimum:
        raise ConfigError(f"{key}: must be >= {minimum}, got {number}")
    return number


@dataclass(frozen=True)
class FetchConfig:
    """フェッチ設定"""

    allow_http: bool = False
    extra_deny_cidrs: str = ""  # 空白またはカンマ区切り
    user_agent: str = safe_fetch.const.DEFAULT_USER_AGENT
    connect_timeout_ms: int = safe_fetch.const.DEFAULT_CONNECT_TIMEOUT_MS
    response_timeout_ms: int = safe_fetch.const.DEFAULT_RESPONSE_TIMEOUT_MS
    idle_timeout_ms: int = safe_fetch.const.DEFAULT_IDLE_TIMEOUT_MS
    total_timeout_ms: int = safe_fetch.const.DEFAULT_TOTAL_TIMEOUT_MS
    max_redirects: int = safe_fetch.const.DEFAULT_MAX_REDIRECTS
    max_bytes: int = safe_fetch.const.DEFAULT_MAX_BYTES

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> FetchConfig:
        """dict から FetchConfig を生成.

        値は文字列（環境変数由来）でも受け付け、型変換します。
        未知のキーは無視します。

        Raises:
            ConfigError: 値の変換に失敗した場合
        """
        defaults = cls()

        extra = data.get("extra_deny_cidrs", defaults.extra_deny_cidrs)
        if extra is None:
            extra = ""
        elif not isinstance(extra, str):
            # リスト形式も許容
            extra = " ".join(str(c) for c in extra)

        user_agent = str(data.get("user_agent", defaults.user_agent)).strip()
        if not user_agent:
            raise ConfigError("user_agent: must not be empty")

        return cls(
            allow_http=_to_bool("allow_http", data.get("allow_http", defaults.allow_http)),
            extra_deny_cidrs=extra,
            user_agent=user_agent,
            connect_timeout_ms=_to_int(
                "connect_timeout_ms", data.get("connect_timeout_ms", defaults.connect_timeout_ms), minimum=1
            ),
            response_timeout_ms=_to_int(
                "response_timeout_ms", data.get("response_timeout_ms", defaults.response_timeout_ms), minimum=1
            ),
            idle_timeout_ms=_to_int(
                "idle_timeout_ms", data.get("idle_timeout_ms", defaults.idle_timeout_ms), minimum=1
            ),
            total_timeout_ms=_to_int(
                "total_timeout_ms", data.get("total_timeout_ms", defaults.total_timeout_ms), minimum=1
            ),
            max_redirects=_to_int("max_redirects", data.get("max_redirects", defaults.max_redirects), minimum=0),
            max_bytes=_to_int("max_bytes", data.get("max_bytes", defaults.max_bytes), minimum=1),
        )

    @property
    def connect_timeout_sec(self) -> float:
        return self.connect_timeout_ms / 1000

    @property
    def response_timeout_sec(self) -> float:
        return self.response_timeout_ms / 1000

    @property
    def idle_timeout_sec(self) -> float:
        return self.idle_timeout_ms / 1000

    @property
    def total_timeout_sec(self) -> float:
        return self.total_timeout_ms / 1000
