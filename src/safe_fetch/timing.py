#!/usr/bin/env python3
"""タイムアウト管理.

接続・応答ヘッダ・全体の3つの期限と、呼び出し側からの中断シグナルを扱います。
全体期限はリダイレクトを含む1回の fetch 全体で共有され、ホップごとに延長されません。
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class TimingWindow:
    """1回の fetch のタイムアウト設定"""

    connect_timeout_sec: float
    response_timeout_sec: float
    idle_timeout_sec: float
    total_deadline: float  # time.monotonic() 基準の絶対時刻

    @classmethod
    def start(
        cls,
        *,
        connect_timeout_sec: float,
        response_timeout_sec: float,
        idle_timeout_sec: float,
        total_timeout_sec: float,
    ) -> TimingWindow:
        """現在時刻から全体期限を確定して生成."""
        return cls(
            connect_timeout_sec=connect_timeout_sec,
            response_timeout_sec=response_timeout_sec,
            idle_timeout_sec=idle_timeout_sec,
            total_deadline=time.monotonic() + total_timeout_sec,
        )

    def remaining(self) -> float:
        """全体期限までの残り秒数（負にはならない）."""
        return max(0.0, self.total_deadline - time.monotonic())

    def is_expired(self) -> bool:
        return self.remaining() <= 0


class AbortSignal:
    """呼び出し側からの中断シグナル.

    abort() 後に登録されたリスナーは即座に呼ばれる。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._aborted = False
        self._listeners: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        with self._lock:
            if self._aborted:
                return
            self._aborted = True
            listeners = list(self._listeners)
            self._listeners.clear()
        for listener in listeners:
            listener()

    def add_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if not self._aborted:
                self._listeners.append(listener)
                return
        listener()

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
