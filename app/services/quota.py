import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from app.config import SESSION_LIMIT, SESSION_WINDOW_SEC

logger = logging.getLogger("uvicorn.error")


@dataclass
class SessionStats:
    total_calls: int = 0
    per_category_calls: dict[str, int] = field(default_factory=dict)
    session_limit: int = SESSION_LIMIT
    window_started_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "total_calls": self.total_calls,
            "per_category_calls": dict(self.per_category_calls),
            "session_limit": self.session_limit,
            "window_started_at": self.window_started_at,
        }


class QuotaTracker:
    """
    セッション(24時間)全体での上流呼び出し回数の上限管理。

    admit() で枠を予約し、record_call() で確定、release() で返却する。
    同時実行中の呼び出しも予約として数えるので、バッチで一斉に投げても上限は超えない。
    """

    def __init__(
        self,
        session_limit: int = SESSION_LIMIT,
        window_sec: float = SESSION_WINDOW_SEC,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._window_sec = window_sec
        self._stats = SessionStats(session_limit=session_limit, window_started_at=clock())
        self._in_flight = 0
        # リセットのたびに増える。古い窓で取った予約は新しい窓では数えない
        self._window_id = 0

    @property
    def window_id(self) -> int:
        return self._window_id

    def check_session_reset(self) -> bool:
        """窓を過ぎていたらカウンタを初期化して True を返す（呼び出し側でキャッシュも消す）"""
        if self._clock() - self._stats.window_started_at > self._window_sec:
            logger.info("resetting session stats (24-hour period elapsed)")
            self.reset()
            return True
        return False

    def admit(self, category: str) -> bool:
        if self._stats.total_calls + self._in_flight >= self._stats.session_limit:
            logger.warning(
                "request limit reached (%d/%d), refusing %s",
                self._stats.total_calls,
                self._stats.session_limit,
                category,
            )
            return False
        self._in_flight += 1
        return True

    def record_call(self, category: str, window_id: int | None = None) -> None:
        self._return_reservation(window_id)
        self._stats.total_calls += 1
        calls = self._stats.per_category_calls
        calls[category] = calls.get(category, 0) + 1

    def release(self, category: str, window_id: int | None = None) -> None:
        self._return_reservation(window_id)

    def _return_reservation(self, window_id: int | None) -> None:
        if window_id is not None and window_id != self._window_id:
            return
        self._in_flight = max(0, self._in_flight - 1)

    def get_stats(self) -> SessionStats:
        return SessionStats(
            total_calls=self._stats.total_calls,
            per_category_calls=dict(self._stats.per_category_calls),
            session_limit=self._stats.session_limit,
            window_started_at=self._stats.window_started_at,
        )

    def reset(self) -> None:
        # 上限値だけは残す。実行中の予約も捨てる
        self._stats = SessionStats(
            session_limit=self._stats.session_limit,
            window_started_at=self._clock(),
        )
        self._in_flight = 0
        self._window_id += 1
