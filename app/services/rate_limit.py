import logging
import time
from typing import Callable

from app.config import CATEGORY_POLICIES, CategoryPolicy, policy_for

logger = logging.getLogger("uvicorn.error")


class RateLimiter:
    """
    カテゴリごとの「最低呼び出し間隔」ゲート。
    トークンバケットではないので、待っていてもバースト分は貯まらない。
    """

    def __init__(
        self,
        policies: dict[str, CategoryPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._policies = policies if policies is not None else CATEGORY_POLICIES
        self._clock = clock
        self._last_call: dict[str, float] = {}

    def try_admit(self, category: str) -> bool:
        now = self._clock()
        last = self._last_call.get(category)
        min_interval = policy_for(self._policies, category).min_interval_sec

        if last is not None and now - last < min_interval:
            # 拒否したときは状態を変えない
            logger.info(
                "rate limit check failed for %s, only %.0fms since last request",
                category,
                (now - last) * 1000,
            )
            return False

        self._last_call[category] = now
        return True

    def retry_after(self, category: str) -> float:
        last = self._last_call.get(category)
        if last is None:
            return 0.0
        min_interval = policy_for(self._policies, category).min_interval_sec
        return max(0.0, min_interval - (self._clock() - last))

    def reset(self) -> None:
        self._last_call.clear()
