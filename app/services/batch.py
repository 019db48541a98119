import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from app.config import BATCH_DELAY_SEC, BATCH_RATE_LIMIT_RETRIES, BATCH_SIZE
from app.services.errors import InvalidInput, RateLimited

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class BatchSuccess:
    index: int
    key: str
    value: Any


@dataclass(frozen=True)
class BatchFailure:
    index: int
    key: str
    error: str


@dataclass
class BatchResult:
    succeeded: list[BatchSuccess] = field(default_factory=list)
    failed: list[BatchFailure] = field(default_factory=list)

    def to_dict(self, key_name: str = "key") -> dict:
        return {
            "results": [{key_name: s.key, "data": s.value} for s in self.succeeded],
            "errors": [{key_name: f.key, "error": f.error} for f in self.failed],
        }


class BatchCoordinator:
    """
    まとめて来たリクエストを 5件ずつのグループに分けて投げる。

    グループ内は同時に投げて全部終わるまで待ち、グループ間は 200ms 空ける。
    1件の失敗で他を止めることはない。
    """

    def __init__(
        self,
        batch_size: int = BATCH_SIZE,
        delay_sec: float = BATCH_DELAY_SEC,
        rate_limit_retries: int = BATCH_RATE_LIMIT_RETRIES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.delay_sec = delay_sec
        self.rate_limit_retries = rate_limit_retries
        self._sleep = sleep

    async def run_batch(
        self,
        items: Sequence[str],
        fetch_one: Callable[[str], Awaitable[Any]],
    ) -> BatchResult:
        if not items:
            raise InvalidInput("at least one item is required")

        result = BatchResult()
        groups = 0

        for start in range(0, len(items), self.batch_size):
            group = items[start:start + self.batch_size]
            groups += 1

            outcomes = await asyncio.gather(
                *(self._fetch_with_retry(item, fetch_one) for item in group),
                return_exceptions=True,
            )

            # gather は入力順で返すので、そのまま積めば元の順番になる
            for offset, (item, outcome) in enumerate(zip(group, outcomes)):
                index = start + offset
                if isinstance(outcome, Exception):
                    result.failed.append(BatchFailure(index, item, str(outcome)))
                elif isinstance(outcome, BaseException):
                    # キャンセル等はバッチ全体の問題なので握りつぶさない
                    raise outcome
                else:
                    result.succeeded.append(BatchSuccess(index, item, outcome))

            if start + self.batch_size < len(items):
                await self._sleep(self.delay_sec)

        logger.info(
            "batch finished: %d ok, %d failed in %d groups",
            len(result.succeeded),
            len(result.failed),
            groups,
        )
        return result

    async def _fetch_with_retry(self, item: str, fetch_one: Callable[[str], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await fetch_one(item)
            except RateLimited as e:
                # 同じグループの兄弟と間隔を空けるだけ。上流エラーはリトライしない
                if attempt >= self.rate_limit_retries:
                    raise
                attempt += 1
                await self._sleep(e.retry_after)
