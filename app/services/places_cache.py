import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from app.config import CATEGORY_POLICIES, CategoryPolicy, policy_for

logger = logging.getLogger("uvicorn.error")

# 上限を超えたら古い順にこの割合を捨てる
EVICTION_RATIO = 0.2


@dataclass
class CacheEntry:
    payload: Any
    stored_at: float
    last_accessed_at: float


class ResultCache:
    """
    カテゴリ(geocode / nearbySearch / placeDetails)ごとのインメモリキャッシュ。
    有効期限切れは「無いもの」として扱い、件数が上限を超えたら古い20%を削除する。
    """

    def __init__(
        self,
        policies: dict[str, CategoryPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._policies = policies if policies is not None else CATEGORY_POLICIES
        self._clock = clock
        self._buckets: dict[str, dict[str, CacheEntry]] = {}

    def get(self, category: str, key: str) -> CacheEntry | None:
        bucket = self._buckets.get(category)
        if not bucket:
            return None

        hit = bucket.get(key)
        if hit is None:
            return None

        now = self._clock()
        if now - hit.stored_at >= policy_for(self._policies, category).expiry_sec:
            bucket.pop(key, None)
            return None

        # stored_at は延長しない（期限は保存時刻から数える）
        hit.last_accessed_at = now
        return hit

    def put(self, category: str, key: str, payload: Any) -> None:
        bucket = self._buckets.setdefault(category, {})
        now = self._clock()
        # 上書き時も挿入順の末尾に回す
        bucket.pop(key, None)
        bucket[key] = CacheEntry(payload=payload, stored_at=now, last_accessed_at=now)

        limit = policy_for(self._policies, category).max_entries
        if len(bucket) > limit:
            self._evict_oldest(category, bucket, limit)

    def clear(self, category: str | None = None) -> None:
        if category is None:
            self._buckets.clear()
            return
        self._buckets.pop(category, None)

    def size(self, category: str) -> int:
        return len(self._buckets.get(category) or {})

    def sizes(self) -> dict[str, int]:
        categories = list(self._policies) + [c for c in self._buckets if c not in self._policies]
        return {c: self.size(c) for c in categories}

    def _evict_oldest(self, category: str, bucket: dict[str, CacheEntry], limit: int) -> None:
        logger.info(
            "cache %s exceeded limit (%d/%d), purging oldest items",
            category,
            len(bucket),
            limit,
        )
        # sorted は安定ソートなので、同じ stored_at は挿入順のまま
        entries = sorted(bucket.items(), key=lambda kv: kv[1].stored_at)
        remove_count = max(1, int(len(entries) * EVICTION_RATIO))
        for key, _ in entries[:remove_count]:
            del bucket[key]
        logger.info("removed %d items from %s cache", remove_count, category)
