import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from app.config import (
    GOOGLE_MAPS_API_KEY,
    GOOGLE_MAPS_BASE_URL,
    UPSTREAM_TIMEOUT_SEC,
)
from app.services.errors import PlacesUpstreamError, QuotaExceeded, RateLimited
from app.services.places_cache import ResultCache
from app.services.quota import QuotaTracker
from app.services.rate_limit import RateLimiter

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class UpstreamRequest:
    endpoint: str  # 例: "geocode/json"
    params: dict[str, Any] = field(default_factory=dict)


# =========================
# 上流レスポンスの分類
# =========================
@dataclass(frozen=True)
class Ok:
    payload: dict


@dataclass(frozen=True)
class ZeroResults:
    payload: dict


@dataclass(frozen=True)
class ProviderError:
    status: str
    message: str | None = None


UpstreamResult = Ok | ZeroResults | ProviderError


def classify_response(body: dict) -> UpstreamResult:
    status = body.get("status")
    if status == "OK":
        return Ok(body)
    if status == "ZERO_RESULTS":
        return ZeroResults(body)
    return ProviderError(str(status or "UNKNOWN_ERROR"), body.get("error_message"))


class UpstreamGateway:
    """
    Google Maps への呼び出しを一元化する。

    キャッシュ → クォータ → レート制限 → 実際のHTTP呼び出し → 記録 → キャッシュ保存、の順。
    await するのは HTTP 呼び出しだけなので、その手前までの判定は割り込まれない。
    """

    def __init__(
        self,
        cache: ResultCache,
        quota: QuotaTracker,
        limiter: RateLimiter,
        client: httpx.AsyncClient | None = None,
        api_key: str = GOOGLE_MAPS_API_KEY,
        base_url: str = GOOGLE_MAPS_BASE_URL,
        timeout: float = UPSTREAM_TIMEOUT_SEC,
    ):
        self.cache = cache
        self.quota = quota
        self.limiter = limiter
        self._client = client
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def api_key(self) -> str:
        return self._api_key

    def check_session_reset(self) -> None:
        if self.quota.check_session_reset():
            self.limiter.reset()
            self.cache.clear()

    async def fetch(self, category: str, cache_key: str, request: UpstreamRequest) -> dict:
        self.check_session_reset()

        hit = self.cache.get(category, cache_key)
        if hit is not None:
            logger.debug("using cached %s data for %s", category, cache_key)
            return hit.payload

        if not self._api_key:
            raise PlacesUpstreamError("CONFIG_ERROR", "GOOGLE_MAPS_API_KEY is missing")

        if not self.quota.admit(category):
            stats = self.quota.get_stats()
            raise QuotaExceeded(stats.total_calls, stats.session_limit)
        window_id = self.quota.window_id

        if not self.limiter.try_admit(category):
            self.quota.release(category, window_id)
            raise RateLimited(category, self.limiter.retry_after(category))

        body = await self._call(category, request, window_id)

        result = classify_response(body)
        if isinstance(result, ProviderError):
            logger.error("google maps api error for %s: %s %s", category, result.status, result.message or "")
            raise PlacesUpstreamError(result.status, result.message)

        self.cache.put(category, cache_key, result.payload)
        return result.payload

    async def _call(self, category: str, request: UpstreamRequest, window_id: int) -> dict:
        """
        HTTP を1回だけ投げる。レスポンスが返ってきた時点でクォータに記録し、
        応答が無いまま終わった場合（通信エラー・タイムアウト・キャンセル）は予約を返す。
        """
        url = f"{self._base_url}/{request.endpoint.lstrip('/')}"
        params = {**request.params, "key": self._api_key}

        logger.info("making %s request to google maps: %s %s", category, url, request.params)
        start = time.monotonic()
        try:
            r = await self._get(url, params)
        except BaseException as e:
            self.quota.release(category, window_id)
            if isinstance(e, httpx.TimeoutException):
                logger.error("%s request timed out after %.1fs", category, time.monotonic() - start)
                raise PlacesUpstreamError("TIMEOUT", str(e) or "upstream request timed out") from e
            if isinstance(e, httpx.HTTPError):
                logger.error("%s request failed: %s", category, e)
                raise PlacesUpstreamError("TRANSPORT_ERROR", str(e)) from e
            raise

        # 上流が応答した = 課金対象の呼び出しとして数える（キャッシュ保存より先）
        self.quota.record_call(category, window_id)

        if r.status_code >= 400:
            logger.error("%s request returned http %d", category, r.status_code)
            raise PlacesUpstreamError(f"HTTP_{r.status_code}", r.text[:200] or None)

        try:
            body = r.json()
        except ValueError as e:
            raise PlacesUpstreamError("INVALID_RESPONSE", "response body is not JSON") from e

        if not isinstance(body, dict):
            raise PlacesUpstreamError("INVALID_RESPONSE", "response body is not a JSON object")

        logger.info("google api response status: %s", body.get("status"))
        return body

    async def _get(self, url: str, params: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, params=params, timeout=self._timeout)

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.get(url, params=params)
