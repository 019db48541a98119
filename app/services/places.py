import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence

import httpx

from app.config import (
    CATEGORY_POLICIES,
    DEFAULT_PLACE_TYPE,
    DEFAULT_RADIUS_M,
    GEOCODE,
    GOOGLE_DETAILS_ENDPOINT,
    GOOGLE_GEOCODE_ENDPOINT,
    GOOGLE_MAPS_API_KEY,
    GOOGLE_NEARBY_ENDPOINT,
    NEARBY_SEARCH,
    PAGE_TOKEN_DELAY_SEC,
    PLACE_DETAILS,
    SESSION_LIMIT,
)
from app.services.batch import BatchCoordinator, BatchResult
from app.services.errors import InvalidInput, RateLimited
from app.services.gateway import UpstreamGateway, UpstreamRequest
from app.services.geometry import first_location, midpoint
from app.services.places_cache import ResultCache
from app.services.quota import QuotaTracker
from app.services.rate_limit import RateLimiter
from app.services.ranking import sort_items, to_place_item

logger = logging.getLogger("uvicorn.error")

# find_midpoint の住所検索リトライ（1秒から倍々）
GEOCODE_RETRIES = 2
GEOCODE_RETRY_DELAY_SEC = 1.0


def normalize_address(address: str) -> str:
    return address.strip().lower()


def _require_text(value: Any, message: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(message)
    return value.strip()


def _require_list(values: Any, message: str) -> list:
    if not isinstance(values, (list, tuple)) or not values:
        raise InvalidInput(message)
    return list(values)


class PlacesService:
    """
    外から呼ばれる操作の入り口。
    キーの正規化とリクエストの組み立てだけをして、実際の呼び出しは UpstreamGateway に任せる。
    """

    def __init__(
        self,
        gateway: UpstreamGateway,
        batch: BatchCoordinator | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        page_token_delay: float = PAGE_TOKEN_DELAY_SEC,
    ):
        self.gateway = gateway
        self.batch = batch or BatchCoordinator(sleep=sleep)
        self._sleep = sleep
        self._page_token_delay = page_token_delay

    # ==================================================
    # ① 住所 → 座標（Geocoding）
    # ==================================================
    async def geocode(self, address: str) -> dict:
        address = _require_text(address, "Address is required")
        request = UpstreamRequest(GOOGLE_GEOCODE_ENDPOINT, {"address": address})
        return await self.gateway.fetch(GEOCODE, normalize_address(address), request)

    async def geocode_batch(self, addresses: Sequence[str]) -> BatchResult:
        addresses = _require_list(addresses, "Array of addresses is required")
        return await self.batch.run_batch(addresses, self.geocode)

    # ==================================================
    # ② 周辺検索（Nearby Search）
    # ==================================================
    async def nearby(
        self,
        lat: float | None = None,
        lng: float | None = None,
        radius: float = DEFAULT_RADIUS_M,
        place_type: str = DEFAULT_PLACE_TYPE,
        page_token: str | None = None,
    ) -> dict:
        if page_token:
            # トークンは発行直後だと INVALID_REQUEST になる
            await self._sleep(self._page_token_delay)
            request = UpstreamRequest(GOOGLE_NEARBY_ENDPOINT, {"pagetoken": page_token})
            return await self.gateway.fetch(NEARBY_SEARCH, f"pagetoken:{page_token}", request)

        if lat is None or lng is None:
            raise InvalidInput("Location coordinates required unless using pagetoken")
        if not -90 <= lat <= 90 or not -180 <= lng <= 180:
            raise InvalidInput(f"Invalid coordinates: {lat},{lng}")
        if radius <= 0:
            raise InvalidInput("Radius must be positive")

        place_type = (place_type or DEFAULT_PLACE_TYPE).strip()
        request = UpstreamRequest(
            GOOGLE_NEARBY_ENDPOINT,
            {
                "location": f"{lat},{lng}",  # 緯度,経度
                "radius": radius,            # 検索半径（m）
                "type": place_type,
            },
        )
        return await self.gateway.fetch(NEARBY_SEARCH, f"{lat},{lng},{radius},{place_type}", request)

    # ==================================================
    # ③ 店舗詳細（Place Details）
    # ==================================================
    async def place_details(self, place_id: str, fields: Sequence[str] | None = None) -> dict:
        place_id = _require_text(place_id, "Place ID is required")
        fields_param = ",".join(fields) if fields else ""

        params = {"place_id": place_id}
        if fields_param:
            params["fields"] = fields_param

        request = UpstreamRequest(GOOGLE_DETAILS_ENDPOINT, params)
        return await self.gateway.fetch(PLACE_DETAILS, f"{place_id},{fields_param}", request)

    async def place_details_batch(
        self, place_ids: Sequence[str], fields: Sequence[str] | None = None
    ) -> BatchResult:
        place_ids = _require_list(place_ids, "Array of place IDs is required")

        async def fetch_one(place_id: str) -> dict:
            return await self.place_details(place_id, fields)

        return await self.batch.run_batch(place_ids, fetch_one)

    # ==================================================
    # ④ 2地点の中間地点まわりを探す
    # ==================================================
    async def find_midpoint(
        self,
        address1: str,
        address2: str,
        radius: float = DEFAULT_RADIUS_M,
        place_type: str = DEFAULT_PLACE_TYPE,
    ) -> dict:
        address1 = _require_text(address1, "Two addresses are required")
        address2 = _require_text(address2, "Two addresses are required")

        # 両方終わるまで待ってから、最初の失敗を投げる（片方だけ放置しない）
        payloads = await asyncio.gather(
            self._geocode_with_retry(address1),
            self._geocode_with_retry(address2),
            return_exceptions=True,
        )
        for payload in payloads:
            if isinstance(payload, BaseException):
                raise payload

        origins = []
        for address, payload in zip((address1, address2), payloads):
            location = first_location(payload)
            if location is None:
                raise InvalidInput(f"Could not geocode address: {address}")
            origins.append({"address": address, "lat": location[0], "lng": location[1]})

        mid_lat, mid_lng = midpoint(origins[0]["lat"], origins[0]["lng"], origins[1]["lat"], origins[1]["lng"])
        data = await self.nearby(mid_lat, mid_lng, radius, place_type)

        items = []
        for r in data.get("results") or []:
            item = to_place_item(r, mid_lat, mid_lng)
            if item is not None:
                items.append(item)

        items = sort_items(items)
        return {
            "midpoint": {"lat": mid_lat, "lng": mid_lng},
            "origins": origins,
            "status": data.get("status"),
            "items": items,
            "count": len(items),
            "next_page_token": data.get("next_page_token"),
        }

    async def _geocode_with_retry(self, address: str) -> dict:
        delay = GEOCODE_RETRY_DELAY_SEC
        attempt = 0
        while True:
            try:
                return await self.geocode(address)
            except RateLimited as e:
                if attempt >= GEOCODE_RETRIES:
                    raise
                attempt += 1
                wait = max(delay, e.retry_after)
                logger.info("geocode rate limited, retrying in %.1fs", wait)
                await self._sleep(wait)
                delay *= 2

    # ==================================================
    # ⑤ 管理・監視用
    # ==================================================
    def get_stats(self) -> dict:
        self.gateway.check_session_reset()
        return {
            "request_stats": self.gateway.quota.get_stats().to_dict(),
            "cache_stats": self.gateway.cache.sizes(),
        }

    def reset_stats(self) -> dict:
        logger.info("manually resetting api stats")
        self.gateway.quota.reset()
        self.gateway.limiter.reset()
        self.gateway.cache.clear()
        return self.get_stats()

    def health_check(self) -> bool:
        return True

    def verify_key(self) -> dict:
        key = self.gateway.api_key
        if not key:
            return {"status": "ERROR", "message": "API key not found in environment variables"}
        # 先頭と末尾4文字だけ見せる
        return {"status": "OK", "message": "API key found", "key_preview": f"{key[:4]}...{key[-4:]}"}


def build_places_service(
    client: httpx.AsyncClient | None = None,
    api_key: str = GOOGLE_MAPS_API_KEY,
    session_limit: int = SESSION_LIMIT,
) -> PlacesService:
    cache = ResultCache(CATEGORY_POLICIES)
    quota = QuotaTracker(session_limit=session_limit)
    limiter = RateLimiter(CATEGORY_POLICIES)
    gateway = UpstreamGateway(cache, quota, limiter, client=client, api_key=api_key)
    return PlacesService(gateway)
