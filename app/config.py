import os
from dataclasses import dataclass

GOOGLE_MAPS_API_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "")
GOOGLE_MAPS_BASE_URL = os.getenv(
    "GOOGLE_MAPS_BASE_URL", "https://maps.googleapis.com/maps/api"
).rstrip("/")

GOOGLE_GEOCODE_ENDPOINT = "geocode/json"
GOOGLE_NEARBY_ENDPOINT = "place/nearbysearch/json"
GOOGLE_DETAILS_ENDPOINT = "place/details/json"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

UPSTREAM_TIMEOUT_SEC = float(os.getenv("UPSTREAM_TIMEOUT_SEC", "10"))

# 1セッションあたりの上流呼び出し上限（24時間でリセット）
SESSION_LIMIT = int(os.getenv("PLACES_SESSION_LIMIT", "50"))
SESSION_WINDOW_SEC = 24 * 60 * 60

MIN_REQUEST_INTERVAL_SEC = float(os.getenv("PLACES_MIN_INTERVAL_SEC", "0.1"))

BATCH_SIZE = 5
BATCH_DELAY_SEC = 0.2
BATCH_RATE_LIMIT_RETRIES = 5

# Nearby Search の next_page_token はすぐには有効にならない
PAGE_TOKEN_DELAY_SEC = 2.0

DEFAULT_RADIUS_M = 1609.34  # 1 mile
DEFAULT_PLACE_TYPE = "restaurant"

GEOCODE = "geocode"
NEARBY_SEARCH = "nearbySearch"
PLACE_DETAILS = "placeDetails"


@dataclass(frozen=True)
class CategoryPolicy:
    expiry_sec: float
    max_entries: int
    min_interval_sec: float


CATEGORY_POLICIES: dict[str, CategoryPolicy] = {
    GEOCODE: CategoryPolicy(30 * 60, 1000, MIN_REQUEST_INTERVAL_SEC),
    NEARBY_SEARCH: CategoryPolicy(15 * 60, 500, MIN_REQUEST_INTERVAL_SEC),
    PLACE_DETAILS: CategoryPolicy(60 * 60, 500, MIN_REQUEST_INTERVAL_SEC),
}

# 未知のカテゴリ用
DEFAULT_POLICY = CategoryPolicy(15 * 60, 500, MIN_REQUEST_INTERVAL_SEC)


def policy_for(policies: dict[str, CategoryPolicy], category: str) -> CategoryPolicy:
    return policies.get(category, DEFAULT_POLICY)
