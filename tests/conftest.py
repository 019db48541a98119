import asyncio

import httpx
import pytest

from app.config import CategoryPolicy
from app.services.batch import BatchCoordinator
from app.services.gateway import UpstreamGateway
from app.services.places import PlacesService
from app.services.places_cache import ResultCache
from app.services.quota import QuotaTracker
from app.services.rate_limit import RateLimiter

START = 1000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGoogle:
    """
    httpx.MockTransport 用のハンドラ。
    住所に "zero" が入っていれば ZERO_RESULTS、"denied" なら REQUEST_DENIED を返す。
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        params = request.url.params

        if path.endswith("geocode/json"):
            address = params.get("address", "")
            if "zero" in address:
                return httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []})
            if "denied" in address:
                return httpx.Response(
                    200,
                    json={"status": "REQUEST_DENIED", "error_message": "The provided API key is invalid."},
                )
            lat = 38.0 + len(address) / 100
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "results": [
                        {
                            "formatted_address": address,
                            "geometry": {"location": {"lat": lat, "lng": -121.0}},
                        }
                    ],
                },
            )

        if path.endswith("place/nearbysearch/json"):
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "results": [
                        {
                            "place_id": "closed-high",
                            "name": "Closed Diner",
                            "geometry": {"location": {"lat": 38.1, "lng": -121.0}},
                            "rating": 4.9,
                            "opening_hours": {"open_now": False},
                        },
                        {
                            "place_id": "open-low",
                            "name": "Open Cafe",
                            "geometry": {"location": {"lat": 38.1, "lng": -121.001}},
                            "rating": 3.5,
                            "user_ratings_total": 10,
                            "opening_hours": {"open_now": True},
                        },
                        {"name": "No Location"},
                    ],
                },
            )

        if path.endswith("place/details/json"):
            place_id = params.get("place_id")
            return httpx.Response(200, json={"status": "OK", "result": {"place_id": place_id}})

        return httpx.Response(404)

    @property
    def calls(self) -> int:
        return len(self.requests)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def google():
    return FakeGoogle()


@pytest.fixture()
def policies():
    # 2進で正確に表せる値にしておく（浮動小数の誤差で判定がぶれないように）
    interval = 0.125
    return {
        "geocode": CategoryPolicy(30 * 60, 1000, interval),
        "nearbySearch": CategoryPolicy(15 * 60, 500, interval),
        "placeDetails": CategoryPolicy(60 * 60, 500, interval),
    }


@pytest.fixture()
def make_gateway(clock, google, policies):
    def _make(session_limit: int = 50, handler=None, api_key: str = "test-key-1234") -> UpstreamGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler or google))
        return UpstreamGateway(
            ResultCache(policies, clock=clock),
            QuotaTracker(session_limit=session_limit, clock=clock),
            RateLimiter(policies, clock=clock),
            client=client,
            api_key=api_key,
            base_url="https://maps.example.test/maps/api",
        )

    return _make


@pytest.fixture()
def make_service(clock, make_gateway):
    def _make(**kwargs) -> PlacesService:
        sleeps: list[float] = []

        # 待ち時間はフェイク時計を進めるだけ
        async def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            clock.advance(seconds)
            await asyncio.sleep(0)

        service = PlacesService(make_gateway(**kwargs), BatchCoordinator(sleep=sleep), sleep=sleep)
        service.sleeps = sleeps
        return service

    return _make
