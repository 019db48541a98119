import asyncio

import pytest

from app.services.batch import BatchCoordinator, BatchFailure
from app.services.errors import InvalidInput, PlacesUpstreamError, RateLimited


def _coordinator(sleeps: list[float], **kwargs) -> BatchCoordinator:
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return BatchCoordinator(sleep=sleep, **kwargs)


def test_geocode_batch_with_one_blank_address(make_service, google):
    service = make_service()
    addresses = ["Sacramento", "Davis", "Folsom", "", "Roseville", "Elk Grove", "Woodland"]

    result = asyncio.run(service.geocode_batch(addresses))

    assert [s.key for s in result.succeeded] == ["Sacramento", "Davis", "Folsom", "Roseville", "Elk Grove", "Woodland"]
    assert [s.index for s in result.succeeded] == [0, 1, 2, 4, 5, 6]
    assert result.failed == [BatchFailure(3, "", "Address is required")]
    assert google.calls == 6
    # 5件 + 2件 の2グループなので、グループ間の待ちは1回だけ
    assert service.sleeps.count(0.2) == 1


def test_groups_run_sequentially_and_keep_input_order():
    sleeps: list[float] = []
    coordinator = _coordinator(sleeps, batch_size=2, delay_sec=0.5)
    started: list[str] = []

    async def fetch_one(item: str) -> str:
        started.append(item)
        # 後ろのものほど先に終わる
        await asyncio.sleep(0.001 * (5 - int(item)))
        return f"v{item}"

    result = asyncio.run(coordinator.run_batch(["1", "2", "3", "4", "5"], fetch_one))

    assert [s.value for s in result.succeeded] == ["v1", "v2", "v3", "v4", "v5"]
    assert set(started[:2]) == {"1", "2"}
    assert set(started[2:4]) == {"3", "4"}
    assert sleeps == [0.5, 0.5]


def test_failures_do_not_abort_siblings():
    coordinator = _coordinator([])

    async def fetch_one(item: str) -> str:
        if item == "bad":
            raise PlacesUpstreamError("INVALID_REQUEST", "bad place id")
        return item.upper()

    result = asyncio.run(coordinator.run_batch(["a", "bad", "c"], fetch_one))

    assert [(s.key, s.value) for s in result.succeeded] == [("a", "A"), ("c", "C")]
    assert result.failed == [BatchFailure(1, "bad", "INVALID_REQUEST: bad place id")]
    assert result.to_dict(key_name="placeId") == {
        "results": [{"placeId": "a", "data": "A"}, {"placeId": "c", "data": "C"}],
        "errors": [{"placeId": "bad", "error": "INVALID_REQUEST: bad place id"}],
    }


def test_rate_limited_members_wait_and_retry():
    sleeps: list[float] = []
    coordinator = _coordinator(sleeps)
    attempts: dict[str, int] = {}

    async def fetch_one(item: str) -> str:
        attempts[item] = attempts.get(item, 0) + 1
        if attempts[item] == 1 and item != "a":
            raise RateLimited("geocode", 0.1)
        return item

    result = asyncio.run(coordinator.run_batch(["a", "b", "c"], fetch_one))

    assert [s.value for s in result.succeeded] == ["a", "b", "c"]
    assert sleeps == [0.1, 0.1]


def test_rate_limit_retries_are_bounded():
    coordinator = _coordinator([], rate_limit_retries=2)
    calls = []

    async def fetch_one(item: str) -> str:
        calls.append(item)
        raise RateLimited("geocode", 0.1)

    result = asyncio.run(coordinator.run_batch(["a"], fetch_one))

    assert len(calls) == 3
    assert result.succeeded == []
    assert result.failed[0].error == "Rate limit reached, please try again in a moment"


def test_empty_batch_is_rejected():
    with pytest.raises(InvalidInput):
        asyncio.run(_coordinator([]).run_batch([], lambda item: None))
