import logging

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel

from app.config import DEFAULT_PLACE_TYPE, DEFAULT_RADIUS_M, LOG_LEVEL
from app.services.errors import (
    InvalidInput,
    PlacesError,
    PlacesUpstreamError,
    QuotaExceeded,
    RateLimited,
)
from app.services.places import PlacesService, build_places_service

app = FastAPI()
logger = logging.getLogger("uvicorn.error")
logger.setLevel(LOG_LEVEL)

_places_service: PlacesService | None = None


def get_places_service() -> PlacesService:
    # プロセス内で1つだけ（キャッシュとカウンタを共有するため）
    global _places_service
    if _places_service is None:
        _places_service = build_places_service()
    return _places_service


class GeocodeBatchBody(BaseModel):
    addresses: list[str]


class DetailsBatchBody(BaseModel):
    placeIds: list[str]
    fields: list[str] | None = None


def _to_http_error(e: PlacesError) -> HTTPException:
    """
    InvalidInput → 400 / QuotaExceeded・RateLimited → 429 / 上流エラー → 502
    上流のステータスはそのまま返す（画面で原因が分かるように）
    """
    if isinstance(e, InvalidInput):
        return HTTPException(status_code=400, detail={"error": str(e)})
    if isinstance(e, RateLimited):
        retry_after = max(1, round(e.retry_after))
        return HTTPException(
            status_code=429,
            detail={"error": str(e), "retry_after": e.retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    if isinstance(e, QuotaExceeded):
        return HTTPException(status_code=429, detail={"error": str(e)})
    if isinstance(e, PlacesUpstreamError):
        logger.error("places upstream error: %s", e)
        return HTTPException(status_code=502, detail={"error": str(e), "status": e.status})
    return HTTPException(status_code=500, detail={"error": str(e)})


@app.get("/api/health")
async def health(service: PlacesService = Depends(get_places_service)):
    return {"status": "OK" if service.health_check() else "ERROR", "message": "Server is running"}


@app.get("/api/verify-key")
async def verify_key(service: PlacesService = Depends(get_places_service)):
    result = service.verify_key()
    if result["status"] != "OK":
        raise HTTPException(status_code=500, detail=result)
    return result


@app.get("/api/stats")
async def stats(service: PlacesService = Depends(get_places_service)):
    return service.get_stats()


@app.post("/api/stats/reset")
async def stats_reset(service: PlacesService = Depends(get_places_service)):
    stats = service.reset_stats()
    return {"message": "Stats reset successfully", **stats}


@app.get("/api/geocode")
async def geocode(
    address: str | None = Query(None),
    service: PlacesService = Depends(get_places_service),
):
    try:
        return await service.geocode(address)
    except PlacesError as e:
        raise _to_http_error(e)


@app.post("/api/geocode/batch")
async def geocode_batch(body: GeocodeBatchBody, service: PlacesService = Depends(get_places_service)):
    try:
        result = await service.geocode_batch(body.addresses)
    except PlacesError as e:
        raise _to_http_error(e)
    return result.to_dict(key_name="address")


@app.get("/api/places/nearby")
async def places_nearby(
    lat: float | None = Query(None),
    lng: float | None = Query(None),
    radius: float = Query(DEFAULT_RADIUS_M, gt=0, le=50000),
    place_type: str = Query(DEFAULT_PLACE_TYPE, alias="type"),
    pagetoken: str | None = Query(None),
    service: PlacesService = Depends(get_places_service),
):
    try:
        return await service.nearby(lat, lng, radius, place_type, page_token=pagetoken)
    except PlacesError as e:
        raise _to_http_error(e)


@app.get("/api/places/details")
async def places_details(
    placeid: str | None = Query(None),
    fields: str | None = Query(None),
    service: PlacesService = Depends(get_places_service),
):
    field_list = [f for f in (fields or "").split(",") if f] or None
    try:
        return await service.place_details(placeid, field_list)
    except PlacesError as e:
        raise _to_http_error(e)


@app.post("/api/places/details/batch")
async def places_details_batch(body: DetailsBatchBody, service: PlacesService = Depends(get_places_service)):
    try:
        result = await service.place_details_batch(body.placeIds, body.fields)
    except PlacesError as e:
        raise _to_http_error(e)
    return result.to_dict(key_name="placeId")


@app.get("/api/midpoint")
async def find_midpoint(
    address1: str = Query(..., min_length=1),
    address2: str = Query(..., min_length=1),
    radius: float = Query(DEFAULT_RADIUS_M, gt=0, le=50000),
    place_type: str = Query(DEFAULT_PLACE_TYPE, alias="type"),
    service: PlacesService = Depends(get_places_service),
):
    """
    2つの住所の中間地点を求めて、その周辺のお店を返す
    """
    try:
        return await service.find_midpoint(address1, address2, radius, place_type)
    except PlacesError as e:
        raise _to_http_error(e)
    except Exception:
        logger.exception("midpoint request failed")
        raise HTTPException(status_code=500, detail={"error": "Internal server error"})
