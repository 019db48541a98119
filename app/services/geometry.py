import math


# NOTE:
# 距離は「厳密な道のり」ではなく、表示用として十分な簡易距離でOK
def flat_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    km_per_deg_lat = 111.32
    km_per_deg_lng = 111.32 * math.cos(math.radians(lat1))
    dx = (lng2 - lng1) * km_per_deg_lng
    dy = (lat2 - lat1) * km_per_deg_lat
    return math.sqrt(dx * dx + dy * dy)


def midpoint(lat1: float, lng1: float, lat2: float, lng2: float) -> tuple[float, float]:
    # 2地点の単純平均（1マイル圏の検索なので球面補正はしない）
    return ((lat1 + lat2) / 2, (lng1 + lng2) / 2)


def first_location(geocode_payload: dict) -> tuple[float, float] | None:
    results = geocode_payload.get("results") or []
    if not results:
        return None
    loc = (results[0].get("geometry") or {}).get("location") or {}
    lat = loc.get("lat")
    lng = loc.get("lng")
    if lat is None or lng is None:
        return None
    return (float(lat), float(lng))
