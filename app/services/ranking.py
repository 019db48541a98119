from app.services.geometry import flat_distance_km


def to_place_item(r: dict, origin_lat: float, origin_lng: float) -> dict | None:
    """Nearby Search の result を一覧表示用のフラットな dict にする"""
    loc = (r.get("geometry") or {}).get("location") or {}
    place_lat = loc.get("lat")
    place_lng = loc.get("lng")
    place_id = r.get("place_id")

    if place_lat is None or place_lng is None or not place_id:
        return None

    km = flat_distance_km(origin_lat, origin_lng, place_lat, place_lng)

    photos = r.get("photos") or []
    photo_ref = (photos[0] or {}).get("photo_reference") if photos else None

    return {
        "place_id": place_id,
        "name": r.get("name"),
        "vicinity": r.get("vicinity"),
        "lat": place_lat,
        "lng": place_lng,
        "distance_m": int(round(km * 1000)),
        "rating": r.get("rating"),
        "rating_count": r.get("user_ratings_total"),
        "open_now": (r.get("opening_hours") or {}).get("open_now"),
        "photo_reference": photo_ref,
        "maps_url": f"https://www.google.com/maps/search/?api=1&query_place_id={place_id}",
    }


def sort_items(items: list[dict]) -> list[dict]:
    return sorted(
        items,
        key=lambda x: (
            not (x.get("open_now") is True),
            -(x.get("rating") or 0),
            -(x.get("rating_count") or 0),
        )
    )
