import logging
import os
from functools import lru_cache
from typing import Optional, Tuple

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

PLACES_URL = "https://places.googleapis.com/v1/places:searchText"
NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
UA = "tripcraft/1.0 (+https://tripcraft.app)"
GOOGLE_KEY = os.getenv("GOOGLE_MAPS_API_KEY", "").strip()

NOM_HEADERS = {"User-Agent": UA, "Accept-Language": "en"}
HTTP_TIMEOUT = 10.0


class GeocodeError(Exception):
    pass


def _search_google(city: str) -> Optional[Tuple[float, float]]:
    headers = {
        "X-Goog-Api-Key": GOOGLE_KEY,
        "X-Goog-FieldMask": "places.location",
        "Content-Type": "application/json",
    }
    payload = {"textQuery": city, "maxResultCount": 1}
    with httpx.Client(timeout=HTTP_TIMEOUT) as c:
        r = c.post(PLACES_URL, headers=headers, json=payload)
    if r.status_code != 200:
        logger.warning("Places lookup for %s failed with status %s", city, r.status_code)
        return None
    p = (r.json().get("places") or [{}])[0]
    loc = p.get("location") or {}
    lat = float(loc.get("latitude", 0))
    lng = float(loc.get("longitude", 0))
    if lat or lng:
        return lat, lng
    return None


def _search_nominatim(city: str) -> Optional[Tuple[float, float]]:
    q = {"q": city, "format": "json", "limit": 1}
    with httpx.Client(timeout=HTTP_TIMEOUT, headers=NOM_HEADERS) as c:
        r = c.get(NOMINATIM_URL, params=q)
    results = r.json() if r.status_code == 200 else []
    if results:
        rec = results[0]
        return float(rec["lat"]), float(rec["lon"])
    return None


@lru_cache(maxsize=256)
def city_center(city: str) -> Tuple[float, float]:
    """Latitude and longitude for ``city``; Google Places when a key is set, otherwise Nominatim."""
    label = " ".join((city or "").split())
    if not label:
        raise GeocodeError("City is required")
    try:
        found = _search_google(label) if GOOGLE_KEY else None
        if found is None:
            found = _search_nominatim(label)
    except (httpx.HTTPError, ValueError, KeyError) as exc:
        raise GeocodeError(f"Geocoding failed for {label}: {exc}") from exc
    if found is None:
        raise GeocodeError(f"No coordinates found for {label}")
    return found
