import logging
import os
from typing import Any, Dict, List

import httpx
from dotenv import load_dotenv
from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

load_dotenv()

logger = logging.getLogger(__name__)

GEODB_URL = "https://wft-geo-db.p.rapidapi.com/v1/geo/cities"
GEODB_HOST = "wft-geo-db.p.rapidapi.com"
GEODB_API_KEY = os.getenv("GEODB_API_KEY", "").strip()
HTTP_TIMEOUT = 6.0
API_PREFIX = "/api/v1"

router = APIRouter()


def _demo_suggestions(q: str) -> List[Dict[str, str]]:
    return [{"label": f"{q}, Demo Country", "value": f"{q}, Demo Country"}]


def _to_suggestion(city: Dict[str, Any]) -> Dict[str, str]:
    parts = [city.get("city"), city.get("region"), city.get("country")]
    return {
        "label": ", ".join(p for p in parts if p),
        "value": ", ".join(p for p in (city.get("city"), city.get("country")) if p),
    }


def search_cities(q: str, limit: int = 10) -> List[Dict[str, str]]:
    if not GEODB_API_KEY:
        logger.info("GEODB_API_KEY not set, serving demo suggestions")
        return _demo_suggestions(q)
    headers = {"X-RapidAPI-Key": GEODB_API_KEY, "X-RapidAPI-Host": GEODB_HOST}
    try:
        with httpx.Client(timeout=HTTP_TIMEOUT, headers=headers) as c:
            r = c.get(GEODB_URL, params={"limit": limit, "namePrefix": q})
        if r.status_code != 200:
            logger.warning("City lookup failed with status %s", r.status_code)
            return _demo_suggestions(q)
        payload = r.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("City lookup failed: %s", exc)
        return _demo_suggestions(q)
    if not isinstance(payload, dict):
        logger.warning("City lookup returned a non-object body")
        return _demo_suggestions(q)
    data = payload.get("data") or []
    if not isinstance(data, list):
        return _demo_suggestions(q)
    return [_to_suggestion(c) for c in data if isinstance(c, dict) and c.get("city")]


@router.get(f"{API_PREFIX}/cities")
def cities(q: str = Query("", description="City name prefix")):
    q = q.strip()
    if not q:
        return JSONResponse([])
    return JSONResponse(search_cities(q))
