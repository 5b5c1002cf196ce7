import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv
from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

try:
    from .geocode import GeocodeError, city_center
except ImportError:
    from geocode import GeocodeError, city_center  # type: ignore

load_dotenv()

WEATHER_API_BASE = "https://weather.googleapis.com/v1"
DEFAULT_FORECAST_DAYS = 5
MAX_FORECAST_DAYS = 10

router = APIRouter()
logger = logging.getLogger(__name__)


class WeatherError(Exception):
    pass


def _resolve_weather_api_key() -> str:
    key = (os.getenv("GOOGLE_MAPS_API_KEY") or os.getenv("MAPS_API_KEY") or "").strip()
    if not key:
        raise WeatherError("GOOGLE_MAPS_API_KEY is required for the Google Weather API.")
    return key


def _weather_request(endpoint: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    params = dict(parameters)
    params["key"] = _resolve_weather_api_key()
    url = f"{WEATHER_API_BASE}/{endpoint}:lookup"
    logger.info("Weather API request -> %s", url)
    try:
        response = requests.get(url, params=params, timeout=10)
    except requests.RequestException as exc:
        raise WeatherError(f"Weather API request failed: {exc}") from exc
    if response.status_code >= 400:
        raise WeatherError(f"Weather API request failed ({response.status_code}): {response.text}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise WeatherError("Weather API returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise WeatherError("Weather API returned a non-object body")
    return payload


def _format_display_date(display_date: Dict[str, Any]) -> str:
    year = display_date.get("year")
    month = display_date.get("month")
    day = display_date.get("day")
    if all(isinstance(value, int) and value for value in (year, month, day)):
        return f"{year:04d}-{month:02d}-{day:02d}"
    return ""


def _condition_text(part: Dict[str, Any]) -> str:
    condition = part.get("weatherCondition") or {}
    if isinstance(condition, dict):
        description = condition.get("description")
        if isinstance(description, dict) and description.get("text"):
            return description["text"]
        if condition.get("type"):
            return str(condition["type"]).replace("_", " ").capitalize()
    return "Unknown"


def _degrees(value: Any) -> Optional[float]:
    degrees = (value or {}).get("degrees")
    if isinstance(degrees, (int, float)):
        return round(float(degrees), 1)
    return None


def parse_forecast_days(forecast_days: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    formatted: List[Dict[str, Any]] = []
    for item in forecast_days:
        part = item.get("daytimeForecast") or item.get("nighttimeForecast") or {}
        percent = ((part.get("precipitation") or {}).get("probability") or {}).get("percent")
        formatted.append(
            {
                "date": _format_display_date(item.get("displayDate") or {}),
                "temp_min": _degrees(item.get("minTemperature")),
                "temp_max": _degrees(item.get("maxTemperature")),
                "weather": _condition_text(part),
                "pop": percent / 100.0 if isinstance(percent, (int, float)) else 0.0,
            }
        )
    return formatted


def fetch_forecast(city: str, days: int = DEFAULT_FORECAST_DAYS) -> List[Dict[str, Any]]:
    try:
        lat, lon = city_center(city)
    except GeocodeError as exc:
        raise WeatherError(str(exc)) from exc
    raw = _weather_request(
        "forecast/days",
        {
            "location.latitude": lat,
            "location.longitude": lon,
            "languageCode": "en-US",
            "days": max(1, min(days, MAX_FORECAST_DAYS)),
        },
    )
    forecast_days = raw.get("forecastDays") or []
    if not isinstance(forecast_days, list):
        forecast_days = []
    return parse_forecast_days(forecast_days)


def summarize_forecast(forecast: List[Dict[str, Any]]) -> str:
    if not forecast:
        return ""
    lows = [d["temp_min"] for d in forecast if d.get("temp_min") is not None]
    highs = [d["temp_max"] for d in forecast if d.get("temp_max") is not None]
    conditions: Dict[str, int] = {}
    for d in forecast:
        conditions[d["weather"]] = conditions.get(d["weather"], 0) + 1
    dominant = max(conditions, key=conditions.get)
    parts = [f"Next {len(forecast)} days: mostly {dominant.lower()}"]
    if lows and highs:
        parts.append(f"{min(lows):.0f}-{max(highs):.0f}°C")
    wettest = max(d.get("pop") or 0.0 for d in forecast)
    if wettest >= 0.3:
        parts.append(f"up to {wettest:.0%} chance of rain")
    return ", ".join(parts) + "."


def forecast_summary(city: str, days: int = DEFAULT_FORECAST_DAYS) -> str:
    """One-line outlook for prompts; any failure yields an empty string."""
    try:
        return summarize_forecast(fetch_forecast(city, days))
    except WeatherError as exc:
        logger.warning("Weather enrichment skipped for %s: %s", city, exc)
    except Exception as exc:
        logger.warning("Weather enrichment failed for %s: %s", city, exc, exc_info=True)
    return ""


@router.get("/api/v1/weather-forecast")
def weather_forecast(
    city: str = Query(..., description="Destination city"),
    days: int = Query(DEFAULT_FORECAST_DAYS, ge=1, le=MAX_FORECAST_DAYS),
):
    try:
        forecast = fetch_forecast(city, days=days)
    except WeatherError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    payload = {
        "city": city,
        "days": forecast,
        "summary": summarize_forecast(forecast),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "source": "google-weather",
    }
    return JSONResponse(payload)
