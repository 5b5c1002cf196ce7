"""Itinerary shape, JSON extraction and the single repair policy.

Every route that receives an itinerary from the model goes through
:func:`repair_itinerary`. Repairs are structural only: lists are padded with
entries flagged ``placeholder``, text fields are coerced to the declared
types, and missing labels are derived from the trip dates. Prices, ratings
and totals are never invented; ``costSummary`` is computed only from costs
the model actually returned.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, ValidationError

try:
    from .currency import parse_cost
except ImportError:
    from currency import parse_cost  # type: ignore

logger = logging.getLogger(__name__)

MIN_FOOD_ITEMS = 10
MAPS_SEARCH_URL = "https://www.google.com/maps/search/?api=1&query="


class ItineraryParseError(ValueError):
    """The model output is not an itinerary we can repair."""


class Step(BaseModel):
    model_config = ConfigDict(extra="allow")

    time: Optional[str] = None
    text: str
    mode: Optional[str] = None
    cost: Optional[str] = None
    mapLink: Optional[str] = None


class Day(BaseModel):
    model_config = ConfigDict(extra="allow")

    date: str
    title: str
    cost: Optional[str] = None
    steps: List[Step] = []


class Visa(BaseModel):
    model_config = ConfigDict(extra="allow")

    required: Optional[bool] = None
    type: Optional[str] = None
    applicationMethod: Optional[str] = None
    processingTime: Optional[str] = None
    fee: Optional[str] = None
    validityPeriod: Optional[str] = None
    appointmentWarning: Optional[str] = None
    additionalRequirements: List[str] = []


class CurrencyInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    destinationCode: Optional[str] = None
    homeToDestination: Optional[str] = None
    destinationToHome: Optional[str] = None
    lastUpdated: Optional[str] = None
    cashCulture: Optional[str] = None
    tippingNorms: Optional[str] = None
    atmAvailability: Optional[str] = None
    cardAcceptance: Optional[str] = None


class Averages(BaseModel):
    hostel: Optional[Union[float, str]] = None
    midHotel: Optional[Union[float, str]] = None
    highEnd: Optional[Union[float, str]] = None


class FoodItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    note: Optional[str] = None
    rating: Optional[float] = None
    source: str = "unspecified"
    placeholder: bool = False


class PracticalInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    powerPlugType: Optional[str] = None
    powerVoltage: Optional[str] = None
    simCardOptions: List[str] = []
    emergencyNumbers: Dict[str, str] = {}
    commonScams: List[str] = []
    safetyApps: List[str] = []
    healthRequirements: List[str] = []


class DayCost(BaseModel):
    date: str
    destination: float
    home: float


class CostSummary(BaseModel):
    destinationCurrency: str
    homeCurrency: str
    destinationTotal: float
    homeTotal: float
    perDay: List[DayCost] = []


class Itinerary(BaseModel):
    model_config = ConfigDict(extra="allow")

    intro: str = ""
    beforeYouGo: List[str] = []
    visa: Visa = Visa()
    currency: CurrencyInfo = CurrencyInfo()
    averages: Optional[Averages] = None
    weather: str = ""
    cultureTips: List[str] = []
    foodList: List[FoodItem] = []
    practicalInfo: PracticalInfo = PracticalInfo()
    tips: str = ""
    days: List[Day]
    totalCost: Optional[str] = None
    costSummary: Optional[CostSummary] = None
    fallback: bool = False


@dataclass
class TripContext:
    destination: str
    country: str
    start_date: date
    end_date: date
    home_iso: str
    dest_iso: str
    fx: Optional[Dict[str, Any]] = None
    weather: str = ""
    interests: List[str] = field(default_factory=list)

    @property
    def duration(self) -> int:
        return max(1, (self.end_date - self.start_date).days)


def extract_json_object(raw_text: str) -> str:
    """Return the first balanced ``{...}`` block in ``raw_text``, ignoring code fences."""
    if not raw_text:
        raise ItineraryParseError("Empty response from model")
    text = raw_text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text, flags=re.IGNORECASE).strip()
        text = re.sub(r"```$", "", text).strip()
    start = text.find("{")
    if start == -1:
        raise ItineraryParseError("No JSON object found in response")
    depth = 0
    in_string = False
    escape = False
    for index in range(start, len(text)):
        char = text[index]
        if char == '"' and not escape:
            in_string = not in_string
        if in_string and char == "\\" and not escape:
            escape = True
            continue
        escape = False
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    raise ItineraryParseError("Incomplete JSON object in response")


def parse_tool_arguments(raw: Optional[str]) -> Dict[str, Any]:
    if not raw or not raw.strip():
        raise ItineraryParseError("Empty tool-call arguments")
    try:
        data = json.loads(raw)
    except ValueError:
        try:
            data = json.loads(extract_json_object(raw))
        except ValueError as exc:
            raise ItineraryParseError(f"Malformed tool-call JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ItineraryParseError("Tool-call arguments are not a JSON object")
    return data


def generate_map_link(location_text: str) -> str:
    cleaned = re.sub(r"^\d{1,2}:\d{2}\s*[-–]\s*", "", location_text or "").strip()
    return MAPS_SEARCH_URL + quote_plus(cleaned)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list):
        return "\n".join(_as_text(v) for v in value if _as_text(v))
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_as_text(v)}" for k, v in value.items())
    return str(value)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [text for text in (_as_text(v) for v in value) if text]
    if isinstance(value, str):
        parts = re.split(r"\n|;|•", value)
        return [p.strip(" -*\t") for p in parts if p.strip(" -*\t")]
    if isinstance(value, dict):
        return [f"{k}: {_as_text(v)}" for k, v in value.items()]
    return [str(value)]


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        match = re.search(r"\d+(?:\.\d+)?", value.replace(",", ""))
        if match:
            return float(match.group(0))
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "required", "y"):
            return True
        if lowered in ("false", "no", "not required", "visa-free", "visa free", "n"):
            return False
    return None


class _Repairs:
    def __init__(self) -> None:
        self.notes: List[str] = []

    def add(self, note: str) -> None:
        self.notes.append(note)


def _coerce_list_field(data: Dict[str, Any], key: str, repairs: _Repairs) -> None:
    value = data.get(key)
    if value is None or isinstance(value, list) and all(isinstance(v, str) for v in value):
        data[key] = [v.strip() for v in (value or []) if v.strip()]
        return
    data[key] = _as_list(value)
    repairs.add(f"coerced {key} to a list of strings")


def _coerce_text_field(data: Dict[str, Any], key: str, repairs: _Repairs) -> None:
    value = data.get(key)
    if value is None or isinstance(value, str):
        data[key] = (value or "").strip()
        return
    data[key] = _as_text(value)
    repairs.add(f"coerced {key} to text")


def _repair_visa(value: Any, repairs: _Repairs) -> Dict[str, Any]:
    if not isinstance(value, dict):
        if value:
            repairs.add("replaced non-object visa block")
        return {"type": _as_text(value)} if value else {}
    visa = dict(value)
    if "required" in visa and not isinstance(visa["required"], bool):
        visa["required"] = _as_bool(visa["required"])
        repairs.add("coerced visa.required to a boolean")
    for key in ("type", "applicationMethod", "processingTime", "fee", "validityPeriod", "appointmentWarning"):
        if key in visa and visa[key] is not None and not isinstance(visa[key], str):
            visa[key] = _as_text(visa[key])
    _coerce_list_field(visa, "additionalRequirements", repairs)
    return visa


def _repair_currency(value: Any, context: TripContext, repairs: _Repairs) -> Dict[str, Any]:
    currency = dict(value) if isinstance(value, dict) else {}
    for key, item in list(currency.items()):
        if item is not None and not isinstance(item, str):
            currency[key] = _as_text(item)
    fx = context.fx or {}
    filled = {
        "destinationCode": context.dest_iso,
        "homeToDestination": f"1 {context.home_iso} = {fx.get('rate', 1.0):.4f} {context.dest_iso}",
        "destinationToHome": f"1 {context.dest_iso} = {fx.get('inverse', 1.0):.4f} {context.home_iso}",
        "lastUpdated": fx.get("date") or context.start_date.isoformat(),
    }
    for key, default in filled.items():
        if not currency.get(key):
            currency[key] = default
            repairs.add(f"filled currency.{key} from the looked-up rate")
    return currency


def _repair_practical_info(value: Any, repairs: _Repairs) -> Dict[str, Any]:
    if not isinstance(value, dict):
        if value:
            repairs.add("replaced non-object practicalInfo block")
        return {}
    info = dict(value)
    for key in ("powerPlugType", "powerVoltage"):
        if key in info and info[key] is not None and not isinstance(info[key], str):
            info[key] = _as_text(info[key])
    for key in ("simCardOptions", "commonScams", "safetyApps", "healthRequirements"):
        _coerce_list_field(info, key, repairs)
    numbers = info.get("emergencyNumbers")
    if isinstance(numbers, dict):
        if not all(isinstance(v, str) for v in numbers.values()):
            repairs.add("coerced emergency numbers to strings")
        info["emergencyNumbers"] = {str(k): _as_text(v) for k, v in numbers.items()}
    elif numbers:
        info["emergencyNumbers"] = {"general": _as_text(numbers)}
        repairs.add("wrapped emergency numbers into a mapping")
    else:
        info["emergencyNumbers"] = {}
    return info


def _repair_averages(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, dict):
        return None
    averages: Dict[str, Any] = {}
    for key in ("hostel", "midHotel", "highEnd"):
        item = value.get(key)
        if isinstance(item, (int, float)) and not isinstance(item, bool):
            averages[key] = float(item)
        elif isinstance(item, str) and item.strip():
            averages[key] = item.strip()
    return averages


def _repair_step(raw: Any, repairs: _Repairs) -> Optional[Dict[str, Any]]:
    if isinstance(raw, str):
        raw = {"text": raw}
    if not isinstance(raw, dict):
        repairs.add("dropped a non-object step")
        return None
    step = dict(raw)
    text = _as_text(step.get("text") or step.get("activity") or step.get("description"))
    if not text:
        repairs.add("dropped a step without text")
        return None
    step["text"] = text
    for key in ("time", "mode", "cost"):
        if key in step and step[key] is not None and not isinstance(step[key], str):
            step[key] = _as_text(step[key])
    if not step.get("mapLink"):
        step["mapLink"] = generate_map_link(text)
    return step


def _repair_days(value: Any, context: TripContext, repairs: _Repairs) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise ItineraryParseError("Itinerary has no days list")
    days: List[Dict[str, Any]] = []
    for raw in value:
        if not isinstance(raw, dict):
            repairs.add("dropped a non-object day")
            continue
        index = len(days)
        day = dict(raw)
        if not isinstance(day.get("date"), str) or not day["date"].strip():
            day["date"] = (context.start_date + timedelta(days=index)).isoformat()
            repairs.add(f"derived date for day {index + 1}")
        if not isinstance(day.get("title"), str) or not day["title"].strip():
            day["title"] = f"Day {index + 1}"
            repairs.add(f"labelled day {index + 1}")
        if "cost" in day and day["cost"] is not None and not isinstance(day["cost"], str):
            day["cost"] = _as_text(day["cost"])
        steps = day.get("steps")
        if not isinstance(steps, list):
            steps = []
        day["steps"] = [s for s in (_repair_step(step, repairs) for step in steps) if s]
        days.append(day)
    return days


def _placeholder_food(position: int, destination: str) -> Dict[str, Any]:
    return {
        "name": f"Local pick #{position} in {destination}",
        "note": "Placeholder: ask your host or a local guide for a recommendation.",
        "rating": None,
        "source": "placeholder",
        "placeholder": True,
    }


def _repair_food(value: Any, context: TripContext, repairs: _Repairs) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    for raw in value if isinstance(value, list) else []:
        if isinstance(raw, str):
            raw = {"name": raw}
        if not isinstance(raw, dict) or not _as_text(raw.get("name")):
            repairs.add("dropped a food entry without a name")
            continue
        item = dict(raw)
        item["name"] = _as_text(item["name"])
        if item.get("note") is not None and not isinstance(item["note"], str):
            item["note"] = _as_text(item["note"])
        item["rating"] = _as_number(item.get("rating"))
        item["source"] = _as_text(item.get("source")) or "unspecified"
        items.append(item)
    if len(items) < MIN_FOOD_ITEMS:
        missing = MIN_FOOD_ITEMS - len(items)
        for _ in range(missing):
            items.append(_placeholder_food(len(items) + 1, context.destination))
        repairs.add(f"padded foodList with {missing} placeholder entries")
    return items


def _cost_summary(days: List[Dict[str, Any]], context: TripContext) -> Optional[Dict[str, Any]]:
    per_day: List[Dict[str, Any]] = []
    for day in days:
        costs = [step.get("cost") for step in day["steps"] if step.get("cost")]
        if not costs and day.get("cost"):
            costs = [day["cost"]]
        if not costs:
            continue
        parsed = [parse_cost(cost, context.dest_iso, context.home_iso) for cost in costs]
        per_day.append(
            {
                "date": day["date"],
                "destination": round(sum(p.dest for p in parsed), 2),
                "home": round(sum(p.home for p in parsed), 2),
            }
        )
    if not per_day:
        return None
    return {
        "destinationCurrency": context.dest_iso,
        "homeCurrency": context.home_iso,
        "destinationTotal": round(sum(d["destination"] for d in per_day), 2),
        "homeTotal": round(sum(d["home"] for d in per_day), 2),
        "perDay": per_day,
    }


def repair_itinerary(data: Dict[str, Any], context: TripContext) -> Tuple[Itinerary, List[str]]:
    """Validate ``data`` against :class:`Itinerary`, applying the repair policy first."""
    if not isinstance(data, dict):
        raise ItineraryParseError("Itinerary is not a JSON object")
    repairs = _Repairs()
    fixed = dict(data)

    for key in ("intro", "weather", "tips"):
        _coerce_text_field(fixed, key, repairs)
    if not fixed["weather"] and context.weather:
        fixed["weather"] = context.weather
        repairs.add("filled weather from the forecast service")
    for key in ("beforeYouGo", "cultureTips"):
        _coerce_list_field(fixed, key, repairs)
    if fixed.get("totalCost") is not None and not isinstance(fixed["totalCost"], str):
        fixed["totalCost"] = _as_text(fixed["totalCost"])

    fixed["visa"] = _repair_visa(fixed.get("visa"), repairs)
    fixed["currency"] = _repair_currency(fixed.get("currency"), context, repairs)
    fixed["practicalInfo"] = _repair_practical_info(fixed.get("practicalInfo"), repairs)
    fixed["averages"] = _repair_averages(fixed.get("averages"))
    fixed["days"] = _repair_days(fixed.get("days"), context, repairs)
    fixed["foodList"] = _repair_food(fixed.get("foodList"), context, repairs)
    fixed["costSummary"] = _cost_summary(fixed["days"], context)

    try:
        itinerary = Itinerary.model_validate(fixed)
    except ValidationError as exc:
        raise ItineraryParseError(f"Itinerary failed validation: {exc.error_count()} errors") from exc
    if repairs.notes:
        logger.info("Repaired itinerary for %s: %s", context.destination, "; ".join(repairs.notes))
    return itinerary, repairs.notes


def _fallback_day(context: TripContext, index: int) -> Dict[str, Any]:
    city = context.destination
    return {
        "date": (context.start_date + timedelta(days=index)).isoformat(),
        "title": "Arrival and first impressions" if index == 0 else f"Exploring {city}, day {index + 1}",
        "steps": [
            {"time": "08:30", "text": f"Breakfast near your accommodation in {city}"},
            {"time": "10:00", "text": f"Walk the historic centre of {city}"},
            {"time": "12:30", "text": f"Lunch at a busy local spot in {city}"},
            {"time": "14:30", "text": f"Visit a main museum or landmark in {city}"},
            {"time": "19:00", "text": f"Dinner in a popular neighbourhood of {city}"},
        ],
    }


def fallback_itinerary(context: TripContext) -> Dict[str, Any]:
    """A generic plan returned when the model is unavailable."""
    data = {
        "intro": (
            f"Our planner is busy right now, so here is a simple starter plan for {context.destination}. "
            "Try again in a few minutes for a personalised itinerary."
        ),
        "beforeYouGo": [
            f"Check visa rules for {context.country or 'your'} passport holders with the official embassy site",
            "Buy travel insurance that covers medical care abroad",
            "Tell your bank about your travel dates",
            "Save offline maps of the city",
        ],
        "visa": {"type": "Check with the destination's embassy or consulate"},
        "weather": context.weather,
        "cultureTips": ["Learn a few local greetings", "Dress modestly at religious sites"],
        "tips": "Keep some cash in the local currency for small purchases.",
        "days": [_fallback_day(context, index) for index in range(context.duration)],
        "foodList": [],
    }
    itinerary, _ = repair_itinerary(data, context)
    itinerary.fallback = True
    return itinerary.model_dump()
