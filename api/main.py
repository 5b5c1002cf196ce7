# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

try:
    from .currency import currency_code
    from .errorlog import append_error
    from .fx import FxClient, normalize_code
    from .itinerary import ItineraryParseError, TripContext, fallback_itinerary, parse_tool_arguments, repair_itinerary
    from .llm import LLMClient, LLMRequestError, LLMUnavailableError
    from .prompts import build_system_prompt, build_user_prompt, itinerary_tool
    from .weather import forecast_summary
except ImportError:
    from currency import currency_code  # type: ignore
    from errorlog import append_error  # type: ignore
    from fx import FxClient, normalize_code  # type: ignore
    from itinerary import ItineraryParseError, TripContext, fallback_itinerary, parse_tool_arguments, repair_itinerary  # type: ignore
    from llm import LLMClient, LLMRequestError, LLMUnavailableError  # type: ignore
    from prompts import build_system_prompt, build_user_prompt, itinerary_tool  # type: ignore
    from weather import forecast_summary  # type: ignore

load_dotenv()

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
MAX_TRIP_DAYS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    fx_client = getattr(app.state, "fx_client", None)
    if fx_client is not None:
        fx_client.close()
        app.state.fx_client = None


app = FastAPI(title="TripCraft API", version="0.1.0", lifespan=lifespan)

try:
    from .weather import router as weather_router
except ImportError:
    from weather import router as weather_router
app.include_router(weather_router)

try:
    from .cities import router as cities_router
except ImportError:
    from cities import router as cities_router
app.include_router(cities_router)

_cors_origins = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in _cors_origins if origin.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _date_part(value: Any) -> Any:
    # Browsers send full ISO timestamps for date pickers.
    if isinstance(value, str) and "T" in value:
        return value.split("T", 1)[0]
    return value


class DateRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: date = Field(alias="from")
    end: date = Field(alias="to")

    @field_validator("start", "end", mode="before")
    @classmethod
    def strip_time(cls, value: Any) -> Any:
        return _date_part(value)

    @model_validator(mode="after")
    def check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("End date must not be before start date")
        if (self.end - self.start).days > MAX_TRIP_DAYS:
            raise ValueError(f"Trips are limited to {MAX_TRIP_DAYS} days")
        return self


class TripForm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    destination: str = Field(min_length=1)
    country: str = ""
    dateRange: DateRange
    dailyBudget: float = Field(
        default=100,
        gt=0,
        validation_alias=AliasChoices("dailyBudget", "budgetPerDay"),
    )
    groupType: str = ""
    travelVibe: str = ""
    interests: List[str] = []
    dietary: str = ""
    accommodation: str = ""
    transportPref: str = ""
    occasion: str = ""
    mustSee: Optional[str] = None
    avoid: Optional[str] = None

    @field_validator("destination")
    @classmethod
    def ensure_destination(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Destination is required")
        return value.strip()


def get_fx_client(request: Request) -> FxClient:
    client = getattr(request.app.state, "fx_client", None)
    if client is None:
        client = FxClient()
        request.app.state.fx_client = client
    return client


def get_llm_client(request: Request) -> LLMClient:
    client = getattr(request.app.state, "llm_client", None)
    if client is None:
        client = LLMClient()
        request.app.state.llm_client = client
    return client


def get_weather_lookup() -> Callable[[str], str]:
    return forecast_summary


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    append_error(exc, "bad-request")
    details = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse({"error": "Invalid request", "details": details}, status_code=400)


def build_trip_context(
    form: TripForm,
    fx_client: FxClient,
    weather_lookup: Callable[[str], str],
) -> TripContext:
    home_iso = currency_code(form.country)
    dest_iso = currency_code(form.destination)
    fx = fx_client.quote(home_iso, dest_iso)
    weather = weather_lookup(form.destination)
    return TripContext(
        destination=form.destination,
        country=form.country or "international",
        start_date=form.dateRange.start,
        end_date=form.dateRange.end,
        home_iso=home_iso,
        dest_iso=dest_iso,
        fx=fx,
        weather=weather,
        interests=list(form.interests),
    )


def _fallback_response(context: TripContext, status_code: int, message: str) -> JSONResponse:
    payload = fallback_itinerary(context)
    payload["error"] = message
    payload["meta"] = {
        "source": "fallback",
        "fx": context.fx,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(payload, status_code=status_code)


@app.get(f"{API_PREFIX}/health")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post(f"{API_PREFIX}/itinerary")
def generate_itinerary(
    form: TripForm,
    fx_client: FxClient = Depends(get_fx_client),
    llm: LLMClient = Depends(get_llm_client),
    weather_lookup: Callable[[str], str] = Depends(get_weather_lookup),
):
    context = build_trip_context(form, fx_client, weather_lookup)

    try:
        raw_args = llm.complete_tool_call(
            build_system_prompt(),
            build_user_prompt(form, context),
            itinerary_tool(),
        )
    except LLMRequestError as exc:
        logger.error("Gemini rejected the itinerary request: %s", exc)
        append_error(exc, "llm-rejected")
        return _fallback_response(context, 502, "AI service rejected the request. Showing a starter plan.")
    except LLMUnavailableError as exc:
        logger.error("Gemini unavailable: %s", exc)
        append_error(exc, "llm-unavailable")
        return _fallback_response(context, 503, "AI service temporarily unavailable. Please try again.")

    try:
        itinerary, repairs = repair_itinerary(parse_tool_arguments(raw_args), context)
    except ItineraryParseError as exc:
        logger.error("Unusable itinerary JSON: %s", exc)
        append_error(exc, "json-parse")
        return JSONResponse({"error": "Malformed AI JSON, please retry."}, status_code=500)

    payload: Dict[str, Any] = itinerary.model_dump()
    payload["meta"] = {
        "source": "gemini",
        "model": llm.model,
        "fx": context.fx,
        "repairs": repairs,
        "durationDays": context.duration,
        "generatedAt": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(payload)


@app.get(f"{API_PREFIX}/fx-rate")
def fx_rate(
    base: str = Query(..., description="ISO-4217 base currency"),
    quote: str = Query(..., description="ISO-4217 quote currency"),
    fx_client: FxClient = Depends(get_fx_client),
):
    result = fx_client.get_rate(base, quote)
    return JSONResponse(
        {
            "base": normalize_code(base),
            "quote": normalize_code(quote),
            **result.to_dict(),
        }
    )
