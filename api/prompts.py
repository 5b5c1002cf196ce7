from typing import Any, Dict, List

from google.genai import types

try:
    from .itinerary import MIN_FOOD_ITEMS, TripContext
except ImportError:
    from itinerary import MIN_FOOD_ITEMS, TripContext  # type: ignore

TOOL_NAME = "generate_itinerary"


def _string_list() -> Dict[str, Any]:
    return {"type": "ARRAY", "items": {"type": "STRING"}}


def _itinerary_parameters() -> Dict[str, Any]:
    return {
        "type": "OBJECT",
        "properties": {
            "intro": {"type": "STRING"},
            "beforeYouGo": _string_list(),
            "visa": {
                "type": "OBJECT",
                "properties": {
                    "required": {"type": "BOOLEAN"},
                    "type": {"type": "STRING"},
                    "applicationMethod": {"type": "STRING"},
                    "processingTime": {"type": "STRING"},
                    "fee": {"type": "STRING"},
                    "validityPeriod": {"type": "STRING"},
                    "appointmentWarning": {"type": "STRING"},
                    "additionalRequirements": _string_list(),
                },
                "required": ["required", "type"],
            },
            "currency": {
                "type": "OBJECT",
                "properties": {
                    "destinationCode": {"type": "STRING"},
                    "homeToDestination": {"type": "STRING"},
                    "destinationToHome": {"type": "STRING"},
                    "cashCulture": {"type": "STRING"},
                    "tippingNorms": {"type": "STRING"},
                    "atmAvailability": {"type": "STRING"},
                    "cardAcceptance": {"type": "STRING"},
                },
                "required": ["destinationCode", "homeToDestination", "destinationToHome"],
            },
            "averages": {
                "type": "OBJECT",
                "properties": {
                    "hostel": {"type": "NUMBER"},
                    "midHotel": {"type": "NUMBER"},
                    "highEnd": {"type": "NUMBER"},
                },
            },
            "weather": {"type": "STRING"},
            "cultureTips": _string_list(),
            "foodList": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "name": {"type": "STRING"},
                        "note": {"type": "STRING"},
                        "rating": {"type": "NUMBER"},
                        "source": {"type": "STRING"},
                    },
                    "required": ["name", "rating", "source"],
                },
            },
            "practicalInfo": {
                "type": "OBJECT",
                "properties": {
                    "powerPlugType": {"type": "STRING"},
                    "powerVoltage": {"type": "STRING"},
                    "simCardOptions": _string_list(),
                    "emergencyNumbers": {
                        "type": "OBJECT",
                        "properties": {
                            "police": {"type": "STRING"},
                            "medical": {"type": "STRING"},
                            "fire": {"type": "STRING"},
                            "tourist": {"type": "STRING"},
                        },
                    },
                    "commonScams": _string_list(),
                    "safetyApps": _string_list(),
                    "healthRequirements": _string_list(),
                },
            },
            "tips": {"type": "STRING"},
            "days": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "date": {"type": "STRING"},
                        "title": {"type": "STRING"},
                        "cost": {"type": "STRING"},
                        "steps": {
                            "type": "ARRAY",
                            "items": {
                                "type": "OBJECT",
                                "properties": {
                                    "time": {"type": "STRING"},
                                    "text": {"type": "STRING"},
                                    "mode": {"type": "STRING"},
                                    "cost": {"type": "STRING"},
                                },
                                "required": ["time", "text"],
                            },
                        },
                    },
                    "required": ["date", "title", "steps"],
                },
            },
            "totalCost": {"type": "STRING"},
        },
        "required": ["intro", "beforeYouGo", "visa", "currency", "cultureTips", "foodList", "days"],
    }


def itinerary_tool() -> types.FunctionDeclaration:
    return types.FunctionDeclaration(
        name=TOOL_NAME,
        description="Return the complete travel itinerary.",
        parameters=_itinerary_parameters(),
    )


def build_system_prompt() -> str:
    return (
        "You are an expert travel consultant. "
        f"Respond only by calling the function '{TOOL_NAME}' with arguments that follow its schema. "
        "Do not add properties that are not in the schema."
    )


def _join(values: List[str], default: str) -> str:
    cleaned = [v.strip() for v in values if isinstance(v, str) and v.strip()]
    return ", ".join(cleaned) or default


def build_user_prompt(form: Any, context: TripContext) -> str:
    fx = context.fx or {}
    lines = [
        f"Write a 2-sentence snapshot of what makes {context.destination} special,",
        f"then plan a {context.duration}-day trip for a {context.country} citizen.",
        "",
        "TRIP",
        f"Dates: {context.start_date.isoformat()} to {context.end_date.isoformat()} ({context.duration} days)",
        f"Budget: {form.dailyBudget} {context.home_iso} per day",
        f"Group: {form.groupType or 'Not specified'}, style: {form.travelVibe or 'Balanced'}",
        f"Interests: {_join(form.interests, 'General sightseeing')}",
        f"Diet: {form.dietary or 'None'}",
        f"Accommodation: {form.accommodation or 'Any'}, transport: {form.transportPref or 'Any'}",
        f"Occasion: {form.occasion or 'None'}",
        f"Must see: {form.mustSee or 'None specified'}. Avoid: {form.avoid or 'None specified'}",
        "",
        "CURRENCY",
        f"1 {context.home_iso} = {fx.get('rate', 1.0):.4f} {context.dest_iso}",
        f"1 {context.dest_iso} = {fx.get('inverse', 1.0):.4f} {context.home_iso}",
        fx.get("note") or "Rate unavailable",
    ]
    if context.weather:
        lines += ["", "WEATHER OUTLOOK", context.weather]
    lines += [
        "",
        "RULES",
        f"- Visa details are for {context.country} passport holders: status, type, fee in both currencies, how to apply.",
        "- Before-you-go: 8-10 destination-specific actions.",
        f"- At least {MIN_FOOD_ITEMS} food items, each with rating and source.",
        f'- Every price shows both currencies: "{context.dest_iso} amount ({context.home_iso} amount)".',
        "- One day object per trip day, steps with 24h times.",
        "- Emergency numbers are strings.",
    ]
    return "\n".join(lines)
