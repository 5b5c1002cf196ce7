"""Tests for itinerary parsing, the repair policy and the fallback plan."""
import json

import pytest

from api.itinerary import (
    MIN_FOOD_ITEMS,
    ItineraryParseError,
    extract_json_object,
    fallback_itinerary,
    generate_map_link,
    parse_tool_arguments,
    repair_itinerary,
)


def model_output(**overrides):
    data = {
        "intro": "Cairo blends pharaonic wonders with a buzzing modern street life.",
        "beforeYouGo": ["Get an e-visa", "Buy a local SIM"],
        "visa": {"required": True, "type": "eVisa", "fee": "25 USD (92 AED)"},
        "currency": {
            "destinationCode": "EGP",
            "homeToDestination": "1 AED = 13.25 EGP",
            "destinationToHome": "1 EGP = 0.0755 AED",
            "lastUpdated": "2026-02-27",
        },
        "cultureTips": ["Dress modestly at mosques"],
        "weather": "Warm, dry days and cool evenings.",
        "foodList": [{"name": f"Dish {i}", "rating": 4.5, "source": "Google"} for i in range(12)],
        "days": [
            {
                "date": "2026-03-01",
                "title": "Giza",
                "steps": [
                    {"time": "08:00", "text": "Pyramids of Giza", "cost": "540 EGP (41 AED)"},
                    {"time": "13:00", "text": "Lunch at Abou Shakra", "cost": "300 EGP (23 AED)"},
                ],
            },
            {
                "date": "2026-03-02",
                "title": "Islamic Cairo",
                "steps": [{"time": "09:00", "text": "Khan el-Khalili", "cost": "Free"}],
            },
        ],
    }
    data.update(overrides)
    return data


class TestParseToolArguments:
    def test_plain_json(self):
        assert parse_tool_arguments('{"days": []}') == {"days": []}

    def test_fenced_json(self):
        raw = '```json\n{"intro": "x", "days": []}\n```'
        assert parse_tool_arguments(raw) == {"intro": "x", "days": []}

    def test_json_embedded_in_prose(self):
        raw = 'Here you go: {"intro": "a {brace} inside", "days": []} thanks'
        assert parse_tool_arguments(raw)["intro"] == "a {brace} inside"

    @pytest.mark.parametrize("raw", [None, "", "   ", "no json here", "[1, 2]", '{"days": [1, 2'])
    def test_rejects_unusable(self, raw):
        with pytest.raises(ItineraryParseError):
            parse_tool_arguments(raw)

    def test_extract_handles_escaped_quotes(self):
        text = '{"a": "say \\"hi\\" {"}'
        assert json.loads(extract_json_object(text)) == {"a": 'say "hi" {'}


class TestRepairPolicy:
    def test_well_formed_output_needs_no_repairs(self, cairo_context):
        itinerary, repairs = repair_itinerary(model_output(), cairo_context)
        assert repairs == []
        assert len(itinerary.days) == 2
        assert itinerary.visa.required is True
        assert len(itinerary.foodList) == 12

    def test_missing_days_is_rejected(self, cairo_context):
        data = model_output()
        del data["days"]
        with pytest.raises(ItineraryParseError):
            repair_itinerary(data, cairo_context)

    def test_food_list_padded_with_marked_placeholders(self, cairo_context):
        data = model_output(foodList=[{"name": "Koshari", "rating": 4.8, "source": "Abou Tarek"}])
        itinerary, repairs = repair_itinerary(data, cairo_context)
        assert len(itinerary.foodList) == MIN_FOOD_ITEMS
        assert itinerary.foodList[0].name == "Koshari"
        padding = itinerary.foodList[1:]
        assert all(item.placeholder for item in padding)
        assert all(item.rating is None for item in padding)
        assert all(item.source == "placeholder" for item in padding)
        assert any("padded foodList" in note for note in repairs)

    def test_food_entries_from_strings_and_text_ratings(self, cairo_context):
        data = model_output(foodList=["Feteer", {"name": "Molokhia", "rating": "4.6/5"}, {"rating": 5}])
        itinerary, _ = repair_itinerary(data, cairo_context)
        assert itinerary.foodList[0].name == "Feteer"
        assert itinerary.foodList[0].rating is None
        assert itinerary.foodList[1].rating == pytest.approx(4.6)
        assert itinerary.foodList[2].placeholder is True

    def test_day_dates_and_titles_derived(self, cairo_context):
        data = model_output(days=[{"steps": []}, {"title": "", "steps": []}])
        itinerary, repairs = repair_itinerary(data, cairo_context)
        assert [d.date for d in itinerary.days] == ["2026-03-01", "2026-03-02"]
        assert [d.title for d in itinerary.days] == ["Day 1", "Day 2"]
        assert "derived date for day 1" in repairs

    def test_steps_get_map_links_and_text_steps_are_wrapped(self, cairo_context):
        data = model_output(days=[{"date": "2026-03-01", "title": "x", "steps": ["Egyptian Museum", {"time": "10:00"}]}])
        itinerary, repairs = repair_itinerary(data, cairo_context)
        steps = itinerary.days[0].steps
        assert len(steps) == 1
        assert steps[0].text == "Egyptian Museum"
        assert steps[0].mapLink.endswith("Egyptian+Museum")
        assert "dropped a step without text" in repairs

    def test_string_fields_become_lists(self, cairo_context):
        data = model_output(beforeYouGo="Get an e-visa\nBuy a SIM; Carry cash", cultureTips=None)
        itinerary, _ = repair_itinerary(data, cairo_context)
        assert itinerary.beforeYouGo == ["Get an e-visa", "Buy a SIM", "Carry cash"]
        assert itinerary.cultureTips == []

    def test_emergency_numbers_become_strings(self, cairo_context):
        data = model_output(practicalInfo={"emergencyNumbers": {"police": 122, "medical": 123}, "simCardOptions": "Vodafone"})
        itinerary, _ = repair_itinerary(data, cairo_context)
        assert itinerary.practicalInfo.emergencyNumbers == {"police": "122", "medical": "123"}
        assert itinerary.practicalInfo.simCardOptions == ["Vodafone"]

    def test_visa_required_from_text(self, cairo_context):
        data = model_output(visa={"required": "no", "type": "Visa-free", "additionalRequirements": "Passport valid 6 months"})
        itinerary, _ = repair_itinerary(data, cairo_context)
        assert itinerary.visa.required is False
        assert itinerary.visa.additionalRequirements == ["Passport valid 6 months"]

    def test_currency_filled_from_looked_up_rate(self, cairo_context):
        data = model_output(currency=None)
        itinerary, repairs = repair_itinerary(data, cairo_context)
        assert itinerary.currency.destinationCode == "EGP"
        assert itinerary.currency.homeToDestination == "1 AED = 13.2500 EGP"
        assert itinerary.currency.lastUpdated == "2026-02-27"
        assert any(note.startswith("filled currency") for note in repairs)

    def test_weather_falls_back_to_forecast(self, cairo_context):
        itinerary, _ = repair_itinerary(model_output(weather=""), cairo_context)
        assert itinerary.weather == cairo_context.weather

    def test_cost_summary_only_uses_returned_costs(self, cairo_context):
        itinerary, _ = repair_itinerary(model_output(), cairo_context)
        summary = itinerary.costSummary
        assert summary.destinationCurrency == "EGP"
        assert summary.homeCurrency == "AED"
        assert summary.destinationTotal == pytest.approx(840.0)
        assert summary.homeTotal == pytest.approx(64.0)
        assert [d.date for d in summary.perDay] == ["2026-03-01", "2026-03-02"]

    def test_no_costs_means_no_summary(self, cairo_context):
        data = model_output(days=[{"date": "2026-03-01", "title": "x", "steps": [{"time": "09:00", "text": "Walk"}]}])
        itinerary, _ = repair_itinerary(data, cairo_context)
        assert itinerary.costSummary is None


class TestFallbackItinerary:
    def test_covers_every_trip_day(self, cairo_context):
        payload = fallback_itinerary(cairo_context)
        assert payload["fallback"] is True
        assert len(payload["days"]) == cairo_context.duration
        assert payload["days"][0]["date"] == "2026-03-01"
        assert all(day["steps"] for day in payload["days"])

    def test_has_no_invented_prices(self, cairo_context):
        payload = fallback_itinerary(cairo_context)
        assert payload["costSummary"] is None
        assert all(item["placeholder"] for item in payload["foodList"])

    def test_is_json_serializable(self, cairo_context):
        json.dumps(fallback_itinerary(cairo_context))


def test_map_link_strips_time_prefix():
    assert generate_map_link("09:00 - Cairo Tower") == generate_map_link("Cairo Tower")
