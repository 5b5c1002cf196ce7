"""Endpoint tests. FX, LLM and weather collaborators are swapped via dependency overrides."""
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from api.fx import ExchangerateApiFetcher, ExchangerateHostFetcher, FxClient
from api.llm import LLMClient, LLMRequestError, LLMUnavailableError
from api.main import app, get_fx_client, get_llm_client, get_weather_lookup
from api.prompts import TOOL_NAME

ITINERARY_ARGS = {
    "intro": "Cairo is loud, ancient and generous.",
    "beforeYouGo": ["Apply for the e-visa"],
    "visa": {"required": True, "type": "eVisa"},
    "currency": {"destinationCode": "EGP", "homeToDestination": "1 AED = 13.25 EGP", "destinationToHome": "1 EGP = 0.0755 AED"},
    "cultureTips": ["Bargain politely"],
    "foodList": [{"name": "Koshari", "rating": 4.8, "source": "Abou Tarek"}],
    "days": [
        {"date": "2026-03-01", "title": "Giza", "steps": [{"time": "08:00", "text": "Pyramids", "cost": "540 EGP (41 AED)"}]},
        {"date": "2026-03-02", "title": "Old Cairo", "steps": [{"time": "09:00", "text": "Coptic Cairo"}]},
        {"date": "2026-03-03", "title": "Nile", "steps": [{"time": "17:00", "text": "Felucca ride"}]},
    ],
}


class StubLLM:
    model = "stub-model"

    def __init__(self, raw=None, exc=None):
        self.raw = raw
        self.exc = exc
        self.calls = []

    def complete_tool_call(self, system, user, tool):
        self.calls.append((system, user, tool))
        if self.exc is not None:
            raise self.exc
        return self.raw


class Upstream:
    def __init__(self):
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        if request.url.host == "api.exchangerate.host":
            return httpx.Response(200, json={"success": True, "result": 13.25, "date": "2026-02-27"})
        return httpx.Response(500)


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def fx_client(upstream):
    http = httpx.Client(transport=httpx.MockTransport(upstream))
    return FxClient(fetchers=[ExchangerateHostFetcher(http), ExchangerateApiFetcher(http)], http=http)


@pytest.fixture
def client(fx_client):
    app.dependency_overrides[get_fx_client] = lambda: fx_client
    app.dependency_overrides[get_weather_lookup] = lambda: (lambda city: "Next 5 days: mostly sunny, 14-27°C.")
    yield TestClient(app)
    app.dependency_overrides.clear()


def use_llm(llm):
    app.dependency_overrides[get_llm_client] = lambda: llm
    return llm


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestItineraryEndpoint:
    def test_success_returns_repaired_itinerary(self, client, trip_form):
        llm = use_llm(StubLLM(raw=json.dumps(ITINERARY_ARGS)))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 200
        body = response.json()
        assert len(body["days"]) == 3
        assert len(body["foodList"]) == 10
        assert body["foodList"][0]["name"] == "Koshari"
        assert body["fallback"] is False
        assert body["meta"]["source"] == "gemini"
        assert body["meta"]["fx"]["rate"] == pytest.approx(13.25)
        assert body["meta"]["durationDays"] == 3
        assert body["meta"]["generatedAt"].endswith("+00:00")
        assert any("padded foodList" in note for note in body["meta"]["repairs"])
        assert len(llm.calls) == 1

    def test_prompt_carries_fx_and_weather(self, client, trip_form):
        llm = use_llm(StubLLM(raw=json.dumps(ITINERARY_ARGS)))
        client.post("/api/v1/itinerary", json=trip_form)
        _, user_prompt, tool = llm.calls[0]
        assert "1 AED = 13.2500 EGP" in user_prompt
        assert "mostly sunny" in user_prompt
        assert "United Arab Emirates" in user_prompt
        assert tool.name == TOOL_NAME

    def test_budget_per_day_alias(self, client, trip_form):
        llm = use_llm(StubLLM(raw=json.dumps(ITINERARY_ARGS)))
        trip_form.pop("dailyBudget")
        trip_form["budgetPerDay"] = 80
        assert client.post("/api/v1/itinerary", json=trip_form).status_code == 200
        assert "Budget: 80" in llm.calls[0][1]

    def test_fx_outage_is_not_fatal(self, client, trip_form, upstream, fx_client):
        fx_client.fetchers = []
        use_llm(StubLLM(raw=json.dumps(ITINERARY_ARGS)))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 200
        assert response.json()["meta"]["fx"]["provider"] == "fallback"

    def test_unavailable_llm_returns_fallback_itinerary(self, client, trip_form):
        use_llm(StubLLM(exc=LLMUnavailableError("500 x3")))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 503
        body = response.json()
        assert body["fallback"] is True
        assert len(body["days"]) == 3
        assert "temporarily unavailable" in body["error"]
        assert body["meta"]["source"] == "fallback"

    def test_rejected_request_returns_fallback_itinerary(self, client, trip_form):
        use_llm(StubLLM(exc=LLMRequestError("400")))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 502
        assert response.json()["fallback"] is True

    def test_three_upstream_errors_end_in_fallback(self, client, trip_form):
        class ServerError(Exception):
            code = 500

        fake = MagicMock()
        fake.models.generate_content.side_effect = [ServerError(), ServerError(), ServerError()]
        use_llm(LLMClient(client=fake, sleep=lambda s: None))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 503
        assert response.json()["fallback"] is True
        assert fake.models.generate_content.call_count == 3

    def test_real_client_path_with_tool_call(self, client, trip_form):
        fake = MagicMock()
        fake.models.generate_content.return_value = SimpleNamespace(
            function_calls=[SimpleNamespace(name=TOOL_NAME, args=ITINERARY_ARGS)]
        )
        use_llm(LLMClient(client=fake, model="gemini-test", sleep=lambda s: None))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 200
        assert response.json()["meta"]["model"] == "gemini-test"

    def test_malformed_model_json_is_500(self, client, trip_form):
        use_llm(StubLLM(raw="I cannot help with that"))
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert response.status_code == 500
        assert "error" in response.json()

    def test_itinerary_without_days_is_500(self, client, trip_form):
        use_llm(StubLLM(raw=json.dumps({"intro": "no days"})))
        assert client.post("/api/v1/itinerary", json=trip_form).status_code == 500

    def test_invalid_json_body_is_400(self, client):
        use_llm(StubLLM(raw="{}"))
        response = client.post(
            "/api/v1/itinerary",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_end_before_start_is_400(self, client, trip_form):
        llm = use_llm(StubLLM(raw="{}"))
        trip_form["dateRange"] = {"from": "2026-03-04", "to": "2026-03-01"}
        assert client.post("/api/v1/itinerary", json=trip_form).status_code == 400
        assert llm.calls == []

    def test_missing_destination_is_400(self, client, trip_form):
        use_llm(StubLLM(raw="{}"))
        trip_form["destination"] = "  "
        assert client.post("/api/v1/itinerary", json=trip_form).status_code == 400

    def test_same_day_trip_is_one_day(self, client, trip_form):
        llm = use_llm(StubLLM(exc=LLMUnavailableError("down")))
        trip_form["dateRange"] = {"from": "2026-03-01", "to": "2026-03-01"}
        response = client.post("/api/v1/itinerary", json=trip_form)
        assert len(response.json()["days"]) == 1
        assert len(llm.calls) == 1


class TestFxRateEndpoint:
    def test_same_currency(self, client, upstream):
        body = client.get("/api/v1/fx-rate", params={"base": "usd", "quote": "USD"}).json()
        assert body["rate"] == 1
        assert body["provider"] == "fallback"
        assert upstream.calls == 0

    def test_live_rate(self, client):
        body = client.get("/api/v1/fx-rate", params={"base": "AED", "quote": "EGP"}).json()
        assert body["base"] == "AED"
        assert body["rate"] == pytest.approx(13.25)
        assert body["provider"] == "primary"

    def test_second_lookup_is_cached(self, client, upstream):
        client.get("/api/v1/fx-rate", params={"base": "AED", "quote": "EGP"})
        client.get("/api/v1/fx-rate", params={"base": "AED", "quote": "EGP"})
        assert upstream.calls == 1


def test_shutdown_closes_fx_client():
    owned = MagicMock()
    app.state.fx_client = owned
    with TestClient(app):
        pass
    owned.close.assert_called_once_with()
    assert app.state.fx_client is None


def test_shutdown_without_fx_client():
    app.state.fx_client = None
    with TestClient(app) as client:
        assert client.get("/api/v1/health").status_code == 200
    assert app.state.fx_client is None
