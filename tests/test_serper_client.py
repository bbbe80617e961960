import json
from pathlib import Path

import pytest
import requests

from rankcheck import config
from rankcheck.config import ConfigurationError
from rankcheck.http import BudgetExceededError, HttpClient, RequestBudget, RequestMetrics, UpstreamError
from rankcheck.models import GeoPoint
from rankcheck.serper_client import SerperPlacesClient, build_places_body, parse_places_response


def load_fixture(name):
    path = Path(__file__).parent / "fixtures" / name
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class FakeResponse:
    def __init__(self, payload=None, status_code=200, reason="OK", headers=None):
        self._payload = payload
        self.status_code = status_code
        self.reason = reason
        self.headers = headers or {}

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_client(responses, retry_max=3, metrics=None, budget=None):
    sleeps = []
    http_client = HttpClient(
        timeout=1,
        retry_max=retry_max,
        backoff_base=0.0,
        backoff_max=0.0,
        metrics=metrics,
        sleep=sleeps.append,
    )
    http_client.session = FakeSession(responses)
    return SerperPlacesClient(http_client, budget), http_client.session, sleeps


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv(config.SERPER_API_KEY_ENV, "test-key")


def test_fetch_page_sends_query_and_key():
    client, session, _ = make_client([FakeResponse(load_fixture("serper_places_dentist.json"))])

    listings = client.fetch_page("dentist london", "gb", "en", 2, "mobile", GeoPoint(51.5, -0.12))

    call = session.calls[0]
    assert call["url"] == config.SERPER_PLACES_URL
    assert call["headers"]["X-API-KEY"] == "test-key"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["json"] == {
        "q": "dentist london",
        "gl": "gb",
        "hl": "en",
        "page": 2,
        "device": "mobile",
        "ll": "@51.5,-0.12,14z",
    }
    assert [l["title"] for l in listings] == [
        "City Dental Care",
        "Bright Smile Dental London",
        "Smile Studio",
    ]


def test_body_has_no_location_bias_without_point():
    body = build_places_body("plumber", "us", "en", 1, "desktop")
    assert "ll" not in body


def test_parse_places_response_coerces_numbers():
    listings = parse_places_response(load_fixture("serper_places_dentist.json"))

    assert len(listings) == 3
    second = listings[1]
    assert second["rating"] == pytest.approx(4.8)
    assert second["rating_count"] == 97
    assert second["category"] == "Dental clinic"
    assert second["raw"]["cid"] == "2222"
    third = listings[2]
    assert third["rating"] is None
    assert third["latitude"] is None


def test_parse_places_response_handles_missing_places():
    assert parse_places_response({}) == []
    assert parse_places_response({"places": None}) == []


def test_missing_api_key_fails_before_request(monkeypatch):
    monkeypatch.delenv(config.SERPER_API_KEY_ENV, raising=False)
    client, session, _ = make_client([FakeResponse({"places": []})])

    with pytest.raises(ConfigurationError):
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert session.calls == []


def test_client_error_is_not_retried():
    metrics = RequestMetrics()
    client, session, sleeps = make_client(
        [FakeResponse(status_code=403, reason="Forbidden")], metrics=metrics
    )

    with pytest.raises(UpstreamError) as excinfo:
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert excinfo.value.status == 403
    assert excinfo.value.retryable is False
    assert "403" in str(excinfo.value)
    assert len(session.calls) == 1
    assert sleeps == []
    assert metrics.failures == 1


def test_server_error_is_retried_then_succeeds():
    metrics = RequestMetrics()
    client, session, sleeps = make_client(
        [
            FakeResponse(status_code=503, reason="Service Unavailable"),
            FakeResponse(status_code=429, reason="Too Many Requests", headers={"Retry-After": "0"}),
            FakeResponse({"places": [{"title": "Acme"}]}),
        ],
        metrics=metrics,
    )

    listings = client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert [l["title"] for l in listings] == ["Acme"]
    assert len(session.calls) == 3
    assert len(sleeps) == 2
    assert metrics.retries == 2
    assert metrics.failures == 0


def test_network_error_exhausts_attempts():
    client, session, _ = make_client(
        [requests.ConnectionError("boom"), requests.Timeout("slow")], retry_max=2
    )

    with pytest.raises(UpstreamError) as excinfo:
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert excinfo.value.status is None
    assert excinfo.value.retryable is True
    assert len(session.calls) == 2


def test_single_attempt_never_retries():
    client, session, sleeps = make_client(
        [FakeResponse(status_code=500, reason="Internal Server Error")], retry_max=1
    )

    with pytest.raises(UpstreamError):
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert len(session.calls) == 1
    assert sleeps == []


def test_invalid_json_body_is_upstream_error():
    client, _, _ = make_client([FakeResponse(None)])

    with pytest.raises(UpstreamError) as excinfo:
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert excinfo.value.retryable is False


def test_non_object_json_body_is_upstream_error():
    client, session, _ = make_client([FakeResponse(["not", "an", "object"]), FakeResponse({"places": []})])

    with pytest.raises(UpstreamError) as excinfo:
        client.fetch_page("dentist", "gb", "en", 1, "desktop")

    assert excinfo.value.status == 200
    assert excinfo.value.reason == "unexpected JSON shape"
    assert excinfo.value.retryable is False
    assert len(session.calls) == 1


def test_budget_stops_requests():
    metrics = RequestMetrics()
    budget = RequestBudget(max_calls=1, metrics=metrics)
    client, session, _ = make_client(
        [FakeResponse({"places": []}), FakeResponse({"places": []})], metrics=metrics, budget=budget
    )

    client.fetch_page("dentist", "gb", "en", 1, "desktop")
    with pytest.raises(BudgetExceededError):
        client.fetch_page("dentist", "gb", "en", 2, "desktop")

    assert len(session.calls) == 1
    assert metrics.api_calls_made == 1


def test_upstream_error_classification():
    assert UpstreamError(502, "Bad Gateway").retryable is True
    assert UpstreamError(408, "Request Timeout").retryable is True
    assert UpstreamError(400, "Bad Request").retryable is False
    assert UpstreamError(None, "reset").retryable is True
