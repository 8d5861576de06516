"""
Tests for the REST client used by the polling fallback.
"""
import pytest
import requests

from swrsync import api_client
from swrsync.errors import ApiError


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def install(response=None, error=None):
        def fake_get(url, headers=None, params=None, timeout=None):
            calls.append({"url": url, "headers": headers, "params": params, "timeout": timeout})
            if error is not None:
                raise error
            return response

        monkeypatch.setattr(api_client.requests, "get", fake_get)
        return calls

    return install


def test_builds_url_and_decodes_json(captured):
    calls = captured(FakeResponse(payload={"status": "healthy"}))
    data = api_client.get_detailed_health(base_url="http://backend/api/")

    assert data == {"status": "healthy"}
    assert calls[0]["url"] == "http://backend/api/admin/health/detailed"
    assert calls[0]["headers"]["Accept"] == "application/json"


def test_bearer_token_header(captured, monkeypatch):
    monkeypatch.setattr(api_client.settings, "api_token", "secret")
    calls = captured(FakeResponse(payload={}))
    api_client.get_realtime_metrics()
    assert calls[0]["headers"]["Authorization"] == "Bearer secret"


def test_http_error_raises_api_error(captured):
    captured(FakeResponse(status_code=503))
    with pytest.raises(ApiError) as exc_info:
        api_client.get_realtime_metrics()
    assert exc_info.value.status_code == 503


def test_connection_error_raises_api_error(captured):
    captured(error=requests.ConnectionError("refused"))
    with pytest.raises(ApiError) as exc_info:
        api_client.get_detailed_health()
    assert exc_info.value.status_code is None


async def test_json_producer_runs_request(captured):
    captured(FakeResponse(payload={"cpu": {"usage": 5}}))
    produce = api_client.json_producer(api_client.METRICS_ENDPOINT)
    assert await produce() == {"cpu": {"usage": 5}}
