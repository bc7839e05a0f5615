"""Tests for the NexHealth and Vapi gateway clients."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from core.circuit_breaker import circuit_breaker_open_error
from sdk import errors
from sdk.errors import GatewayError
from sdk.nexhealth_sdk import NexHealthApi, TokenCache
from sdk.vapi_sdk import VapiApi


@pytest.fixture(autouse=True)
def reset_breakers():
    NexHealthApi.cb.reset()
    VapiApi.cb.reset()
    yield
    NexHealthApi.cb.reset()
    VapiApi.cb.reset()


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class Recorder:
    """Mock transport handler that answers the auth endpoint and records API calls."""

    def __init__(self, routes: dict, expires_in: int = 3600):
        self.routes = routes
        self.expires_in = expires_in
        self.auth_calls = 0
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/authenticates":
            self.auth_calls += 1
            return httpx.Response(200, json={
                "code": True,
                "data": {"access_token": f"token-{self.auth_calls}", "expires_in": self.expires_in},
            })
        self.requests.append(request)
        status, body = self.routes[(request.method, request.url.path)]
        return httpx.Response(status, json=body)


def nexhealth_client(recorder: Recorder, clock: FakeClock | None = None) -> NexHealthApi:
    return NexHealthApi(
        api_key="key-123",
        base_url="https://nexhealth.test",
        token_cache=TokenCache(clock=clock or FakeClock()),
        transport=httpx.MockTransport(recorder),
        retries=1,
        backoff_base=0,
    )


class TestTokenCache:
    def test_token_is_reused_until_refresh_margin(self):
        clock = FakeClock()
        recorder = Recorder({("GET", "/providers"): (200, {"code": True, "data": []})})
        api = nexhealth_client(recorder, clock)

        asyncio.run(api.get_providers("brightsmiles", "loc-1"))
        clock.now += 3000
        asyncio.run(api.get_providers("brightsmiles", "loc-1"))
        assert recorder.auth_calls == 1

        # inside the five minute margin before expiry
        clock.now += 400
        asyncio.run(api.get_providers("brightsmiles", "loc-1"))
        assert recorder.auth_calls == 2
        assert recorder.requests[-1].headers["Authorization"] == "Bearer token-2"

    def test_auth_request_sends_api_key_and_version_header(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            seen["accept"] = request.headers["Accept"]
            return httpx.Response(200, json={"code": True, "data": {"access_token": "t"}})

        api = NexHealthApi(api_key="key-123", base_url="https://nexhealth.test",
                           transport=httpx.MockTransport(handler))
        assert asyncio.run(api.get_token()) == "t"
        assert seen["body"] == {"api_key": "key-123"}
        assert seen["accept"] == "application/vnd.Nexhealth+json;version=2"

    def test_missing_api_key(self):
        api = NexHealthApi(api_key="", base_url="https://nexhealth.test")
        with pytest.raises(GatewayError):
            asyncio.run(api.get_token())


class TestNexHealthRequests:
    def test_tenant_params_and_data_unwrapped(self):
        recorder = Recorder({("GET", "/providers"): (200, {"code": True, "data": [{"id": 1}]})})
        api = nexhealth_client(recorder)

        assert asyncio.run(api.get_providers("brightsmiles", "loc-1")) == [{"id": 1}]
        params = recorder.requests[0].url.params
        assert params["subdomain"] == "brightsmiles"
        assert params["location_id"] == "loc-1"

    def test_slot_query_uses_indexed_ids(self):
        recorder = Recorder({("GET", "/appointment_slots"): (200, {"code": True, "data": []})})
        api = nexhealth_client(recorder)

        asyncio.run(api.get_appointment_slots("brightsmiles", "loc-1", appointment_type_id="7",
                                              start_date="2026-02-17", days=30,
                                              provider_ids=["101", "102"], operatory_ids=["201"]))
        params = recorder.requests[0].url.params
        assert params["pids[0]"] == "101"
        assert params["pids[1]"] == "102"
        assert params["operatory_ids[0]"] == "201"
        assert params["days"] == "30"

    def test_location_and_patient_lookups(self):
        recorder = Recorder({
            ("GET", "/locations/loc-1"): (200, {"code": True, "data": {"id": "loc-1", "tz": "America/Chicago"}}),
            ("GET", "/patients/777"): (200, {"code": True, "data": {"id": 777}}),
        })
        api = nexhealth_client(recorder)

        assert asyncio.run(api.get_location("brightsmiles", "loc-1"))["tz"] == "America/Chicago"
        assert asyncio.run(api.get_patient("brightsmiles", "loc-1", "777")) == {"id": 777}
        assert "location_id" not in recorder.requests[0].url.params
        assert recorder.requests[1].url.params["location_id"] == "loc-1"

    def test_falsy_code_raises(self):
        recorder = Recorder({("GET", "/providers"): (200, {"code": False, "message": "Location not found"})})
        api = nexhealth_client(recorder)

        with pytest.raises(GatewayError) as exc:
            asyncio.run(api.get_providers("brightsmiles", "loc-1"))
        assert "Location not found" in str(exc.value)
        assert exc.value.kind == errors.NOT_FOUND

    def test_conflict_is_classified_duplicate(self):
        recorder = Recorder({("POST", "/webhook_endpoints/5/webhook_subscriptions"):
                             (409, {"code": False, "message": "Subscription already exists"})})
        api = nexhealth_client(recorder)

        with pytest.raises(GatewayError) as exc:
            asyncio.run(api.subscribe_to_webhooks("5", "brightsmiles"))
        assert exc.value.status_code == 409
        assert exc.value.kind == errors.DUPLICATE

    def test_booking_body_is_wrapped(self):
        recorder = Recorder({("POST", "/appointments"): (201, {"code": True, "data": {"id": 9001}})})
        api = nexhealth_client(recorder)

        booked = asyncio.run(api.book_appointment("brightsmiles", "loc-1", {
            "patient_id": "1", "provider_id": "2", "operatory_id": None,
            "appointment_type_id": "3", "start_time": "s", "end_time": "e",
        }))
        assert booked == {"id": 9001}
        sent = json.loads(recorder.requests[0].content)
        assert sent == {"appointment": {"patient_id": "1", "provider_id": "2", "appointment_type_id": "3",
                                        "start_time": "s", "end_time": "e"}}

    def test_server_errors_open_the_breaker(self):
        recorder = Recorder({("GET", "/providers"): (503, {"message": "down"})})
        api = nexhealth_client(recorder)

        for _ in range(NexHealthApi.cb.max_failures):
            with pytest.raises(GatewayError):
                asyncio.run(api.get_providers("brightsmiles", "loc-1"))

        with pytest.raises(circuit_breaker_open_error):
            asyncio.run(api.get_providers("brightsmiles", "loc-1"))


class TestErrorClassification:
    @pytest.mark.parametrize(
        "status, message, kind",
        [
            (409, "", errors.DUPLICATE),
            (400, "Patient already exists", errors.DUPLICATE),
            (400, "start_time is invalid", errors.INVALID_FIELD),
            (404, "", errors.NOT_FOUND),
            (429, "", errors.RATE_LIMITED),
            (None, "something odd", errors.UNKNOWN),
        ],
    )
    def test_classify(self, status, message, kind):
        assert errors.classify(status, message) == kind


class TestVapiApi:
    def test_list_calls_passes_filters(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=[{"id": "call-1"}])

        api = VapiApi(api_key="vapi-key", base_url="https://vapi.test", transport=httpx.MockTransport(handler),
                      retries=1, backoff_base=0)
        assert asyncio.run(api.list_calls("asst-1", limit=10)) == [{"id": "call-1"}]
        assert seen["params"] == {"assistantId": "asst-1", "limit": "10"}
        assert seen["auth"] == "Bearer vapi-key"

    def test_update_uses_patch(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            return httpx.Response(200, json={"id": "asst-1"})

        api = VapiApi(api_key="vapi-key", base_url="https://vapi.test", transport=httpx.MockTransport(handler))
        asyncio.run(api.update_assistant("asst-1", {"name": "x"}))
        assert seen == {"method": "PATCH", "path": "/assistant/asst-1"}

    def test_not_configured(self):
        api = VapiApi(api_key="", base_url="https://vapi.test")
        assert api.configured is False
        with pytest.raises(GatewayError):
            asyncio.run(api.get_call("call-1"))

    def test_not_found_is_gateway_error(self):
        api = VapiApi(api_key="vapi-key", base_url="https://vapi.test",
                      transport=httpx.MockTransport(lambda r: httpx.Response(404, json={"message": "nope"})),
                      retries=1)
        with pytest.raises(GatewayError) as exc:
            asyncio.run(api.get_call("missing"))
        assert exc.value.kind == errors.NOT_FOUND
