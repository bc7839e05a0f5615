import asyncio
import logging
import time
from typing import Optional

import httpx

from config import settings
from core.circuit_breaker import circuit_breaker, circuit_breaker_open_error
from core.utils import retry_with_back_off
from sdk.errors import GatewayError

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "application/vnd.Nexhealth+json;version=2"
TOKEN_REFRESH_MARGIN_SECONDS = 300
DEFAULT_TOKEN_TTL_SECONDS = 3600


class TokenCache:
    """Holds the platform bearer token and when it stops being usable."""

    def __init__(self, refresh_margin: int = TOKEN_REFRESH_MARGIN_SECONDS, clock=time.time):
        self.refresh_margin = refresh_margin
        self.clock = clock
        self.token: Optional[str] = None
        self.expires_at = 0.0

    def get(self) -> Optional[str]:
        if self.token and self.clock() < self.expires_at - self.refresh_margin:
            return self.token
        return None

    def store(self, token: str, expires_in: Optional[int]) -> None:
        self.token = token
        self.expires_at = self.clock() + (expires_in or DEFAULT_TOKEN_TTL_SECONDS)

    def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0


class NexHealthApi:
    cb = circuit_breaker(name="nexhealth", max_failures=5, reset_timeout=30)

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 token_cache: Optional[TokenCache] = None, transport: Optional[httpx.AsyncBaseTransport] = None,
                 retries: int = 3, backoff_base: float = 1.0) -> None:
        self.api_key = api_key if api_key is not None else settings.nexhealth_api_key
        self.base_url = (base_url or settings.nexhealth_base_url).rstrip("/")
        self.token_cache = token_cache or TokenCache()
        self.transport = transport
        self.retries = retries
        self.backoff_base = backoff_base
        self._token_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=15.0, transport=self.transport)

    async def get_token(self) -> str:
        token = self.token_cache.get()
        if token:
            return token

        async with self._token_lock:
            # another coroutine may have refreshed while we waited
            token = self.token_cache.get()
            if token:
                return token

            if not self.api_key:
                raise GatewayError("nexhealth", "NEXHEALTH_API_KEY is not configured")

            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/authenticates",
                    headers={"Accept": ACCEPT_HEADER},
                    json={"api_key": self.api_key},
                )
            if response.status_code >= 400:
                raise GatewayError("nexhealth", "authentication failed", response.status_code, response.text)

            body = response.json()
            if not body.get("code"):
                raise GatewayError("nexhealth", body.get("message") or "authentication failed", response.status_code, body)
            data = body.get("data") or {}
            token = data.get("access_token")
            if not token:
                raise GatewayError("nexhealth", "authentication response had no token", response.status_code, body)

            self.token_cache.store(token, data.get("expires_in"))
            logger.info("nexhealth bearer token refreshed")
            return token

    async def _request(self, method: str, endpoint: str, *, subdomain: Optional[str] = None,
                       location_id: Optional[str] = None, params: Optional[dict] = None, json: Optional[dict] = None):
        url = f"{self.base_url}{endpoint}"
        if not self.cb.allow_request():
            raise circuit_breaker_open_error("Circuit breaker OPEN: Too many recent failures. Try again later")

        query = {}
        if subdomain:
            query["subdomain"] = subdomain
        if location_id:
            query["location_id"] = location_id
        for key, value in (params or {}).items():
            if value is not None:
                query[key] = value

        token = await self.get_token()
        headers = {"Authorization": f"Bearer {token}", "Accept": ACCEPT_HEADER}

        async def send():
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, params=query, json=json)
                response.raise_for_status()
                return response

        try:
            if method.upper() == "GET":
                response = await retry_with_back_off(send, retries=self.retries, base_delay=self.backoff_base)
            else:
                response = await send()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                self.cb.on_failure()
            if e.response.status_code == 401:
                self.token_cache.clear()
            logger.warning("nexhealth request failed", extra={"method": method, "endpoint": endpoint,
                                                               "status_code": e.response.status_code})
            raise GatewayError("nexhealth", _error_message(e.response), e.response.status_code, e.response.text) from e
        except httpx.RequestError as e:
            self.cb.on_failure()
            raise GatewayError("nexhealth", f"{e.__class__.__name__}: {e}") from e

        self.cb.success()
        body = response.json()
        if not body.get("code"):
            raise GatewayError("nexhealth", body.get("message") or "Unknown error", response.status_code, body)
        return body.get("data")

    async def get_appointment_types(self, subdomain: str, location_id: str):
        return await self._request("GET", "/appointment_types", subdomain=subdomain, location_id=location_id)

    async def get_appointment_type(self, subdomain: str, location_id: str, appointment_type_id: str):
        return await self._request("GET", f"/appointment_types/{appointment_type_id}", subdomain=subdomain,
                                   location_id=location_id)

    async def get_providers(self, subdomain: str, location_id: str):
        return await self._request("GET", "/providers", subdomain=subdomain, location_id=location_id)

    async def get_operatories(self, subdomain: str, location_id: str):
        return await self._request("GET", "/operatories", subdomain=subdomain, location_id=location_id)

    async def get_location(self, subdomain: str, location_id: str):
        return await self._request("GET", f"/locations/{location_id}", subdomain=subdomain)

    async def get_appointment_slots(self, subdomain: str, location_id: str, *, appointment_type_id: str,
                                    start_date: str, days: int = 1, provider_ids=None, operatory_ids=None):
        params = {
            "appointment_type_id": appointment_type_id,
            "start_date": start_date,
            "days": days,
        }
        for index, provider_id in enumerate(provider_ids or []):
            params[f"pids[{index}]"] = provider_id
        for index, operatory_id in enumerate(operatory_ids or []):
            params[f"operatory_ids[{index}]"] = operatory_id
        return await self._request("GET", "/appointment_slots", subdomain=subdomain, location_id=location_id,
                                   params=params)

    async def search_patients(self, subdomain: str, location_id: str, **criteria):
        return await self._request("GET", "/patients", subdomain=subdomain, location_id=location_id,
                                   params={k: v for k, v in criteria.items() if v})

    async def get_patient(self, subdomain: str, location_id: str, patient_id: str):
        return await self._request("GET", f"/patients/{patient_id}", subdomain=subdomain, location_id=location_id)

    async def create_patient(self, subdomain: str, location_id: str, provider_id: str, patient: dict):
        body = {"patient": {**patient, "provider_id": provider_id}}
        return await self._request("POST", "/patients", subdomain=subdomain, location_id=location_id, json=body)

    async def book_appointment(self, subdomain: str, location_id: str, appointment: dict):
        body = {"appointment": {k: v for k, v in appointment.items() if v is not None}}
        return await self._request("POST", "/appointments", subdomain=subdomain, location_id=location_id, json=body)

    async def cancel_appointment(self, subdomain: str, location_id: str, appointment_id: str):
        body = {"appointment": {"cancelled": True}}
        return await self._request("PATCH", f"/appointments/{appointment_id}", subdomain=subdomain,
                                   location_id=location_id, json=body)

    async def list_webhook_endpoints(self):
        return await self._request("GET", "/webhook_endpoints")

    async def create_webhook_endpoint(self, target_url: str):
        return await self._request("POST", "/webhook_endpoints", json={"target_url": target_url, "active": True})

    async def subscribe_to_webhooks(self, endpoint_id: str, subdomain: str, resource_type: str = "Appointment",
                                    event: str = "appointment_insertion"):
        body = {"resource_type": resource_type, "event": event, "active": True}
        return await self._request("POST", f"/webhook_endpoints/{endpoint_id}/webhook_subscriptions",
                                   subdomain=subdomain, json=body)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)
        if message:
            return str(message)
    return response.text or response.reason_phrase
