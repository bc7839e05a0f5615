import logging
from datetime import datetime
from typing import Optional

import httpx

from config import settings
from core.circuit_breaker import circuit_breaker, circuit_breaker_open_error
from core.utils import retry_with_back_off
from sdk.errors import GatewayError

logger = logging.getLogger(__name__)


class VapiApi:
    cb = circuit_breaker(name="vapi", max_failures=5, reset_timeout=30)

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None, retries: int = 3,
                 backoff_base: float = 1.0) -> None:
        self.api_key = api_key if api_key is not None else settings.vapi_api_key
        self.base_url = (base_url or settings.vapi_base_url).rstrip("/")
        self.transport = transport
        self.retries = retries
        self.backoff_base = backoff_base

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _request(self, method: str, endpoint: str, **kwargs):
        url = f"{self.base_url}{endpoint}"
        if not self.api_key:
            raise GatewayError("vapi", "VAPI_API_KEY is not configured")
        if not self.cb.allow_request():
            raise circuit_breaker_open_error("Circuit breaker OPEN: Too many recent failures. Try again later")

        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

        async def send():
            async with httpx.AsyncClient(timeout=15.0, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, **kwargs)
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
            logger.warning("vapi request failed", extra={"method": method, "endpoint": endpoint,
                                                          "status_code": e.response.status_code})
            raise GatewayError("vapi", e.response.reason_phrase or "request failed", e.response.status_code,
                               e.response.text) from e
        except httpx.RequestError as e:
            self.cb.on_failure()
            raise GatewayError("vapi", f"{e.__class__.__name__}: {e}") from e

        self.cb.success()
        return response.json()

    async def get_call(self, call_id: str) -> dict:
        return await self._request("GET", f"/call/{call_id}")

    async def list_calls(self, assistant_id: str, limit: int = 100, created_at_gt: Optional[datetime] = None,
                         created_at_lt: Optional[datetime] = None) -> list:
        params = {"assistantId": assistant_id, "limit": limit}
        if created_at_gt is not None:
            params["createdAtGt"] = created_at_gt.isoformat()
        if created_at_lt is not None:
            params["createdAtLt"] = created_at_lt.isoformat()
        return await self._request("GET", "/call", params=params)

    async def create_assistant(self, payload: dict) -> dict:
        return await self._request("POST", "/assistant", json=payload)

    async def update_assistant(self, assistant_id: str, payload: dict) -> dict:
        return await self._request("PATCH", f"/assistant/{assistant_id}", json=payload)
