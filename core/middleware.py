import logging
import uuid
from typing import Callable, Optional

from fastapi import Request, Response, status
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from auth.oauth2 import decode_token
from core.queue import async_redis
from infra.login_helper import get_client_ip

log = logging.getLogger(__name__)

RATE_LIMIT_MAX_REQUESTS = 100
RATE_LIMIT_WINDOW_SECONDS = 60
# webhooks are authenticated by signature and must never be throttled
EXEMPT_PREFIXES = ("/login", "/webhook", "/health")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limit per practice owner, or per client IP for anonymous calls."""

    def __init__(self, app, max_requests: int = RATE_LIMIT_MAX_REQUESTS,
                 window_seconds: int = RATE_LIMIT_WINDOW_SECONDS, exempt_prefixes: tuple = EXEMPT_PREFIXES):
        super().__init__(app)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.exempt_prefixes = exempt_prefixes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path == "/" or path.startswith(self.exempt_prefixes):
            return await call_next(request)

        identifier = self.identify(request)
        key = f"rl:{identifier}"
        try:
            count = int(await async_redis.incr(key))
            if count == 1:
                await async_redis.expire(key, self.window_seconds)
            if count > self.max_requests:
                ttl = await async_redis.ttl(key)
                return self._too_many(identifier, request, ttl if ttl and ttl > 0 else self.window_seconds)
        except RedisError:
            log.exception("Rate limiting skipped due to redis failure", extra={"identifier": identifier})

        return await call_next(request)

    def _too_many(self, identifier: str, request: Request, retry_after: int) -> JSONResponse:
        log.warning("rate limit hit", extra={"identifier": identifier, "method": request.method,
                                             "path": request.url.path, "retry_after": retry_after})
        response = JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={"detail": "Too many requests", "retry_after": retry_after},
        )
        response.headers["Retry-After"] = str(retry_after)
        return response

    def identify(self, request: Request) -> str:
        user_id = self._user_id_from_token(request)
        if user_id is not None:
            return f"user:{user_id}"
        return f"ip:{get_client_ip(request)}"

    @staticmethod
    def _user_id_from_token(request: Request) -> Optional[str]:
        auth_header = request.headers.get("Authorization") or ""
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return None
        try:
            payload = decode_token(token)
        except ValueError:
            return None
        return payload.get("id")
