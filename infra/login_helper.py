from core.queue import async_redis
from fastapi import HTTPException, status, Request

MAX_LOGIN_ATTEMPTS = 5
LOCK_WINDOWS_SECONDS = 30 * 60

def login_attempts_key(email : str , ip: str ) -> str:
    return f"login_attempts:{email}:{ip}"

async def get_redis_attempts(key) -> int:
    attempts_raw = await async_redis.get(key)
    return int(attempts_raw) if attempts_raw is not None else 0

async def increment_attempts_with_key(key):
    attempts =  await async_redis.incr(key)
    if attempts == 1 or attempts >= MAX_LOGIN_ATTEMPTS:
        await async_redis.expire(key, LOCK_WINDOWS_SECONDS)
    return int(attempts)

async def clear_attempts(key):
    await async_redis.delete(key)


async def  handle_failed_login(key):
    new_attempt = await increment_attempts_with_key(key)
    if new_attempt >= MAX_LOGIN_ATTEMPTS:
        raise HTTPException( status.HTTP_429_TOO_MANY_REQUESTS, detail= "Too many login attempts please try again later")
    raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail = "Invalid Email or Password")

def get_client_ip(request: Request):
    x_forwarded_for = request.headers.get("x-forwarded-for")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"
