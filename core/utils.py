from datetime import datetime, timezone
from dateutil import parser
import pytz
import logging
import asyncio
import math
import re
import uuid
import httpx


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return True


async def retry_with_back_off ( func, retries: int = 3, base_delay : float = 1 , retry_on : tuple = (httpx.HTTPStatusError, httpx.RequestError)):
    delay = base_delay
    for attempt in range(retries):
        try:
            return await func()
        except retry_on as e:
            if not _is_retryable(e) or attempt == retries - 1:
                raise
            logger.warning(f"retry {attempt+1} failed due to {e.__class__.__name__}. Waiting {delay}s before next try")
            await asyncio.sleep(delay)
            delay *= 2


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value):
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parser.isoparse(str(value))
    except (ValueError, OverflowError):
        logger.warning("unparseable timestamp %r", value)
        return None


def is_uuid(value) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def mask_phone(phone):
    if not phone:
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "***-***-****"
    return f"***-***-{digits[-4:]}"


def describe_slot(start_time: str, clinic_timezone: str) -> str:
    """Spoken form of a slot start, e.g. ``Tuesday, February 20 at 10:00 AM``."""
    if not start_time:
        return ""
    try:
        start = parser.isoparse(start_time)
    except (ValueError, TypeError):
        return str(start_time)

    tz = pytz.timezone(clinic_timezone)
    if start.tzinfo is None:
        start = tz.localize(start)
    else:
        start = start.astimezone(tz)

    hour = start.strftime("%I").lstrip("0")
    return f"{start.strftime('%A, %B')} {start.day} at {hour}:{start.strftime('%M %p')}"


def page_info(page: int, limit: int, total_count: int) -> dict:
    total_pages = math.ceil(total_count / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total_count": total_count,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
