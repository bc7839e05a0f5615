import asyncio
import logging
from datetime import timedelta
from typing import Optional

from redis.exceptions import RedisError
from rq import Retry

from core.database import SessionLocal
from core.models import Practice
from core.queue import call_sync_queue
from core.utils import utcnow
from infra.reconciler import apply_call_record
from sdk.vapi_sdk import VapiApi

logger = logging.getLogger(__name__)

RETRY_POLICY = dict(max=3, interval=[10, 30, 60])

# one client per worker process
vapi = VapiApi()


def on_sync_failure(job, connection, exc_type, exc_value, traceback):
    if job.retries_left:
        logger.warning("call sync attempt failed, will retry", extra={"job_id": job.id, "error": str(exc_value)})
        return
    logger.error("call sync gave up", extra={"job_id": job.id, "job_args": job.args, "error": str(exc_value)})


async def _sync_call_record(practice_id: str, vapi_call_id: str) -> Optional[str]:
    db = SessionLocal()
    try:
        practice = db.query(Practice).filter_by(id=practice_id).first()
        if not practice:
            raise ValueError(f"practice {practice_id} not found")

        record = await vapi.get_call(vapi_call_id)
        if record.get("assistantId") != practice.vapi_assistant_id:
            logger.warning("call belongs to another assistant, skipping",
                           extra={"practice_id": practice_id, "vapi_call_id": vapi_call_id})
            return None

        call_log = apply_call_record(db, practice, record)
        return call_log.id if call_log else None
    finally:
        db.close()


async def _sync_assistant_calls(practice_id: str, since_hours: int) -> int:
    db = SessionLocal()
    try:
        practice = db.query(Practice).filter_by(id=practice_id).first()
        if not practice or not practice.vapi_assistant_id:
            raise ValueError(f"practice {practice_id} has no assistant")

        calls = await vapi.list_calls(practice.vapi_assistant_id, limit=100,
                                      created_at_gt=utcnow() - timedelta(hours=since_hours))
        synced = 0
        for record in calls or []:
            if apply_call_record(db, practice, record) is not None:
                synced += 1
        logger.info("assistant calls synced", extra={"practice_id": practice_id, "count": synced})
        return synced
    finally:
        db.close()


def sync_call_record(practice_id: str, vapi_call_id: str) -> Optional[str]:
    return asyncio.run(_sync_call_record(practice_id, vapi_call_id))


def sync_assistant_calls(practice_id: str, since_hours: int = 24) -> int:
    return asyncio.run(_sync_assistant_calls(practice_id, since_hours))


def _enqueue(func, *args) -> Optional[str]:
    try:
        job = call_sync_queue.enqueue(func, *args, retry=Retry(**RETRY_POLICY), on_failure=on_sync_failure)
    except RedisError:
        logger.exception("could not enqueue call sync", extra={"job_args": args})
        return None
    return job.id


def enqueue_call_sync(practice_id: str, vapi_call_id: str) -> Optional[str]:
    return _enqueue(sync_call_record, practice_id, vapi_call_id)


def enqueue_assistant_sync(practice_id: str, since_hours: int = 24) -> Optional[str]:
    return _enqueue(sync_assistant_calls, practice_id, since_hours)
