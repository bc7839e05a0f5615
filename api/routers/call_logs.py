from fastapi import Depends, APIRouter, status, HTTPException, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session
from core.database import get_db
from core.models import Practice, CallLog
from core.schemas import calllogout, calllogdetail, calllogpage, syncresponse
from core.utils import mask_phone, page_info, parse_datetime
from core.circuit_breaker import circuit_breaker_open_error
from api.deps import get_current_practice, get_vapi_client
from sdk.errors import GatewayError
from sdk.vapi_sdk import VapiApi
from workers.workers import enqueue_call_sync, enqueue_assistant_sync
import logging

log = logging.getLogger(__name__)


router = APIRouter(
    prefix = "/call-logs",
    tags= ["Call Logs"]
    )


def masked(call_log, schema=calllogout):
    out = schema.model_validate(call_log)
    return out.model_copy(update={"phone_number": mask_phone(out.phone_number)})


@router.get("/", response_model= calllogpage)
async def list_call_logs(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                         db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice)):
    query = db.query(CallLog).filter(CallLog.practice_id == practice.id)
    total = query.count()
    rows = query.order_by(CallLog.started_at.desc(), CallLog.created_at.desc())\
        .offset((page - 1) * limit).limit(limit).all()
    return {
        "call_logs": [masked(row) for row in rows],
        "pagination": page_info(page, limit, total),
    }


def _from_platform_record(record: dict) -> calllogdetail:
    artifact = record.get("artifact") or {}
    analysis = record.get("analysis") or {}
    customer = record.get("customer") or {}
    return calllogdetail(
        id = record["id"],
        vapi_call_id = record["id"],
        status = str(record.get("status") or "UNKNOWN").upper().replace("-", "_"),
        started_at = parse_datetime(record.get("startedAt")),
        ended_at = parse_datetime(record.get("endedAt")),
        ended_reason = record.get("endedReason"),
        phone_number = mask_phone(customer.get("number")),
        transcript = artifact.get("transcript") or record.get("transcript"),
        summary = analysis.get("summary") or record.get("summary"),
        recording_url = (artifact.get("recording") or {}).get("stereoUrl") or artifact.get("recordingUrl"),
    )


@router.get("/{log_id}", response_model= calllogdetail)
async def get_call_log(log_id: str, db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice),
                       vapi: VapiApi = Depends(get_vapi_client)):
    call_log = db.query(CallLog).filter(
        CallLog.practice_id == practice.id,
        or_(CallLog.id == log_id, CallLog.vapi_call_id == log_id),
    ).first()
    if call_log is not None:
        return masked(call_log, calllogdetail)

    if not vapi.configured or not practice.vapi_assistant_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail = "Call log not found")

    try:
        record = await vapi.get_call(log_id)
    except (GatewayError, circuit_breaker_open_error) as e:
        log.info("call not found on voice platform: %s", e, extra = {"practice_id": practice.id})
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail = "Call log not found")

    # never expose another practice's call
    if record.get("assistantId") != practice.vapi_assistant_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail = "Call log not found")

    enqueue_call_sync(practice.id, log_id)
    return _from_platform_record(record)


@router.post("/sync", status_code= status.HTTP_202_ACCEPTED, response_model= syncresponse)
async def sync_call_logs(since_hours: int = Query(24, ge=1, le=24 * 30), practice: Practice = Depends(get_current_practice)):
    if not practice.vapi_assistant_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail = "AI assistant is not configured")
    job_id = enqueue_assistant_sync(practice.id, since_hours)
    if job_id is None:
        return syncresponse(queued = False, message = "Sync could not be queued, try again later")
    return syncresponse(queued = True, job_id = job_id, message = "Call sync queued")
