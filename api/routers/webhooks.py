import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.deps import get_nexhealth_client
from auth.webhook_signature import enforce
from config import settings
from core.database import get_db
from core.schemas import VAPI_MESSAGE_TYPES, nexhealthwebhookevent, vapienvelope
from core.utils import utcnow
from infra import reconciler, tenant_directory
from infra.tool_calls import execute_tool_calls
from sdk.nexhealth_sdk import NexHealthApi

log = logging.getLogger(__name__)

router = APIRouter(
    prefix= "/webhook",
    tags= ["Webhooks"]
    )


def _invalid_payload(source: str, exc: Exception):
    log.warning("malformed %s webhook: %s", source, exc)
    return HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid webhook payload")


@router.post("/scheduling")
async def scheduling_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    enforce("nexhealth", body, signature=request.headers.get("X-Nexhealth-Signature"),
            secret=settings.nexhealth_webhook_secret)

    try:
        event = nexhealthwebhookevent.model_validate_json(body)
    except ValidationError as e:
        raise _invalid_payload("scheduling", e)

    try:
        outcome = reconciler.reconcile_scheduling_event(db, event)
    except SQLAlchemyError:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process webhook")

    return {
        "status": "success",
        "message": "Webhook processed successfully",
        "outcome": outcome,
        "timestamp": utcnow().isoformat(),
    }


@router.post("/voice-platform")
async def voice_platform_webhook(request: Request, db: Session = Depends(get_db),
                                 nexhealth: NexHealthApi = Depends(get_nexhealth_client)):
    body = await request.body()
    enforce("vapi", body, signature=request.headers.get("X-Vapi-Signature"),
            secret=settings.vapi_webhook_secret, shared_secret=request.headers.get("X-Vapi-Secret"))

    try:
        raw = json.loads(body)
    except ValueError as e:
        raise _invalid_payload("voice", e)
    message = raw.get("message") if isinstance(raw, dict) else None
    if not isinstance(message, dict):
        raise _invalid_payload("voice", ValueError("missing message object"))

    message_type = message.get("type")
    if message_type not in VAPI_MESSAGE_TYPES:
        log.info("voice message type ignored", extra={"type": message_type})
        return {"status": "ignored", "type": message_type}

    try:
        msg = vapienvelope.model_validate(raw).message
    except ValidationError as e:
        raise _invalid_payload("voice", e)

    practice = tenant_directory.by_assistant_id(db, msg.assistant_id)
    if practice is None:
        log.warning("no practice for assistant", extra={"assistant_id": msg.assistant_id, "vapi_call_id": msg.call.id})

    if msg.type == "tool-calls":
        if practice is not None:
            practice_id = practice.id
            try:
                reconciler.handle_tool_calls(db, practice, msg)
            except SQLAlchemyError:
                # the caller is waiting on the tool results, the call log catches up on the next event
                log.exception("call log not updated for tool calls", extra={"practice_id": practice_id,
                                                                              "vapi_call_id": msg.call.id})
        results = await execute_tool_calls(db, practice, msg.call.id, msg.toolCallList, nexhealth)
        return {"results": results}

    if practice is None:
        return {"status": "success", "message": "No practice for assistant"}
    try:
        reconciler.reconcile_voice_event(db, practice, msg)
    except SQLAlchemyError:
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Unable to process webhook")

    return {"status": "success", "type": msg.type}


@router.get("/scheduling")
async def scheduling_webhook_health():
    return {"status": "ok", "message": "Scheduling webhook endpoint is live", "timestamp": utcnow().isoformat()}


@router.get("/voice-platform")
async def voice_platform_webhook_health():
    return {"status": "ok", "message": "Voice platform webhook endpoint is live", "timestamp": utcnow().isoformat()}
