from fastapi import Depends, APIRouter, status, HTTPException, Request
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from core.database import get_db
from core.models import Users, Practice
from core.schemas import practicesetup, practiceout, aiconfig, webhookstatusout, setupvalidation
from auth.oauth2 import get_current_user
from api.deps import get_current_practice, get_nexhealth_client, get_vapi_client
from infra import tenant_directory
from infra.assistant_provisioning import provision_assistant
from infra.webhook_subscription import subscribe_practice, describe_status
from infra.setup_validation import validate_practice
from sdk.nexhealth_sdk import NexHealthApi
from sdk.vapi_sdk import VapiApi
import logging

log = logging.getLogger(__name__)


router = APIRouter(
    prefix = "/practice",
    tags= ["Practice"]
    )


async def _refresh_assistant(db: Session, practice: Practice, vapi: VapiApi, request: Request):
    assistant_id = await provision_assistant(practice, vapi)
    if assistant_id == practice.vapi_assistant_id:
        return
    practice.vapi_assistant_id = assistant_id
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("could not store assistant id", extra={
            "practice_id": practice.id,
            "request_id": getattr(request.state, "request_id", None),
        })


@router.get("/setup", response_model= practiceout)
async def get_setup(practice: Practice = Depends(get_current_practice)):
    return practice


@router.post("/setup", response_model= practiceout)
async def save_setup(payload: practicesetup, request: Request, db: Session = Depends(get_db),
                     current_user: Users = Depends(get_current_user),
                     nexhealth: NexHealthApi = Depends(get_nexhealth_client),
                     vapi: VapiApi = Depends(get_vapi_client)):

    taken = tenant_directory.by_subdomain(db, payload.nexhealth_subdomain)
    if taken is not None and taken.owner_id != current_user.id:
        raise HTTPException(status.HTTP_409_CONFLICT, detail = "This NexHealth subdomain is already registered")

    practice = tenant_directory.for_user(db, current_user)
    subdomain_changed = practice is None or practice.nexhealth_subdomain != payload.nexhealth_subdomain
    if practice is None:
        practice = Practice(owner_id = current_user.id)
        db.add(practice)

    practice.name = payload.name
    practice.nexhealth_subdomain = payload.nexhealth_subdomain
    practice.nexhealth_location_id = payload.nexhealth_location_id
    practice.selected_provider_ids = payload.selected_provider_ids
    practice.default_operatory_ids = payload.default_operatory_ids
    practice.timezone = payload.timezone

    try:
        db.commit()
        db.refresh(practice)
        log.info("practice setup saved", extra = {"user_id": current_user.id, "practice_id": practice.id})
    except IntegrityError:
        db.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, detail = "This NexHealth subdomain is already registered")
    except SQLAlchemyError:
        db.rollback()
        log.exception("Database error while saving practice setup", extra= {
            "user_id" : current_user.id,
            "request_id" : getattr(request.state, "request_id", None),
            })
        raise HTTPException(status_code = status.HTTP_500_INTERNAL_SERVER_ERROR, detail = "Unable to save practice at this time")

    await _refresh_assistant(db, practice, vapi, request)

    if subdomain_changed or practice.webhook_status != "CONNECTED":
        try:
            await subscribe_practice(db, practice, nexhealth)
        except SQLAlchemyError:
            log.exception("webhook subscription not recorded", extra = {"practice_id": practice.id})

    db.refresh(practice)
    return practice


@router.get("/ai-config", response_model= aiconfig)
async def get_ai_config(practice: Practice = Depends(get_current_practice)):
    return aiconfig(
        vapi_voice_id = practice.vapi_voice_id,
        vapi_system_prompt_override = practice.vapi_system_prompt_override,
        vapi_first_message = practice.vapi_first_message,
    )


@router.post("/ai-config", response_model= practiceout)
async def save_ai_config(payload: aiconfig, request: Request, db: Session = Depends(get_db),
                         practice: Practice = Depends(get_current_practice),
                         vapi: VapiApi = Depends(get_vapi_client)):
    practice.vapi_voice_id = payload.vapi_voice_id or "jennifer"
    practice.vapi_system_prompt_override = payload.vapi_system_prompt_override
    practice.vapi_first_message = payload.vapi_first_message
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Database error while saving ai config", extra = {"practice_id": practice.id})
        raise HTTPException(status_code = status.HTTP_500_INTERNAL_SERVER_ERROR, detail = "Unable to save AI configuration")

    await _refresh_assistant(db, practice, vapi, request)
    db.refresh(practice)
    return practice


@router.get("/validate-setup", response_model= setupvalidation)
async def validate_setup(practice: Practice = Depends(get_current_practice)):
    return validate_practice(practice)


@router.post("/webhook-setup")
async def retry_webhook_setup(db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice),
                              nexhealth: NexHealthApi = Depends(get_nexhealth_client)):
    if not practice.nexhealth_subdomain:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail = "NexHealth subdomain must be configured first")
    try:
        result = await subscribe_practice(db, practice, nexhealth)
    except SQLAlchemyError:
        raise HTTPException(status_code = status.HTTP_500_INTERNAL_SERVER_ERROR, detail = "Unable to record webhook status")
    return {**result, "webhook": describe_status(practice)}


@router.get("/webhook-status", response_model= webhookstatusout)
async def webhook_status(practice: Practice = Depends(get_current_practice)):
    return describe_status(practice)
