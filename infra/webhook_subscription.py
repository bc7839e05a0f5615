import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from core.circuit_breaker import circuit_breaker_open_error
from core.models import Practice, WebhookStatus
from core.utils import utcnow
from sdk import errors
from sdk.errors import GatewayError
from sdk.nexhealth_sdk import NexHealthApi

log = logging.getLogger(__name__)

STATUS_MESSAGES = {
    WebhookStatus.CONNECTED.value: "Webhook connected. Appointment sync updates are being received.",
    WebhookStatus.CONNECTING.value: "Webhook connection in progress.",
    WebhookStatus.DISCONNECTED.value: "Webhook disconnected. Appointment sync updates will not be received.",
    WebhookStatus.ERROR.value: "Webhook connection failed. Retry the setup or contact support.",
    WebhookStatus.UNKNOWN.value: "Webhook status unknown. Run the webhook setup to connect.",
}


def target_url() -> str:
    return f"{settings.app_base_url.rstrip('/')}/webhook/scheduling"


async def resolve_endpoint_id(nexhealth: NexHealthApi) -> str:
    if settings.nexhealth_webhook_endpoint_id:
        return settings.nexhealth_webhook_endpoint_id

    url = target_url()
    endpoints = await nexhealth.list_webhook_endpoints() or []
    for endpoint in endpoints:
        if endpoint.get("target_url") == url:
            return str(endpoint["id"])

    created = await nexhealth.create_webhook_endpoint(url)
    log.info("webhook endpoint created", extra={"target_url": url})
    return str(created["id"])


async def subscribe_practice(db: Session, practice: Practice, nexhealth: NexHealthApi) -> dict:
    """Subscribe the practice's subdomain to appointment insertion events and
    record the outcome on the practice row."""
    if not practice.nexhealth_subdomain:
        return {"success": False, "status": WebhookStatus.ERROR.value, "error": "SUBDOMAIN_MISSING"}

    practice.webhook_status = WebhookStatus.CONNECTING.value
    practice.webhook_last_attempt = utcnow()

    result = {"success": True, "status": WebhookStatus.CONNECTED.value}
    try:
        endpoint_id = await resolve_endpoint_id(nexhealth)
        subscription = await nexhealth.subscribe_to_webhooks(endpoint_id, practice.nexhealth_subdomain)
        if isinstance(subscription, dict) and subscription.get("id") is not None:
            practice.webhook_subscription_id = str(subscription["id"])
    except GatewayError as e:
        if e.kind == errors.DUPLICATE:
            log.info("practice already subscribed", extra={"practice_id": practice.id})
        else:
            code = {errors.NOT_FOUND: "SUBDOMAIN_NOT_FOUND",
                    errors.RATE_LIMITED: "RATE_LIMITED"}.get(e.kind, "SUBSCRIPTION_FAILED")
            log.error("webhook subscription failed: %s", e, extra={"practice_id": practice.id, "error_code": code})
            result = {"success": False, "status": WebhookStatus.ERROR.value, "error": code, "detail": str(e)[:200]}
    except circuit_breaker_open_error as e:
        result = {"success": False, "status": WebhookStatus.ERROR.value, "error": "SUBSCRIPTION_FAILED",
                  "detail": str(e)}

    practice.webhook_status = result["status"]
    if result["success"]:
        practice.webhook_last_success = utcnow()
        practice.webhook_error_message = None
    else:
        practice.webhook_error_message = result.get("detail") or result["error"]

    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Database error while recording webhook status", extra={"practice_id": practice.id})
        raise
    return result


def describe_status(practice: Practice) -> dict:
    status = practice.webhook_status or WebhookStatus.UNKNOWN.value
    return {
        "status": status,
        "message": STATUS_MESSAGES.get(status, STATUS_MESSAGES[WebhookStatus.UNKNOWN.value]),
        "last_attempt": practice.webhook_last_attempt,
        "last_success": practice.webhook_last_success,
        "error_message": practice.webhook_error_message,
        "subscription_id": practice.webhook_subscription_id,
        "can_retry": status != WebhookStatus.CONNECTING.value and bool(practice.nexhealth_subdomain),
    }
