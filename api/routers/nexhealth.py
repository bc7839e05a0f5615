from fastapi import Depends, APIRouter, status, HTTPException
from core.models import Practice
from core.circuit_breaker import circuit_breaker_open_error
from api.deps import require_nexhealth_config, get_nexhealth_client
from sdk.errors import GatewayError
from sdk.nexhealth_sdk import NexHealthApi
import logging

log = logging.getLogger(__name__)


router = APIRouter(
    prefix = "/nexhealth",
    tags= ["NexHealth"]
    )


def _stringify_ids(items) -> list:
    out = []
    for item in items or []:
        item = dict(item)
        if item.get("id") is not None:
            item["id"] = str(item["id"])
        out.append(item)
    return out


async def _proxy(call, practice: Practice, what: str):
    try:
        data = await call(practice.nexhealth_subdomain, practice.nexhealth_location_id)
    except (GatewayError, circuit_breaker_open_error) as e:
        log.error("failed to fetch %s: %s", what, e, extra = {"practice_id": practice.id})
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail = f"Failed to fetch {what} from NexHealth")
    if isinstance(data, dict):
        data = data.get(what.replace(" ", "_")) or []
    return _stringify_ids(data)


@router.get("/appointment-types")
async def appointment_types(practice: Practice = Depends(require_nexhealth_config),
                            nexhealth: NexHealthApi = Depends(get_nexhealth_client)):
    return await _proxy(nexhealth.get_appointment_types, practice, "appointment types")


@router.get("/providers")
async def providers(practice: Practice = Depends(require_nexhealth_config),
                    nexhealth: NexHealthApi = Depends(get_nexhealth_client)):
    return await _proxy(nexhealth.get_providers, practice, "providers")


@router.get("/operatories")
async def operatories(practice: Practice = Depends(require_nexhealth_config),
                      nexhealth: NexHealthApi = Depends(get_nexhealth_client)):
    return await _proxy(nexhealth.get_operatories, practice, "operatories")
