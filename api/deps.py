from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from auth.oauth2 import get_current_user
from core.database import get_db
from core.models import Practice, Users
from infra import tenant_directory
from sdk.nexhealth_sdk import NexHealthApi
from sdk.vapi_sdk import VapiApi


def get_nexhealth_client(request: Request) -> NexHealthApi:
    return request.app.state.nexhealth


def get_vapi_client(request: Request) -> VapiApi:
    return request.app.state.vapi


def get_current_practice(current_user: Users = Depends(get_current_user), db: Session = Depends(get_db)) -> Practice:
    practice = tenant_directory.for_user(db, current_user)
    if practice is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Practice not found. Complete practice setup first")
    return practice


def require_nexhealth_config(practice: Practice = Depends(get_current_practice)) -> Practice:
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail="NexHealth subdomain and location ID must be configured")
    return practice
