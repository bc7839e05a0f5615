import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from auth.oauth2 import create_access_token, create_refresh_token, verify_password
from core.database import get_db
from core.models import Users
from core.schemas import loginrequest, loginresponse
from infra import login_helper

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix = "/login",
    tags = ["Auth"]
)


@router.post("/", status_code= status.HTTP_200_OK, response_model= loginresponse)
async def login(payload: loginrequest, request: Request, db: Session = Depends(get_db)):
    ip = login_helper.get_client_ip(request)
    key = login_helper.login_attempts_key(payload.email, ip)

    if await login_helper.get_redis_attempts(key) >= login_helper.MAX_LOGIN_ATTEMPTS:
        logger.warning("login locked", extra={"ip": ip})
        raise HTTPException(status.HTTP_429_TOO_MANY_REQUESTS, detail = "Too many login attempts please try again later")

    user = db.query(Users).filter(Users.email == payload.email).first()
    if user is None or not verify_password(payload.password, hashed_password = user.password):
        await login_helper.handle_failed_login(key)

    await login_helper.clear_attempts(key)
    logger.info("practice owner logged in", extra={"user_id": user.id})

    return loginresponse(
        access_token = create_access_token(user = user),
        refresh_token = create_refresh_token(user = user),
    )
