import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth.oauth2 import hashpassword
from core.database import get_db
from core.models import Users
from core.schemas import usercreate, userout

log = logging.getLogger(__name__)

EMAIL_TAKEN = "User with this email already exist"

router = APIRouter(
    prefix = "/register",
    tags = ["Registration"]
)


@router.post("/", status_code= status.HTTP_201_CREATED, response_model= userout)
async def register_owner(payload: usercreate, db: Session = Depends(get_db)):
    """Create a practice owner account. The practice itself is configured later via /practice/setup."""
    if db.query(Users).filter(Users.email == payload.email).first():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail = EMAIL_TAKEN)

    user = Users(username = payload.username, email = payload.email, password = hashpassword(payload.password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # lost a race with a concurrent registration
        db.rollback()
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail = EMAIL_TAKEN)
    db.refresh(user)
    log.info("practice owner registered", extra = {"user_id": user.id})
    return user
