import logging
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config import settings
from core.database import get_db
from core.models import Users

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login")


def hashpassword(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _issue(user: Users, token_type: str, lifetime: timedelta) -> str:
    claims = {
        "id": user.id,
        "type": token_type,
        # bumped on logout so every token issued before it stops validating
        "token_version": user.token_version,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.algorithm)


def create_access_token(*, user: Users) -> str:
    return _issue(user, ACCESS, timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(*, user: Users) -> str:
    return _issue(user, REFRESH, timedelta(days=settings.refresh_token_expire_days))


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as e:
        raise ValueError("invalid token") from e


def _unauthorized() -> HTTPException:
    return HTTPException(status.HTTP_401_UNAUTHORIZED, detail="Invalid Token",
                         headers={"WWW-Authenticate": "Bearer"})


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> Users:
    try:
        claims = decode_token(token)
    except ValueError as e:
        logger.warning("invalid bearer token: %s", e)
        raise _unauthorized()

    user_id = claims.get("id")
    if claims.get("type") != ACCESS or user_id is None or claims.get("token_version") is None:
        logger.warning("bearer token rejected", extra={"user_id": user_id, "token_type": claims.get("type")})
        raise _unauthorized()

    user = db.query(Users).filter(Users.id == user_id).first()
    if user is None or user.token_version != claims["token_version"]:
        raise _unauthorized()
    return user
