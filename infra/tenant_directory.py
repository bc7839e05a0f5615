from typing import Optional
from sqlalchemy.orm import Session
from core.models import Practice, Users


def by_subdomain(db: Session, subdomain: Optional[str]) -> Optional[Practice]:
    if not subdomain:
        return None
    return db.query(Practice).filter(Practice.nexhealth_subdomain == subdomain).first()


def by_assistant_id(db: Session, assistant_id: Optional[str]) -> Optional[Practice]:
    if not assistant_id:
        return None
    return db.query(Practice).filter(Practice.vapi_assistant_id == assistant_id).first()


def for_user(db: Session, user: Users) -> Optional[Practice]:
    return db.query(Practice).filter(Practice.owner_id == user.id).first()
