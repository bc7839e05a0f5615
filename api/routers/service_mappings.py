from fastapi import Depends, APIRouter, status, HTTPException, Request
from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from core.database import get_db
from core.models import Practice, ServiceMapping
from core.schemas import servicemappingcreate, servicemappingout
from api.deps import get_current_practice
import logging

log = logging.getLogger(__name__)


router = APIRouter(
    prefix = "/practice/service-mappings",
    tags= ["Service Mappings"]
    )


@router.get("/", response_model= list[servicemappingout])
async def list_mappings(db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice)):
    return db.query(ServiceMapping).filter(ServiceMapping.practice_id == practice.id)\
        .order_by(ServiceMapping.spoken_service_name).all()


@router.post("/", status_code= status.HTTP_201_CREATED, response_model= servicemappingout)
async def create_mapping(payload: servicemappingcreate, request: Request, db: Session = Depends(get_db),
                         practice: Practice = Depends(get_current_practice)):
    spoken = payload.spoken_service_name.strip()
    existing = db.query(ServiceMapping).filter(
        ServiceMapping.practice_id == practice.id,
        func.lower(ServiceMapping.spoken_service_name) == spoken.lower(),
    ).first()
    if existing:
        raise HTTPException(status.HTTP_409_CONFLICT, detail = "A mapping for this service name already exists")

    mapping = ServiceMapping(
        practice_id = practice.id,
        spoken_service_name = spoken,
        nexhealth_appointment_type_id = payload.nexhealth_appointment_type_id,
        default_duration_minutes = payload.default_duration_minutes,
        is_active = payload.is_active,
    )
    try:
        db.add(mapping)
        db.commit()
        db.refresh(mapping)
    except IntegrityError:
        db.rollback()
        raise HTTPException(status.HTTP_409_CONFLICT, detail = "A mapping for this service name already exists")
    except SQLAlchemyError:
        db.rollback()
        log.exception("Database error while creating service mapping", extra = {
            "practice_id": practice.id,
            "request_id": getattr(request.state, "request_id", None),
        })
        raise HTTPException(status_code = status.HTTP_500_INTERNAL_SERVER_ERROR, detail = "Unable to create mapping at this time")
    return mapping


@router.delete("/{mapping_id}", status_code= status.HTTP_204_NO_CONTENT)
async def delete_mapping(mapping_id: str, db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice)):
    # scoped to the caller's practice so other tenants' ids read as missing
    mapping = db.query(ServiceMapping).filter(ServiceMapping.id == mapping_id,
                                              ServiceMapping.practice_id == practice.id).first()
    if not mapping:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail = "Service mapping not found")
    db.delete(mapping)
    db.commit()
