from fastapi import Depends, APIRouter, Query
from sqlalchemy import func
from sqlalchemy.orm import Session
from core.database import get_db
from core.models import Practice, CallLog
from core.schemas import calllogpage, patientsummary
from core.utils import mask_phone, page_info
from api.deps import get_current_practice
from api.routers.call_logs import masked


router = APIRouter(
    tags= ["Appointments"]
    )


@router.get("/appointments", response_model= calllogpage)
async def booked_appointments(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                              db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice)):
    query = db.query(CallLog).filter(CallLog.practice_id == practice.id, CallLog.appointment_id.isnot(None))
    total = query.count()
    rows = query.order_by(CallLog.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "call_logs": [masked(row) for row in rows],
        "pagination": page_info(page, limit, total),
    }


@router.get("/patients", response_model= list[patientsummary])
async def patients(db: Session = Depends(get_db), practice: Practice = Depends(get_current_practice)):
    rows = db.query(
        CallLog.patient_id,
        func.max(CallLog.phone_number),
        func.count(CallLog.id),
        func.count(CallLog.appointment_id),
        func.max(CallLog.created_at),
    ).filter(CallLog.practice_id == practice.id, CallLog.patient_id.isnot(None))\
        .group_by(CallLog.patient_id)\
        .order_by(func.max(CallLog.created_at).desc()).all()

    return [
        patientsummary(
            patient_id = patient_id,
            phone_number = mask_phone(phone),
            interaction_count = interactions,
            booked_appointments = booked,
            last_interaction = last_seen,
        )
        for patient_id, phone, interactions, booked, last_seen in rows
    ]
