"""Merges voice-platform call events and scheduling-system appointment events
into one CallLog row per call.

Deliveries are at-least-once and may arrive in any order, so every write goes
through an upsert keyed on the external call id and a status guard that never
moves a call backwards.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.models import CallLog, CallStatus, Practice
from core.schemas import (endofcallreportmessage, nexhealthwebhookevent, statusupdatemessage, toolcallsmessage,
                          transcriptmessage, vapicall)
from core.utils import utcnow
from infra import tenant_directory

log = logging.getLogger(__name__)

STATUS_RANK = {
    CallStatus.INITIATED: 0,
    CallStatus.IN_PROGRESS: 1,
    CallStatus.ENDED: 2,
    CallStatus.COMPLETED_BOOKING: 3,
    CallStatus.COMPLETED_EHR_SYNCED: 4,
    CallStatus.FAILED_EHR_SYNC: 4,
}
EHR_OUTCOMES = (CallStatus.COMPLETED_EHR_SYNCED, CallStatus.FAILED_EHR_SYNC)

VAPI_STATUS_MAP = {
    "scheduled": CallStatus.INITIATED,
    "queued": CallStatus.INITIATED,
    "ringing": CallStatus.INITIATED,
    "in-progress": CallStatus.IN_PROGRESS,
    "forwarding": CallStatus.IN_PROGRESS,
    "ended": CallStatus.ENDED,
}

APPOINTMENT_RESOURCE = "Appointment"
APPOINTMENT_INSERTION = "appointment_insertion"


def can_transition(current: Optional[str], new: CallStatus) -> bool:
    if current is None:
        return True
    current_status = CallStatus(current)
    if new == CallStatus.ERROR:
        return True
    if current_status == CallStatus.ERROR:
        return new in EHR_OUTCOMES
    # equal rank allowed so a later EHR outcome replaces an earlier one
    return STATUS_RANK[new] >= STATUS_RANK[current_status]


def apply_status(call_log: CallLog, new: CallStatus) -> bool:
    if not can_transition(call_log.status, new):
        log.info("status transition ignored", extra={"vapi_call_id": call_log.vapi_call_id,
                                                     "current": call_log.status, "requested": new.value})
        return False
    call_log.status = new.value
    return True


def map_vapi_status(raw: Optional[str]) -> Optional[CallStatus]:
    if not raw:
        return None
    mapped = VAPI_STATUS_MAP.get(raw.lower())
    if mapped is not None:
        return mapped
    try:
        return CallStatus(raw.upper())
    except ValueError:
        return None


def _with_error_ending(status: Optional[CallStatus], ended_reason: Optional[str]) -> Optional[CallStatus]:
    # the platform reports failed calls as "ended" with an error reason
    if status == CallStatus.ENDED and ended_reason and "error" in ended_reason.lower():
        return CallStatus.ERROR
    return status


def _commit(db: Session, call_log: CallLog) -> CallLog:
    try:
        db.commit()
        db.refresh(call_log)
    except SQLAlchemyError:
        db.rollback()
        log.exception("Database error while reconciling call", extra={"vapi_call_id": call_log.vapi_call_id})
        raise
    return call_log


def get_or_create_call_log(db: Session, practice: Practice, call: vapicall) -> Optional[CallLog]:
    call_log = db.query(CallLog).filter(CallLog.vapi_call_id == call.id).first()
    if call_log is None:
        call_log = CallLog(practice_id=practice.id, vapi_call_id=call.id, status=CallStatus.INITIATED.value)
        db.add(call_log)
        try:
            db.commit()
        except IntegrityError:
            # a concurrent delivery inserted first
            db.rollback()
            call_log = db.query(CallLog).filter(CallLog.vapi_call_id == call.id).first()
            if call_log is None:
                raise
        else:
            db.refresh(call_log)
            log.info("call log created", extra={"vapi_call_id": call.id, "practice_id": practice.id})

    if call_log.practice_id != practice.id:
        log.warning("call id already belongs to another practice", extra={"vapi_call_id": call.id,
                                                                          "practice_id": practice.id})
        return None

    if call_log.started_at is None and call.startedAt is not None:
        call_log.started_at = call.startedAt
    if call_log.phone_number is None and call.caller_number:
        call_log.phone_number = call.caller_number
    return call_log


def handle_tool_calls(db: Session, practice: Practice, message: toolcallsmessage) -> Optional[CallLog]:
    call_log = get_or_create_call_log(db, practice, message.call)
    if call_log is None:
        return None
    apply_status(call_log, CallStatus.IN_PROGRESS)
    return _commit(db, call_log)


def handle_status_update(db: Session, practice: Practice, message: statusupdatemessage) -> Optional[CallLog]:
    new_status = _with_error_ending(map_vapi_status(message.status), message.endedReason)
    if new_status is None:
        log.warning("unrecognised call status ignored", extra={"vapi_call_id": message.call.id,
                                                                "status": message.status})
    call_log = get_or_create_call_log(db, practice, message.call)
    if call_log is None:
        return None
    if new_status is not None:
        apply_status(call_log, new_status)
    if message.endedReason:
        call_log.ended_reason = message.endedReason
    return _commit(db, call_log)


def handle_transcript(db: Session, practice: Practice, message: transcriptmessage) -> Optional[CallLog]:
    if message.transcriptType != "final":
        return None
    call_log = get_or_create_call_log(db, practice, message.call)
    if call_log is None:
        return None
    line = f"{message.role}: {message.transcript}"
    call_log.transcript = f"{call_log.transcript}\n{line}" if call_log.transcript else line
    return _commit(db, call_log)


def handle_end_of_call(db: Session, practice: Practice, message: endofcallreportmessage) -> Optional[CallLog]:
    call_log = get_or_create_call_log(db, practice, message.call)
    if call_log is None:
        return None

    reason = message.endedReason
    apply_status(call_log, _with_error_ending(CallStatus.ENDED, reason))

    if reason:
        call_log.ended_reason = reason
    if message.call.endedAt is not None:
        call_log.ended_at = message.call.endedAt
    elif call_log.ended_at is None:
        call_log.ended_at = utcnow()

    artifact = message.artifact
    transcript = (artifact.transcript if artifact else None) or message.transcript
    if transcript:
        call_log.transcript = transcript
    summary = (message.analysis.summary if message.analysis else None) or message.summary
    if summary:
        call_log.summary = summary
    recording_url = (artifact.recording_url if artifact else None) or message.recordingUrl
    if recording_url:
        call_log.recording_url = recording_url
    return _commit(db, call_log)


def apply_call_record(db: Session, practice: Practice, record: dict) -> Optional[CallLog]:
    """Merge a call object fetched from the voice platform API."""
    call = vapicall.model_validate(record)
    call_log = get_or_create_call_log(db, practice, call)
    if call_log is None:
        return None

    reason = record.get("endedReason")
    new_status = _with_error_ending(map_vapi_status(record.get("status")), reason)
    if new_status is not None:
        apply_status(call_log, new_status)

    if reason:
        call_log.ended_reason = reason
    if call.endedAt is not None:
        call_log.ended_at = call.endedAt

    artifact = record.get("artifact") or {}
    analysis = record.get("analysis") or {}
    recording = artifact.get("recording") or {}
    transcript = artifact.get("transcript") or record.get("transcript")
    summary = analysis.get("summary") or record.get("summary")
    recording_url = recording.get("stereoUrl") or artifact.get("recordingUrl") or record.get("recordingUrl")
    if transcript:
        call_log.transcript = transcript
    if summary:
        call_log.summary = summary
    if recording_url:
        call_log.recording_url = recording_url
    return _commit(db, call_log)


VOICE_HANDLERS = {
    "tool-calls": handle_tool_calls,
    "status-update": handle_status_update,
    "transcript": handle_transcript,
    "end-of-call-report": handle_end_of_call,
}


def reconcile_voice_event(db: Session, practice: Practice, message) -> Optional[CallLog]:
    return VOICE_HANDLERS[message.type](db, practice, message)


def reconcile_scheduling_event(db: Session, event: nexhealthwebhookevent) -> str:
    """Apply an appointment sync outcome to the call that booked it.

    Returns one of ``ignored``, ``unknown_tenant``, ``not_found``, ``synced``,
    ``failed``. None of these is an error for the sender.
    """
    if event.resource_type != APPOINTMENT_RESOURCE or event.event != APPOINTMENT_INSERTION:
        log.info("scheduling event ignored", extra={"resource_type": event.resource_type, "event": event.event})
        return "ignored"

    practice = tenant_directory.by_subdomain(db, event.subdomain)
    if practice is None:
        log.warning("no practice for subdomain", extra={"subdomain": event.subdomain})
        return "unknown_tenant"

    appointment_id = event.data.id
    if not appointment_id:
        log.warning("appointment event without id", extra={"practice_id": practice.id})
        return "ignored"

    call_log = db.query(CallLog).filter(CallLog.practice_id == practice.id,
                                        CallLog.appointment_id == appointment_id).first()
    if call_log is None:
        log.info("no call log for appointment", extra={"practice_id": practice.id, "appointment_id": appointment_id})
        return "not_found"

    if event.status == "success":
        apply_status(call_log, CallStatus.COMPLETED_EHR_SYNCED)
        call_log.ehr_foreign_id = event.data.foreign_id
        call_log.ehr_sync_summary = f"Appointment successfully synced to EHR with ID: {event.data.foreign_id}"
        outcome = "synced"
    else:
        apply_status(call_log, CallStatus.FAILED_EHR_SYNC)
        call_log.ehr_sync_summary = f"Appointment failed to sync to EHR: {event.message or 'Unknown error'}"
        outcome = "failed"

    _commit(db, call_log)
    log.info("appointment sync recorded", extra={"practice_id": practice.id, "appointment_id": appointment_id,
                                                 "outcome": outcome})
    return outcome
