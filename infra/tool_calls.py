import json
import logging
import re
from datetime import datetime
from typing import Optional

import pytz
from dateutil import parser
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.circuit_breaker import circuit_breaker_open_error
from core.models import CallLog, CallStatus, Practice, ServiceMapping
from core.schemas import vapitoolcall
from core.utils import describe_slot
from infra.reconciler import apply_status
from sdk.errors import GatewayError
from sdk.nexhealth_sdk import NexHealthApi

logger = logging.getLogger(__name__)

MAX_SLOTS_OFFERED = 5
GATEWAY_ERRORS = (GatewayError, circuit_breaker_open_error)

SERVICE_VARIATIONS = (
    (("clean",), ("cleaning", "general cleaning", "prophy", "prophylaxis", "hygiene", "dental cleaning")),
    (("check",), ("checkup", "check-up", "examination", "exam", "routine checkup", "dental exam")),
    (("consult", "new patient"), ("consultation", "new patient consultation", "new patient", "consult",
                                  "initial consultation")),
    (("emergen", "urgent", "pain"), ("emergency", "urgent care", "pain visit", "emergency appointment")),
)

BOOKING_ERRORS = (
    (("patient",), "PATIENT_ERROR",
     "There was an issue with the patient information. Please try again or call our office."),
    (("provider",), "PROVIDER_ERROR",
     "The selected provider is not available. Please try a different time or call our office."),
    (("time", "slot"), "TIME_SLOT_ERROR",
     "That time slot is no longer available. Please select a different time."),
    (("duplicate", "conflict"), "SCHEDULING_CONFLICT",
     "There's a scheduling conflict. Please select a different time or call our office."),
)


def _failure(error_code: str, message: str, **extra) -> dict:
    return {"success": False, "error_code": error_code, "message_to_patient": message, **extra}


def _config_incomplete() -> dict:
    return _failure("PRACTICE_CONFIG_INCOMPLETE",
                    "I'm having trouble accessing our scheduling system due to a configuration issue. "
                    "Please call our office directly for assistance.")


def _digits(value) -> str:
    return re.sub(r"\D", "", str(value or ""))


def _update_call_log(db: Session, practice: Practice, vapi_call_id: str, status: Optional[CallStatus] = None,
                     **fields) -> None:
    call_log = db.query(CallLog).filter(CallLog.vapi_call_id == vapi_call_id,
                                        CallLog.practice_id == practice.id).first()
    if call_log is None:
        logger.warning("tool call for unknown call log", extra={"vapi_call_id": vapi_call_id})
        return
    for key, value in fields.items():
        setattr(call_log, key, value)
    if status is not None:
        apply_status(call_log, status)
    try:
        db.commit()
    except SQLAlchemyError:
        # the patient-facing result does not depend on the log write
        db.rollback()
        logger.exception("Database error while updating call log from tool", extra={"vapi_call_id": vapi_call_id})


def find_service_mapping(db: Session, practice: Practice, reason: str) -> Optional[ServiceMapping]:
    def lookup(name):
        return db.query(ServiceMapping).filter(
            ServiceMapping.practice_id == practice.id,
            ServiceMapping.is_active.is_(True),
            func.lower(ServiceMapping.spoken_service_name) == name.strip().lower(),
        ).first()

    mapping = lookup(reason)
    if mapping is not None:
        return mapping

    lowered = reason.lower()
    for needles, variations in SERVICE_VARIATIONS:
        if any(n in lowered for n in needles):
            for variation in variations:
                mapping = lookup(variation)
                if mapping is not None:
                    return mapping
    return None


def _matches_patient(candidate: dict, first_name: str, last_name: str, phone: str, dob: Optional[str]) -> bool:
    bio = candidate.get("bio") or {}
    if (candidate.get("first_name") or "").lower() != first_name.lower():
        return False
    if (candidate.get("last_name") or "").lower() != last_name.lower():
        return False
    phones = {_digits(candidate.get("phone_number")), _digits(bio.get("phone_number")),
              _digits(bio.get("cell_phone_number")), _digits(bio.get("home_phone_number"))}
    if _digits(phone) not in phones:
        return False
    if dob and bio.get("date_of_birth") != dob:
        return False
    return True


async def identify_patient(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                           nexhealth: NexHealthApi) -> dict:
    first_name = args.get("first_name")
    last_name = args.get("last_name")
    phone = args.get("phone_number")
    if not first_name or not last_name or not phone:
        return _failure("MISSING_REQUIRED_INFO",
                        "I need at least your first name, last name, and phone number to proceed. "
                        "Could you please provide those details?")
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        return _config_incomplete()
    if not practice.selected_provider_ids:
        return _failure("NO_PROVIDERS_CONFIGURED",
                        "I apologize, but our system isn't properly configured for new patient registration "
                        "right now. Please call our office directly and a staff member will help you.")

    dob = args.get("date_of_birth")
    if dob:
        try:
            dob = parser.parse(dob).date().isoformat()
        except (ValueError, OverflowError):
            logger.warning("date_of_birth not parseable, using as given")

    patient_id = None
    is_new = True
    try:
        found = await nexhealth.search_patients(practice.nexhealth_subdomain, practice.nexhealth_location_id,
                                                first_name=first_name, last_name=last_name,
                                                phone_number=phone, date_of_birth=dob)
        if isinstance(found, dict):
            found = found.get("patients") or []
        for candidate in found or []:
            if _matches_patient(candidate, first_name, last_name, phone, dob):
                patient_id = str(candidate["id"])
                is_new = False
                break
    except GATEWAY_ERRORS as e:
        # creation is still attempted
        logger.warning("patient search failed: %s", e, extra={"practice_id": practice.id})

    if patient_id is None:
        patient = {
            "first_name": first_name,
            "last_name": last_name,
            "phone_number": phone,
            "date_of_birth": dob,
            "email": args.get("email"),
            "gender": args.get("gender") or "Female",
        }
        try:
            created = await nexhealth.create_patient(practice.nexhealth_subdomain, practice.nexhealth_location_id,
                                                     practice.selected_provider_ids[0],
                                                     {k: v for k, v in patient.items() if v})
        except GATEWAY_ERRORS as e:
            logger.error("patient creation failed: %s", e, extra={"practice_id": practice.id})
            return _failure("PATIENT_CREATION_FAILED",
                            "I'm having trouble creating your patient record right now. Please try calling back "
                            "in a few minutes, or call our office directly for assistance.",
                            technical_details=str(e)[:200])
        created = created or {}
        user = created.get("user") or {}
        new_id = user.get("id") or created.get("id")
        if new_id is None:
            return _failure("PATIENT_ID_UNAVAILABLE",
                            "I'm having a bit of trouble accessing patient records right now. "
                            "Could you try calling back in a few minutes?")
        patient_id = str(new_id)

    _update_call_log(db, practice, vapi_call_id, patient_id=patient_id,
                     detected_intent="new_patient_created" if is_new else "existing_patient_identified")

    if is_new:
        message = (f"Perfect! I've created your patient record, {first_name}. Welcome to our practice! "
                   "Now, what type of appointment would you like to schedule?")
    else:
        message = f"Welcome back, {first_name}! I found your existing record in our system. How can I help you today?"
    return {"success": True, "patient_id": patient_id, "is_new_patient": is_new, "message_to_patient": message}


async def check_appointment_type(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                                 nexhealth: NexHealthApi) -> dict:
    reason = (args.get("patient_reason_for_visit") or "").strip()
    if not reason:
        return _failure("MISSING_REASON",
                        "I need to know what type of appointment you're looking for. "
                        "Could you tell me the reason for your visit?")
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        return _config_incomplete()

    mapping = find_service_mapping(db, practice, reason)
    if mapping is None:
        available = [m.spoken_service_name for m in practice.service_mappings if m.is_active][:5]
        suggestion = f"I can help with: {', '.join(available)}" if available else \
            "Let me get someone from our office to help you"
        return _failure("NO_SERVICE_MAPPING_FOUND",
                        f'I\'m not sure about "{reason}". {suggestion}. Could you try describing it differently?')

    try:
        appointment_type = await nexhealth.get_appointment_type(practice.nexhealth_subdomain,
                                                                practice.nexhealth_location_id,
                                                                mapping.nexhealth_appointment_type_id)
    except GATEWAY_ERRORS as e:
        logger.error("appointment type lookup failed: %s", e, extra={"practice_id": practice.id})
        return _failure("NEXHEALTH_API_ERROR",
                        "I'm having trouble looking up appointment types right now. "
                        "Please try again in a moment or call our office directly.")

    appointment_type = appointment_type or {}
    type_id = str(appointment_type.get("id", mapping.nexhealth_appointment_type_id))
    name = appointment_type.get("name") or mapping.spoken_service_name
    minutes = appointment_type.get("minutes") or mapping.default_duration_minutes or 30
    _update_call_log(db, practice, vapi_call_id, detected_intent=f"service_type_identified_{type_id}",
                     summary=f'Patient requested: "{reason}" -> Mapped to: "{name}"')
    return {
        "success": True,
        "appointment_type_id": type_id,
        "appointment_type_name": name,
        "duration_minutes": minutes,
        "message_to_patient": f"Okay, a {name}. That usually takes about {minutes} minutes. "
                              "Is that what you're looking for?",
    }


def _flatten_slots(response) -> list:
    slots = []
    for provider_block in response or []:
        for slot in provider_block.get("slots") or []:
            slots.append({
                "start_time": slot.get("time"),
                "end_time": slot.get("end_time"),
                "provider_id": str(provider_block.get("pid")) if provider_block.get("pid") is not None else None,
                "operatory_id": str(slot.get("operatory_id")) if slot.get("operatory_id") is not None else None,
                "location_id": str(provider_block.get("lid")) if provider_block.get("lid") is not None else None,
            })
    return slots


async def check_availability(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                             nexhealth: NexHealthApi) -> dict:
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        return _config_incomplete()

    appointment_type_id = args.get("appointment_type_id")
    service_description = args.get("service_description")
    if not appointment_type_id and service_description:
        mapping = find_service_mapping(db, practice, service_description)
        if mapping is None:
            return _failure("NO_SERVICE_MAPPING_FOUND",
                            f"I couldn't find a service called '{service_description}'. "
                            "Could you describe the visit differently?")
        appointment_type_id = mapping.nexhealth_appointment_type_id
    if not appointment_type_id:
        return _failure("MISSING_APPOINTMENT_TYPE",
                        "I need to know what type of appointment you're looking for. "
                        "Please tell me the reason for your visit first.")

    specific = args.get("search_type") == "specific_date"
    requested_date = args.get("requested_date")
    start_date = requested_date or datetime.now(pytz.timezone(practice.timezone)).date().isoformat()

    try:
        response = await nexhealth.get_appointment_slots(
            practice.nexhealth_subdomain, practice.nexhealth_location_id,
            appointment_type_id=str(appointment_type_id),
            start_date=start_date,
            days=1 if specific else 30,
            provider_ids=practice.selected_provider_ids,
            operatory_ids=practice.default_operatory_ids or None,
        )
    except GATEWAY_ERRORS as e:
        logger.error("slot search failed: %s", e, extra={"practice_id": practice.id})
        return _failure("SLOT_SEARCH_FAILED",
                        "I'm having trouble checking availability right now. "
                        "Please try again or call the office directly.",
                        technical_details=str(e)[:200])

    slots = _flatten_slots(response)
    if not slots:
        when = f"on {requested_date}" if specific else "in the next month"
        return _failure("NO_SLOTS_FOUND",
                        f"I'm sorry, I don't see any openings {when}. Would you like to try another date "
                        "or should I check for the next available appointment?",
                        available_slots=[])

    offered = slots[:MAX_SLOTS_OFFERED]
    described = ", ".join(describe_slot(s["start_time"], practice.timezone) for s in offered)
    when = f"on {requested_date}" if specific else "coming up"
    return {
        "success": True,
        "available_slots": offered,
        "appointment_type_id": str(appointment_type_id),
        "message_to_patient": f"Great! I have these times available {when}: {described}. "
                              "Which time works best for you?",
    }


def classify_booking_error(message: str):
    lowered = message.lower()
    for needles, code, text in BOOKING_ERRORS:
        if any(n in lowered for n in needles):
            return code, text
    return "BOOKING_FAILED", ("I'm sorry, I couldn't complete your booking right now. "
                              "Please try again or call the office directly.")


async def schedule_appointment(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                               nexhealth: NexHealthApi) -> dict:
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        return _config_incomplete()

    required = ("patient_id", "provider_id", "appointment_type_id", "start_time", "end_time")
    if any(not args.get(key) for key in required):
        return _failure("MISSING_BOOKING_INFO",
                        "I'm missing some information needed to book your appointment. "
                        "Please try selecting a time slot again.")

    appointment = {
        "patient_id": str(args["patient_id"]),
        "provider_id": str(args["provider_id"]),
        "operatory_id": str(args["operatory_id"]) if args.get("operatory_id") else None,
        "appointment_type_id": str(args["appointment_type_id"]),
        "start_time": args["start_time"],
        "end_time": args["end_time"],
        "note": args.get("note"),
    }
    try:
        booked = await nexhealth.book_appointment(practice.nexhealth_subdomain, practice.nexhealth_location_id,
                                                  appointment)
    except GATEWAY_ERRORS as e:
        logger.error("booking failed: %s", e, extra={"practice_id": practice.id, "vapi_call_id": vapi_call_id})
        code, text = classify_booking_error(str(e))
        return _failure(code, text, technical_details=str(e)[:200])

    booked = booked or {}
    if booked.get("id") is None:
        # without an id the booking cannot be confirmed or matched to the EHR sync event
        logger.error("booking response had no appointment id",
                     extra={"practice_id": practice.id, "vapi_call_id": vapi_call_id})
        return _failure("BOOKING_FAILED",
                        "I wasn't able to confirm your booking. Please call our office so we can make sure "
                        "your appointment is set.")
    appointment_id = str(booked["id"])
    _update_call_log(
        db, practice, vapi_call_id, status=CallStatus.COMPLETED_BOOKING,
        appointment_id=appointment_id,
        patient_id=appointment["patient_id"],
        provider_id=appointment["provider_id"],
        operatory_id=appointment["operatory_id"],
        appointment_type_id=appointment["appointment_type_id"],
        appointment_start_time=appointment["start_time"],
        appointment_end_time=appointment["end_time"],
        appointment_note=appointment["note"],
        detected_intent=f"booked_appointment_for_type_{appointment['appointment_type_id']}",
    )

    when = describe_slot(appointment["start_time"], practice.timezone)
    foreign_id = booked.get("foreign_id")
    return {
        "success": True,
        "nexhealth_appointment_id": appointment_id,
        "ehr_foreign_id": str(foreign_id) if foreign_id is not None else None,
        "message_to_patient": f"Perfect! You're all set for {when}. Your appointment confirmation number is "
                              f"{appointment_id}. We'll see you then!",
    }


async def get_patient_appointments(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                                   nexhealth: NexHealthApi) -> dict:
    patient_id = args.get("patient_id")
    if not patient_id:
        return _failure("MISSING_PATIENT_ID",
                        "I need to identify you first before I can look up your appointments.")

    booked = db.query(CallLog).filter(
        CallLog.practice_id == practice.id,
        CallLog.patient_id == str(patient_id),
        CallLog.appointment_id.isnot(None),
    ).order_by(CallLog.appointment_start_time).all()
    if not booked:
        return {"success": True, "appointments": [],
                "message_to_patient": "I don't see any appointments booked for you. Would you like to schedule one?"}

    appointments = [{
        "appointment_id": c.appointment_id,
        "start_time": c.appointment_start_time,
        "appointment_type_id": c.appointment_type_id,
        "status": c.status,
    } for c in booked]
    described = ", ".join(describe_slot(c.appointment_start_time, practice.timezone) for c in booked)
    return {"success": True, "appointments": appointments,
            "message_to_patient": f"I found these appointments for you: {described}. "
                                  "Would you like to make any changes?"}


async def cancel_appointment(args: dict, db: Session, practice: Practice, vapi_call_id: str,
                             nexhealth: NexHealthApi) -> dict:
    appointment_id = args.get("appointment_id")
    if not appointment_id:
        return _failure("MISSING_APPOINTMENT_ID", "Which appointment would you like to cancel?")
    if not practice.nexhealth_subdomain or not practice.nexhealth_location_id:
        return _config_incomplete()

    known = db.query(CallLog).filter(CallLog.practice_id == practice.id,
                                     CallLog.appointment_id == str(appointment_id)).first()
    if known is None:
        return _failure("APPOINTMENT_NOT_FOUND",
                        "I couldn't find that appointment. Could you double-check the confirmation number?")

    try:
        await nexhealth.cancel_appointment(practice.nexhealth_subdomain, practice.nexhealth_location_id,
                                           str(appointment_id))
    except GATEWAY_ERRORS as e:
        logger.error("cancellation failed: %s", e, extra={"practice_id": practice.id})
        return _failure("CANCELLATION_FAILED",
                        "I wasn't able to cancel that appointment right now. Please call our office directly.",
                        technical_details=str(e)[:200])

    _update_call_log(db, practice, vapi_call_id, detected_intent=f"cancelled_appointment_{appointment_id}")
    return {"success": True, "appointment_id": str(appointment_id),
            "message_to_patient": "Your appointment has been successfully canceled. "
                                  "Is there anything else I can help you with?"}


TOOLS = {
    "identify_patient": identify_patient,
    "check_appointment_type": check_appointment_type,
    "check_availability": check_availability,
    "schedule_appointment": schedule_appointment,
    "get_patient_appointments": get_patient_appointments,
    "cancel_appointment": cancel_appointment,
    # names used by assistants provisioned before the rename
    "identifyOrRegisterPatient": identify_patient,
    "findAppointmentSlots": check_availability,
    "bookAppointment": schedule_appointment,
}


def parse_arguments(raw) -> dict:
    if raw is None:
        return {}
    if isinstance(raw, str):
        parsed = json.loads(raw) if raw.strip() else {}
        if not isinstance(parsed, dict):
            raise ValueError("tool arguments must be a JSON object")
        return parsed
    return dict(raw)


async def execute_tool_calls(db: Session, practice: Optional[Practice], vapi_call_id: str,
                             tool_calls: list[vapitoolcall], nexhealth: NexHealthApi) -> list[dict]:
    results = []
    for tool_call in tool_calls:
        name = tool_call.function.name
        if practice is None:
            result = _failure("PRACTICE_NOT_FOUND",
                              "I'm sorry, I can't access this practice's scheduling right now. "
                              "Please call the office directly.")
        elif name not in TOOLS:
            result = {"error": f"Unknown tool: {name}"}
        else:
            try:
                args = parse_arguments(tool_call.function.arguments)
                result = await TOOLS[name](args, db, practice, vapi_call_id, nexhealth)
            except ValueError as e:
                logger.warning("bad tool arguments for %s: %s", name, e, extra={"vapi_call_id": vapi_call_id})
                result = {"error": f"Failed to execute {name}: {e}"}
            except Exception as e:
                # a failing tool must still yield a result for the assistant
                logger.exception("tool %s failed", name, extra={"vapi_call_id": vapi_call_id})
                result = {"error": f"Failed to execute {name}: {e.__class__.__name__}"}

        results.append({"toolCallId": tool_call.id, "name": name, "result": json.dumps(result)})
    return results
