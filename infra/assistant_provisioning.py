import logging
import time

from config import settings
from core.circuit_breaker import circuit_breaker_open_error
from core.models import Practice
from core.utils import is_uuid
from sdk.errors import GatewayError
from sdk.vapi_sdk import VapiApi

log = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """[IDENTITY]
You are Laine, the warm, confident voice receptionist for {practice_name}, a trusted dental clinic. You're knowledgeable, empathetic, and efficient at helping patients with their dental care needs.

[CORE RESPONSIBILITIES]
- Answer incoming calls professionally and warmly
- Help patients schedule appointments
- Assist with appointment changes and cancellations
- Gather patient information for new patients

[COMMUNICATION STYLE]
- Be warm, professional, and reassuring
- Speak clearly and confirm important details back to the patient

[APPOINTMENT SCHEDULING FLOW]
1. Identify the patient with identify_patient (first name, last name, phone number).
2. Ask the reason for the visit and call check_appointment_type.
3. Offer times from check_availability.
4. Book the chosen slot with schedule_appointment, using the patient, provider, operatory and times of that slot.

[PRACTICE INFORMATION]
Practice Name: {practice_name}
Timezone: {timezone}

If you need information that isn't available through your tools, politely let the patient know someone from the office will call them back.

{custom_instructions}"""

SERVER_MESSAGES = ["tool-calls", "speech-update", "transcript", "hang", "end-of-call-report", "status-update"]
CLIENT_MESSAGES = ["speech-update", "transcript", "hang", "status-update"]


def _tool(name: str, description: str, properties: dict, required: list) -> dict:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


def _string(description: str) -> dict:
    return {"type": "string", "description": description}


TOOL_DEFINITIONS = [
    _tool("identify_patient",
          "Identifies an existing patient or registers a new one. Use before booking.",
          {
              "first_name": _string("Patient's first name"),
              "last_name": _string("Patient's last name"),
              "phone_number": _string("Patient's phone number"),
              "date_of_birth": _string("Date of birth in YYYY-MM-DD format"),
              "email": _string("Patient's email address"),
              "gender": _string("Male, Female or Other"),
          },
          ["first_name", "last_name", "phone_number"]),
    _tool("check_appointment_type",
          "Maps the patient's reason for visit to one of the practice's appointment types.",
          {"patient_reason_for_visit": _string("Reason for the visit in the patient's words")},
          ["patient_reason_for_visit"]),
    _tool("check_availability",
          "Finds open appointment slots for an appointment type.",
          {
              "appointment_type_id": _string("Appointment type id from check_appointment_type"),
              "requested_date": _string("Preferred date in YYYY-MM-DD format"),
              "search_type": {"type": "string", "enum": ["specific_date", "next_available"],
                              "description": "Search one day or the next month"},
          },
          ["appointment_type_id"]),
    _tool("schedule_appointment",
          "Books one of the slots offered by check_availability.",
          {
              "patient_id": _string("Patient id from identify_patient"),
              "provider_id": _string("Provider id of the chosen slot"),
              "operatory_id": _string("Operatory id of the chosen slot"),
              "appointment_type_id": _string("Appointment type id"),
              "start_time": _string("Slot start time (ISO 8601)"),
              "end_time": _string("Slot end time (ISO 8601)"),
              "note": _string("Anything the office should know"),
          },
          ["patient_id", "provider_id", "appointment_type_id", "start_time", "end_time"]),
    _tool("get_patient_appointments",
          "Lists appointments booked for an identified patient.",
          {"patient_id": _string("Patient id from identify_patient")},
          ["patient_id"]),
    _tool("cancel_appointment",
          "Cancels an appointment by its confirmation number.",
          {"appointment_id": _string("Appointment confirmation number")},
          ["appointment_id"]),
]


def build_system_prompt(practice: Practice) -> str:
    return BASE_SYSTEM_PROMPT.format(
        practice_name=practice.name or "the dental practice",
        timezone=practice.timezone or "America/New_York",
        custom_instructions=practice.vapi_system_prompt_override or "",
    )


def build_assistant_payload(practice: Practice) -> dict:
    name = practice.name or practice.id
    return {
        "name": f"LAINE - {name}",
        "model": {
            "provider": "openai",
            "model": "gpt-4o",
            "messages": [{"role": "system", "content": build_system_prompt(practice)}],
            "tools": TOOL_DEFINITIONS,
        },
        "voice": {"provider": "playht", "voiceId": practice.vapi_voice_id or "jennifer"},
        "firstMessage": practice.vapi_first_message or (
            f"Thank you for calling {practice.name or 'our dental practice'}. This is Laine, your AI "
            "receptionist. How can I help you today?"),
        "server": {
            "url": f"{settings.app_base_url.rstrip('/')}/webhook/voice-platform",
            "secret": settings.vapi_webhook_secret or "",
        },
        "clientMessages": CLIENT_MESSAGES,
        "serverMessages": SERVER_MESSAGES,
        "recordingEnabled": True,
        "silenceTimeoutSeconds": 30,
        "maxDurationSeconds": 1800,
    }


def mock_assistant_id(practice: Practice) -> str:
    return f"mock_assistant_{practice.id}_{int(time.time() * 1000)}"


def _fallback_id(practice: Practice) -> str:
    return practice.vapi_assistant_id or mock_assistant_id(practice)


async def provision_assistant(practice: Practice, vapi: VapiApi) -> str:
    """Create or update the practice's assistant and return its id.

    Never raises for gateway failures. The practice keeps the assistant id it
    already has, since the live assistant still calls in with it; a practice
    without one gets a placeholder and the next save retries provisioning.
    """
    if not vapi.configured:
        log.warning("VAPI_API_KEY not configured, assistant not provisioned", extra={"practice_id": practice.id})
        return _fallback_id(practice)

    payload = build_assistant_payload(practice)
    try:
        if is_uuid(practice.vapi_assistant_id):
            try:
                assistant = await vapi.update_assistant(practice.vapi_assistant_id, payload)
            except (GatewayError, circuit_breaker_open_error) as e:
                log.warning("assistant update failed, creating a new one: %s", e, extra={"practice_id": practice.id})
                assistant = await vapi.create_assistant(payload)
        else:
            assistant = await vapi.create_assistant(payload)
    except (GatewayError, circuit_breaker_open_error) as e:
        log.error("assistant provisioning failed: %s", e, extra={"practice_id": practice.id})
        return _fallback_id(practice)

    log.info("assistant provisioned", extra={"practice_id": practice.id, "assistant_id": assistant.get("id")})
    return assistant["id"]
