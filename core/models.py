from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, JSON, func, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.ext.declarative import declared_attr
from core.database import Base
import enum
import uuid


class Autoid():
    @declared_attr
    def id (cls):
        return Column(
            String,
            primary_key= True,
            default = lambda:str(uuid.uuid4()),
            index = True,
            unique = True,
            nullable = False
        )


class CallStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    ENDED = "ENDED"
    COMPLETED_BOOKING = "COMPLETED_BOOKING"
    COMPLETED_EHR_SYNCED = "COMPLETED_EHR_SYNCED"
    FAILED_EHR_SYNC = "FAILED_EHR_SYNC"
    ERROR = "ERROR"


class WebhookStatus(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class Users(Base, Autoid):
    __tablename__ = "users"
    username = Column(String, nullable = False)
    email = Column(String, nullable = False, unique = True)
    password = Column(String , nullable = False)
    token_version:  Mapped[int] = mapped_column(Integer, nullable= False, default = 1)
    created_at = Column(DateTime(timezone= True), nullable = False, server_default = func.now())
    practice = relationship("Practice", back_populates= "owner", uselist= False, cascade="all, delete")


class Practice(Base, Autoid):
    __tablename__ = "practices"
    owner_id = Column(String, ForeignKey("users.id", ondelete= "CASCADE"), nullable = False, unique = True)
    name = Column(String, nullable = False)
    nexhealth_subdomain = Column(String, nullable = True, unique = True, index = True)
    nexhealth_location_id = Column(String, nullable = True)
    selected_provider_ids = Column(JSON, nullable = False, default = list)
    default_operatory_ids = Column(JSON, nullable = False, default = list)
    timezone = Column(String, nullable = False, default = "America/New_York")

    vapi_assistant_id = Column(String, nullable = True, unique = True, index = True)
    vapi_voice_id = Column(String, nullable = False, default = "jennifer")
    vapi_first_message = Column(Text, nullable = True)
    vapi_system_prompt_override = Column(Text, nullable = True)

    webhook_status = Column(String, nullable = False, default = WebhookStatus.UNKNOWN.value)
    webhook_last_attempt = Column(DateTime(timezone= True), nullable = True)
    webhook_last_success = Column(DateTime(timezone= True), nullable = True)
    webhook_error_message = Column(Text, nullable = True)
    webhook_subscription_id = Column(String, nullable = True)

    created_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now())
    updated_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now(), onupdate= func.now())
    owner = relationship("Users", back_populates = "practice")
    service_mappings = relationship("ServiceMapping", back_populates= "practice", cascade="all, delete")
    call_logs = relationship("CallLog", back_populates= "practice", cascade="all, delete")


class ServiceMapping(Base, Autoid):
    __tablename__ = "service_mappings"
    practice_id = Column(String, ForeignKey("practices.id", ondelete="CASCADE"), nullable = False, index = True)
    spoken_service_name = Column(String, nullable = False)
    nexhealth_appointment_type_id = Column(String, nullable = False)
    default_duration_minutes = Column(Integer, nullable = True)
    is_active = Column(Boolean, nullable = False, default = True)
    created_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now())
    updated_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now(), onupdate= func.now())
    practice = relationship("Practice", back_populates= "service_mappings")

    __table_args__ = (
        UniqueConstraint("practice_id", "spoken_service_name", name = "uq_practice_spoken_service"),
    )


class CallLog(Base, Autoid):
    __tablename__ = "call_logs"
    practice_id = Column(String, ForeignKey("practices.id", ondelete="CASCADE"), nullable = False, index = True)
    vapi_call_id = Column(String, nullable = False, unique = True, index = True)
    status = Column(String, nullable = False, default = CallStatus.INITIATED.value)
    started_at = Column(DateTime(timezone= True), nullable = True)
    ended_at = Column(DateTime(timezone= True), nullable = True)
    ended_reason = Column(String, nullable = True)
    phone_number = Column(String, nullable = True)
    detected_intent = Column(String, nullable = True)
    transcript = Column(Text, nullable = True)
    summary = Column(Text, nullable = True)
    recording_url = Column(String, nullable = True)

    patient_id = Column(String, nullable = True, index = True)
    appointment_id = Column(String, nullable = True)
    provider_id = Column(String, nullable = True)
    operatory_id = Column(String, nullable = True)
    appointment_type_id = Column(String, nullable = True)
    appointment_start_time = Column(String, nullable = True)
    appointment_end_time = Column(String, nullable = True)
    appointment_note = Column(Text, nullable = True)

    ehr_sync_summary = Column(Text, nullable = True)
    ehr_foreign_id = Column(String, nullable = True)

    created_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now())
    updated_at = Column(DateTime(timezone= True), nullable = False, server_default= func.now(), onupdate= func.now())
    practice = relationship("Practice", back_populates= "call_logs")

    __table_args__ = (
        UniqueConstraint("practice_id", "appointment_id", name = "uq_practice_appointment"),
    )
