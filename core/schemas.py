from pydantic import BaseModel, EmailStr, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional, Any, Union
from typing import Literal, Annotated


def _as_str(value):
    if value is None:
        return None
    return str(value)


################ Authentication Schema
class loginresponse(BaseModel):
    access_token : str
    refresh_token : str

class loginrequest(BaseModel):
    email : EmailStr
    password: str

class logoutresponse(BaseModel):
    message : str

################################## UserRegistration
class usercreate(BaseModel):
    username:str
    email : EmailStr
    password : str

class userout(BaseModel):
    id : str
    email : EmailStr
    username : str

    model_config = ConfigDict(from_attributes=True)


################################## Practice configuration
class practicesetup(BaseModel):
    name : str
    nexhealth_subdomain : str
    nexhealth_location_id : str
    selected_provider_ids : list[str] = []
    default_operatory_ids : list[str] = []
    timezone : str = "America/New_York"

    @field_validator("selected_provider_ids", "default_operatory_ids", mode="before")
    @classmethod
    def stringify_ids(cls, value):
        if value is None:
            return []
        return [str(v) for v in value]


class practiceout(BaseModel):
    id : str
    name : str
    nexhealth_subdomain : Optional[str] = None
    nexhealth_location_id : Optional[str] = None
    selected_provider_ids : list[str] = []
    default_operatory_ids : list[str] = []
    timezone : str
    vapi_assistant_id : Optional[str] = None
    vapi_voice_id : Optional[str] = None
    vapi_first_message : Optional[str] = None
    vapi_system_prompt_override : Optional[str] = None
    webhook_status : str
    webhook_last_attempt : Optional[datetime] = None
    webhook_last_success : Optional[datetime] = None
    webhook_error_message : Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class aiconfig(BaseModel):
    vapi_voice_id : Optional[str] = None
    vapi_system_prompt_override : Optional[str] = None
    vapi_first_message : Optional[str] = None


class webhookstatusout(BaseModel):
    status : str
    message : str
    last_attempt : Optional[datetime] = None
    last_success : Optional[datetime] = None
    error_message : Optional[str] = None
    subscription_id : Optional[str] = None
    can_retry : bool


class setupvalidation(BaseModel):
    is_complete : bool
    completion_score : int
    issues : list[str]
    recommendations : list[str]


################################## Service mappings
class servicemappingcreate(BaseModel):
    spoken_service_name : Annotated[str, Field(min_length=1)]
    nexhealth_appointment_type_id : str
    default_duration_minutes : Optional[int] = None
    is_active : bool = True

    @field_validator("nexhealth_appointment_type_id", mode="before")
    @classmethod
    def stringify_type_id(cls, value):
        return _as_str(value)


class servicemappingout(BaseModel):
    id : str
    spoken_service_name : str
    nexhealth_appointment_type_id : str
    default_duration_minutes : Optional[int] = None
    is_active : bool
    created_at : Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


################################## Call logs
class pagination(BaseModel):
    page : int
    limit : int
    total_count : int
    total_pages : int
    has_next : bool
    has_prev : bool


class calllogout(BaseModel):
    id : str
    vapi_call_id : str
    status : str
    started_at : Optional[datetime] = None
    ended_at : Optional[datetime] = None
    ended_reason : Optional[str] = None
    phone_number : Optional[str] = None
    detected_intent : Optional[str] = None
    summary : Optional[str] = None
    patient_id : Optional[str] = None
    appointment_id : Optional[str] = None
    appointment_start_time : Optional[str] = None
    ehr_sync_summary : Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class calllogdetail(calllogout):
    transcript : Optional[str] = None
    recording_url : Optional[str] = None
    provider_id : Optional[str] = None
    operatory_id : Optional[str] = None
    appointment_type_id : Optional[str] = None
    appointment_end_time : Optional[str] = None
    appointment_note : Optional[str] = None
    ehr_foreign_id : Optional[str] = None


class calllogpage(BaseModel):
    call_logs : list[calllogout]
    pagination : pagination


class patientsummary(BaseModel):
    patient_id : str
    phone_number : Optional[str] = None
    interaction_count : int
    booked_appointments : int
    last_interaction : Optional[datetime] = None


class syncresponse(BaseModel):
    queued : bool
    job_id : Optional[str] = None
    message : str


################################## Scheduling webhook (NexHealth)
class nexhealtheventdata(BaseModel):
    id : Optional[str] = None
    foreign_id : Optional[str] = None

    model_config = ConfigDict(extra="allow")

    @field_validator("id", "foreign_id", mode="before")
    @classmethod
    def stringify(cls, value):
        return _as_str(value)


class nexhealthwebhookevent(BaseModel):
    resource_type : str
    event : str
    subdomain : Optional[str] = None
    status : Optional[str] = None
    message : Optional[str] = None
    data : nexhealtheventdata = nexhealtheventdata()

    model_config = ConfigDict(extra="allow")


################################## Voice platform webhook (Vapi)
class vapicustomer(BaseModel):
    number : Optional[str] = None
    model_config = ConfigDict(extra="allow")


class vapicall(BaseModel):
    id : str
    assistantId : Optional[str] = None
    startedAt : Optional[datetime] = None
    endedAt : Optional[datetime] = None
    customerPhoneNumber : Optional[str] = None
    customer : Optional[vapicustomer] = None
    model_config = ConfigDict(extra="allow")

    @property
    def caller_number(self) -> Optional[str]:
        if self.customerPhoneNumber:
            return self.customerPhoneNumber
        if self.customer is not None:
            return self.customer.number
        return None


class vapiassistantref(BaseModel):
    id : Optional[str] = None
    model_config = ConfigDict(extra="allow")


class vapifunction(BaseModel):
    name : str
    arguments : Union[dict, str, None] = None


class vapitoolcall(BaseModel):
    id : str
    type : str = "function"
    function : vapifunction


class vapiartifact(BaseModel):
    transcript : Optional[str] = None
    recordingUrl : Optional[str] = None
    recording : Optional[dict[str, Any]] = None
    model_config = ConfigDict(extra="allow")

    @property
    def recording_url(self) -> Optional[str]:
        if self.recording and self.recording.get("stereoUrl"):
            return self.recording["stereoUrl"]
        return self.recordingUrl


class vapianalysis(BaseModel):
    summary : Optional[str] = None
    model_config = ConfigDict(extra="allow")


class _vapimessagebase(BaseModel):
    call : vapicall
    assistant : Optional[vapiassistantref] = None
    timestamp : Optional[Any] = None
    model_config = ConfigDict(extra="allow")

    @property
    def assistant_id(self) -> Optional[str]:
        if self.assistant is not None and self.assistant.id:
            return self.assistant.id
        return self.call.assistantId


class toolcallsmessage(_vapimessagebase):
    type : Literal["tool-calls"]
    toolCallList : list[vapitoolcall] = []


class statusupdatemessage(_vapimessagebase):
    type : Literal["status-update"]
    status : str
    endedReason : Optional[str] = None


class transcriptmessage(_vapimessagebase):
    type : Literal["transcript"]
    role : str = "unknown"
    transcriptType : str
    transcript : str


class endofcallreportmessage(_vapimessagebase):
    type : Literal["end-of-call-report"]
    endedReason : Optional[str] = None
    transcript : Optional[str] = None
    summary : Optional[str] = None
    recordingUrl : Optional[str] = None
    artifact : Optional[vapiartifact] = None
    analysis : Optional[vapianalysis] = None


VapiMessage = Annotated[
    Union[toolcallsmessage, statusupdatemessage, transcriptmessage, endofcallreportmessage],
    Field(discriminator="type"),
]

VAPI_MESSAGE_TYPES = ("tool-calls", "status-update", "transcript", "end-of-call-report")


class vapienvelope(BaseModel):
    message : VapiMessage
