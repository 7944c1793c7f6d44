# app/models/call_log.py
# Call log models for Tata Tele (Smartflo) call reconciliation

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

# ============================================================================
# ENUMS FOR CALL MANAGEMENT
# ============================================================================

class CallStatus(str, Enum):
    """Canonical call status progression"""
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELLED = "cancelled"

class CallDirection(str, Enum):
    """Call direction from agent perspective"""
    OUTBOUND = "outbound"
    INBOUND = "inbound"

TERMINAL_STATUSES = {
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.NO_ANSWER,
    CallStatus.BUSY,
    CallStatus.CANCELLED,
}

ACTIVE_STATUSES = {
    CallStatus.INITIATED,
    CallStatus.RINGING,
    CallStatus.ANSWERED,
}

def is_terminal_status(status: str) -> bool:
    return status in {s.value for s in TERMINAL_STATUSES}

# ============================================================================
# RESOLVED WEBHOOK EVENT
# ============================================================================

class ResolvedCall(BaseModel):
    """Direction and identity extracted from a raw provider payload"""
    direction: CallDirection
    call_id: str
    call_id_synthesized: bool = False
    virtual_number: Optional[str] = None
    counterparty_phone: str
    direction_rule: str = Field("default", description="Name of the rule that decided the direction")
    direction_explicit: bool = Field(False, description="True when the payload said so explicitly")

class CallEvent(BaseModel):
    """A single normalized call event, ready for reconciliation"""
    resolved: ResolvedCall
    custom_identifier: Optional[str] = None
    status: CallStatus = CallStatus.INITIATED
    raw_status: Optional[str] = None
    agent_number: Optional[str] = None
    destination_number: Optional[str] = None
    caller_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    recording_url: Optional[str] = None
    disposition: Optional[str] = None
    queue_id: Optional[str] = None
    queue_wait_time: Optional[int] = None
    transfer_data: Optional[Any] = None
    ivr_data: Optional[Any] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

# ============================================================================
# API MODELS
# ============================================================================

class WebhookAck(BaseModel):
    """Body returned to the provider - the status code is always 200"""
    success: bool
    message: str
    callLogId: Optional[str] = None
    error: Optional[str] = None

class ClickToCallRequest(BaseModel):
    lead_id: str = Field(..., description="Lead ID to call")
    notes: Optional[str] = Field(None, max_length=1000, description="Call notes")

class ClickToCallResponse(BaseModel):
    success: bool = Field(..., description="Call success status")
    message: str = Field(..., description="Response message")
    call_log_id: Optional[str] = Field(None, description="Call log database ID")
    provider_call_id: Optional[str] = Field(None, description="Smartflo call ID")
    custom_identifier: Optional[str] = Field(None, description="Correlation token")

class ManualCallLogRequest(BaseModel):
    lead_id: str = Field(..., description="Lead ID")
    call_status: CallStatus = Field(CallStatus.COMPLETED, description="Outcome of the call")
    duration: int = Field(0, ge=0, le=86400, description="Call duration in seconds")
    disposition: Optional[str] = Field(None, max_length=200)
    remarks: Optional[str] = Field(None, max_length=1000)

class ScheduleCallbackRequest(BaseModel):
    lead_id: str = Field(..., description="Lead ID to call back")
    scheduled_at: datetime = Field(..., description="When Smartflo should place the call (UTC if naive)")
    reason: Optional[str] = Field(None, max_length=500, description="Shown on the lead as the callback reason")

class CallLogResponse(BaseModel):
    """Response model for call log data"""
    id: str
    lead_id: str
    user_id: Optional[str] = None
    provider_call_id: Optional[str] = None
    custom_identifier: Optional[str] = None
    agent_number: Optional[str] = None
    destination_number: Optional[str] = None
    caller_id: Optional[str] = None
    virtual_number: Optional[str] = None
    call_direction: CallDirection
    call_status: CallStatus
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: int = 0
    recording_url: Optional[str] = None
    disposition: Optional[str] = None
    queue_id: Optional[str] = None
    queue_wait_time: Optional[int] = None
    remarks: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "CallLogResponse":
        data = {k: v for k, v in doc.items() if k in cls.model_fields}
        data["id"] = str(doc["_id"])
        data["duration"] = doc.get("duration") or 0
        return cls(**data)

class CallLogListResponse(BaseModel):
    success: bool = True
    data: List[CallLogResponse]
    total: int
    page: int
    limit: int
    pages: int

class CallStatsResponse(BaseModel):
    success: bool = True
    total_calls: int = 0
    inbound_calls: int = 0
    outbound_calls: int = 0
    completed_calls: int = 0
    missed_calls: int = 0
    total_duration: int = 0
    average_duration: float = 0.0
    success_rate: float = 0.0
    by_status: Dict[str, int] = Field(default_factory=dict)

class CacheRefreshRequest(BaseModel):
    data_type: str = Field("calls", description="calls, entries, users or all")
    user_id: Optional[str] = None

class CdrSyncRequest(BaseModel):
    from_date: str = Field(..., description="YYYY-MM-DD")
    to_date: str = Field(..., description="YYYY-MM-DD")
