from typing import Optional, List, Any, Dict, Union
from pydantic import BaseModel, ConfigDict, Field


class CallSession(BaseModel):
    """A recorded call as stored in the call logs table."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., description="Call log identifier, used as the review key")
    agent_id: Optional[str] = Field(None, description="Agent that handled the call")
    call_id: Optional[str] = Field(None, description="Provider call identifier")
    call_started_at: Optional[str] = Field(None, description="Call start timestamp")
    call_ended_at: Optional[str] = Field(None, description="Call end timestamp")
    duration_seconds: Optional[Union[int, float]] = Field(None, ge=0, description="Call duration in seconds")
    call_ended_reason: Optional[str] = Field(None, description="Why the call terminated")
    transcript_json: Any = Field(None, description="Ordered transcript turns, possibly empty")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form call metadata")
    complete_configuration: Optional[Dict[str, Any]] = Field(None, description="Agent configuration snapshot")
    telemetry_data: Optional[Dict[str, Any]] = Field(None, description="Telemetry with session_traces")


class ReviewCallRequest(BaseModel):
    """Request body for the immediate review endpoint."""

    call_log_id: Optional[str] = Field(None, description="Single call log to review")
    call_log_ids: Optional[List[str]] = Field(None, description="Batch of call logs to review")


class QueueReviewRequest(BaseModel):
    """Direct-call body for the queue webhook."""

    call_log_id: str = Field(..., min_length=1, description="Call log to queue")
    agent_id: str = Field(..., min_length=1, description="Owning agent")


class BatchReviewRequest(BaseModel):
    """Request body for queueing an agent's recent calls."""

    agent_id: str = Field(..., min_length=1, description="Agent whose calls should be queued")
    limit: Optional[int] = Field(None, ge=1, le=500, description="Maximum number of recent calls to queue")


class InternalReviewRequest(BaseModel):
    """Body sent by the database trigger for a pending review."""

    call_log_id: str = Field(..., min_length=1)
    agent_id: Optional[str] = None
