from typing import Optional, List, Literal, Any, Dict, Union
from pydantic import BaseModel, Field


class ApiRequest(BaseModel):
    method: Optional[str] = None
    url: Optional[str] = None
    body: Optional[str] = None


class ApiResponse(BaseModel):
    status: Optional[Any] = None
    body: Optional[str] = None


class NormalizedApiCall(BaseModel):
    """One external API or tool call observed in the telemetry trace."""

    name: str
    operation: str
    status: Literal["success", "error"]
    http_status: Optional[int] = None
    request: ApiRequest = Field(default_factory=ApiRequest)
    response: ApiResponse = Field(default_factory=ApiResponse)
    error: Optional[str] = None
    timestamp: Optional[Any] = None


class NormalizedTranscriptTurn(BaseModel):
    """One transcript turn with bounded text."""

    turn_id: Optional[Any] = None
    timestamp: Optional[Any] = None
    role: Optional[str] = None
    content: Optional[Any] = None
    user: Optional[str] = None
    agent: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None
    function_calls: Optional[Any] = None


class ReviewPayload(BaseModel):
    """The exact structure sent to the judge model."""

    call_id: Optional[str] = None
    call_timestamp: Optional[str] = None
    duration_seconds: Optional[Union[int, float]] = None
    call_status: Optional[str] = None
    transcript: List[NormalizedTranscriptTurn] = Field(default_factory=list)
    agent_instructions: Optional[str] = None
    api_calls: List[NormalizedApiCall] = Field(default_factory=list)
