from typing import Optional, List, Literal, Union, Dict, Annotated
from pydantic import BaseModel, Field


ReviewStatus = Literal["pending", "processing", "completed", "failed"]
FindingType = Literal["API_FAILURE", "WRONG_ACTION", "WRONG_OUTPUT"]


class FindingEvidence(BaseModel):
    """Evidence the judge cites for a finding."""

    transcript_excerpt: Optional[str] = Field(None, description="Relevant quote from the transcript")
    api_request: Optional[str] = Field(None, description="Relevant request data, if any")
    api_response: Optional[str] = Field(None, description="Relevant response data, if any")
    expected: str = Field(..., description="What should have happened or been said")
    actual: str = Field(..., description="What actually happened or was said")


class _FindingBase(BaseModel):
    title: str = Field(..., description="Brief error title")
    description: str = Field(..., description="Detailed explanation")
    evidence: FindingEvidence
    timestamp: Optional[str] = Field(None, description="When the error occurred in the call")
    impact: str = Field(..., description="Consequence for the user or system")


class ApiFailureFinding(_FindingBase):
    """An API call returned an error status."""

    type: Literal["API_FAILURE"]


class WrongActionFinding(_FindingBase):
    """An action ran with data other than what the caller asked for."""

    type: Literal["WRONG_ACTION"]


class WrongOutputFinding(_FindingBase):
    """The agent stated data that contradicts the API response."""

    type: Literal["WRONG_OUTPUT"]


Finding = Annotated[
    Union[ApiFailureFinding, WrongActionFinding, WrongOutputFinding],
    Field(discriminator="type"),
]


class ReviewResult(BaseModel):
    """Verdict returned by the judge model."""

    call_timestamp: Optional[str] = Field(None, description="Timestamp of the reviewed call")
    analysis_date: Optional[str] = Field(None, description="When the analysis ran")
    errors: List[Finding] = Field(..., description="Detected defects; empty for a clean call")

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def has_type(self, finding_type: FindingType) -> bool:
        return any(finding.type == finding_type for finding in self.errors)


class ReviewRecord(BaseModel):
    """Persisted review state for one call log."""

    call_log_id: str = Field(..., description="Call log identifier (unique key)")
    agent_id: Optional[str] = Field(None, description="Agent that handled the call")
    status: ReviewStatus = Field(..., description="Review lifecycle state")
    review_result: Optional[ReviewResult] = None
    error_count: int = Field(0, ge=0)
    has_api_failures: bool = False
    has_wrong_actions: bool = False
    has_wrong_outputs: bool = False
    error_message: Optional[str] = None
    reviewed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProgressMessage(BaseModel):
    """State transition published to live subscribers."""

    call_log_id: str
    status: ReviewStatus
    error_count: Optional[int] = None
    has_api_failures: Optional[bool] = None
    has_wrong_actions: Optional[bool] = None
    has_wrong_outputs: Optional[bool] = None
    error_message: Optional[str] = None


class ReviewStatsResponse(BaseModel):
    """Counts of review records per status."""

    stats: Dict[str, int] = Field(default_factory=dict)
    timestamp: str
