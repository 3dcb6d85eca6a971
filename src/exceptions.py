
from typing import Optional


class ReviewPipelineError(Exception):
    """Base class for failures that end a review in the `failed` state."""
    pass


class JudgeUnavailable(ReviewPipelineError):
    """Credential or transport failure reaching the judge model."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class JudgeEmptyResponse(ReviewPipelineError):
    """The judge call succeeded but returned no usable content."""
    pass


class VerdictMalformed(ReviewPipelineError):
    """The judge output did not match the review result schema."""

    def __init__(self, message: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.raw_text = raw_text


class PersistenceFailure(ReviewPipelineError):
    """A review store read or write failed."""
    pass


class CallLogNotFound(ReviewPipelineError):
    """The call log to review does not exist."""

    def __init__(self, call_log_id: str):
        super().__init__("Call log not found")
        self.call_log_id = call_log_id
