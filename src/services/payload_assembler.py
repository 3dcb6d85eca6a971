
import json
import logging
from typing import Any, Dict

from src.api.schemas.call_log import CallSession
from src.api.schemas.payload import ReviewPayload
from src.services.field_extractor import extract_review_fields
from judge.prompts import CALL_LOG_REVIEW_SYSTEM_PROMPT, CALL_LOG_REVIEW_LABEL

logger = logging.getLogger(__name__)


def build_review_payload(call_session: CallSession) -> ReviewPayload:
    """
    Assemble the full review payload for a call session.

    Args:
        call_session: Call record enriched with agent configuration and telemetry

    Returns:
        ReviewPayload with bounded transcript, instructions and API calls
    """
    fields = extract_review_fields(call_session)

    return ReviewPayload(
        call_id=call_session.call_id,
        call_timestamp=call_session.call_started_at,
        duration_seconds=call_session.duration_seconds,
        call_status=call_session.call_ended_reason,
        transcript=fields.transcript,
        agent_instructions=fields.agent_instructions,
        api_calls=fields.api_calls,
    )


def payload_to_dict(payload: ReviewPayload) -> Dict[str, Any]:
    """Plain-dict form of the payload; transcript turns omit empty keys."""
    data = payload.model_dump(mode="json", exclude={"transcript"})
    data["transcript"] = [
        turn.model_dump(mode="json", exclude_none=True) for turn in payload.transcript
    ]
    return {
        "call_id": data["call_id"],
        "call_timestamp": data["call_timestamp"],
        "duration_seconds": data["duration_seconds"],
        "call_status": data["call_status"],
        "transcript": data["transcript"],
        "agent_instructions": data["agent_instructions"],
        "api_calls": data["api_calls"],
    }


def serialize_payload(payload: ReviewPayload) -> str:
    return json.dumps(payload_to_dict(payload), indent=2, ensure_ascii=False)


def build_judge_document(payload: ReviewPayload) -> str:
    """Instruction document, label and serialized payload as one prompt text."""
    document = f"{CALL_LOG_REVIEW_SYSTEM_PROMPT}\n\n{CALL_LOG_REVIEW_LABEL}\n\n{serialize_payload(payload)}"
    logger.debug(f"Built judge document ({len(document)} chars, {len(payload.api_calls)} api calls)")
    return document
