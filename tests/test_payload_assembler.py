
import json

from src.api.schemas.call_log import CallSession
from src.services.payload_assembler import (
    build_judge_document,
    build_review_payload,
    payload_to_dict,
    serialize_payload,
)
from src.services.truncation import TRUNCATION_MARKER
from judge.prompts import CALL_LOG_REVIEW_LABEL, CALL_LOG_REVIEW_SYSTEM_PROMPT


class TestBuildReviewPayload:
    """Tests for review payload assembly."""

    def test_call_metadata_copied(self, clean_call_session):
        payload = build_review_payload(clean_call_session)

        assert payload.call_id == "call-abc"
        assert payload.call_timestamp == "2024-08-01T10:00:00Z"
        assert payload.duration_seconds == 95
        assert payload.call_status == "customer-ended-call"
        assert len(payload.transcript) == 3
        assert len(payload.api_calls) == 1

    def test_deterministic(self, clean_call_session):
        """Same call session -> byte-identical serialized payload."""
        first = serialize_payload(build_review_payload(clean_call_session))
        second = serialize_payload(build_review_payload(clean_call_session))
        assert first == second

    def test_key_order(self, clean_call_session):
        data = payload_to_dict(build_review_payload(clean_call_session))
        assert list(data.keys()) == [
            "call_id",
            "call_timestamp",
            "duration_seconds",
            "call_status",
            "transcript",
            "agent_instructions",
            "api_calls",
        ]

    def test_transcript_turns_omit_empty_keys(self, clean_call_session):
        data = payload_to_dict(build_review_payload(clean_call_session))
        assert data["transcript"][0] == {
            "role": "user",
            "content": "Hi, I'd like to book a cleaning on August 7th.",
        }

    def test_oversized_instructions_truncated(self):
        session = CallSession(id="long", complete_configuration={"system_prompt": "s" * 10000})
        payload = build_review_payload(session)

        assert payload.agent_instructions == "s" * 3000 + TRUNCATION_MARKER
        assert len(payload.agent_instructions) == 3000 + len(TRUNCATION_MARKER)

    def test_empty_session(self):
        data = payload_to_dict(build_review_payload(CallSession(id="empty")))

        assert data["transcript"] == []
        assert data["agent_instructions"] is None
        assert data["api_calls"] == []

    def test_float_duration_preserved(self):
        payload = build_review_payload(CallSession(id="f", duration_seconds=12.5))
        assert payload_to_dict(payload)["duration_seconds"] == 12.5


class TestJudgeDocument:
    """Tests for the prompt document sent to the judge."""

    def test_document_layout(self, clean_call_session):
        payload = build_review_payload(clean_call_session)
        document = build_judge_document(payload)

        prefix = f"{CALL_LOG_REVIEW_SYSTEM_PROMPT}\n\n{CALL_LOG_REVIEW_LABEL}\n\n"
        assert document.startswith(prefix)
        assert json.loads(document[len(prefix):]) == payload_to_dict(payload)

    def test_error_call_reaches_document(self, failing_api_session):
        document = build_judge_document(build_review_payload(failing_api_session))
        assert '"http_status": 500' in document
        assert '"status": "error"' in document
