

import pytest

import sys
import os


sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.api.schemas.call_log import CallSession
from src.services.progress_broadcaster import ProgressBroadcaster
from src.services.review_store import InMemoryReviewStore
from tests.judge_fakes import AGENT_INSTRUCTIONS_50


@pytest.fixture
def clean_call_session() -> CallSession:
    """Three-turn call with one successful tool call and a short prompt."""
    return CallSession(
        id="log-001",
        agent_id="agent-1",
        call_id="call-abc",
        call_started_at="2024-08-01T10:00:00Z",
        duration_seconds=95,
        call_ended_reason="customer-ended-call",
        transcript_json=[
            {"role": "user", "content": "Hi, I'd like to book a cleaning on August 7th."},
            {"role": "assistant", "content": "Sure, I have 10 AM available on August 7th."},
            {"role": "user", "content": "Great, book it."},
        ],
        complete_configuration={"system_prompt": AGENT_INSTRUCTIONS_50},
        telemetry_data={
            "session_traces": [
                {
                    "turn_id": 1,
                    "unix_timestamp": 1717000000,
                    "user_transcript": "Hi, I'd like to book a cleaning on August 7th.",
                    "agent_response": "Sure, I have 10 AM available on August 7th.",
                    "tool_calls": [
                        {
                            "name": "check_availability",
                            "arguments": {"date": "2024-08-07"},
                            "result": {"slots": ["10:00"]},
                            "http_status_code": 200,
                        }
                    ],
                }
            ]
        },
    )


@pytest.fixture
def failing_api_session(clean_call_session) -> CallSession:
    """Same call, but the booking tool call returned HTTP 500."""
    return clean_call_session.model_copy(
        update={
            "telemetry_data": {
                "session_traces": [
                    {
                        "turn_id": 2,
                        "unix_timestamp": 1717000010,
                        "tool_calls": [
                            {
                                "name": "create_booking",
                                "arguments": {"date": "2024-08-07", "time": "10:00"},
                                "result": {"error": "internal"},
                                "http_status_code": 500,
                            }
                        ],
                    }
                ]
            }
        }
    )


@pytest.fixture
def review_store() -> InMemoryReviewStore:
    return InMemoryReviewStore()


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster(subscriber_queue_size=10)
