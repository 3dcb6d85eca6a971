import json
from typing import Any, Optional


TRUNCATION_MARKER = "...[truncated]"

TRANSCRIPT_TEXT_LIMIT = 1000
AGENT_INSTRUCTIONS_LIMIT = 3000
API_BODY_LIMIT = 15000


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    """
    Cut text to `limit` characters and append the truncation marker.

    Text within the budget is returned unchanged; None passes through.
    """
    if text is None or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def serialize_body(body: Any) -> Optional[str]:
    """Render a request/response body as text; empty bodies become None."""
    if body is None or body == "":
        return None
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"), default=str)


def truncate_body(body: Any) -> Optional[str]:
    """Serialize and bound an API request or response body."""
    return truncate(serialize_body(body), API_BODY_LIMIT)


def truncate_turn_text(text: Any) -> Any:
    # Non-string content (structured message parts) is passed through as-is.
    if not isinstance(text, str):
        return text
    return truncate(text, TRANSCRIPT_TEXT_LIMIT)


def truncate_instructions(text: Optional[str]) -> Optional[str]:
    return truncate(text, AGENT_INSTRUCTIONS_LIMIT)
