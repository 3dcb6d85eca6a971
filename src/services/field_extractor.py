
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from src.api.schemas.call_log import CallSession
from src.api.schemas.payload import (
    ApiRequest,
    ApiResponse,
    NormalizedApiCall,
    NormalizedTranscriptTurn,
)
from src.services.truncation import (
    truncate_body,
    truncate_instructions,
    truncate_turn_text,
)

logger = logging.getLogger(__name__)


# Probed in order; the first non-empty string wins.
AGENT_INSTRUCTION_PROBES: Tuple[Tuple[Union[str, int], ...], ...] = (
    ("system_prompt",),
    ("prompt",),
    ("instructions",),
    ("agent_prompt",),
    ("systemPrompt",),
    ("first_message",),
    ("llm", "messages", 0, "content"),
)

# A span is treated as an API call when its name or kind contains one of these.
API_SPAN_KEYWORDS = ("api", "http", "request")

TOOL_NAME_FIELDS = ("name", "function_name")
TOOL_HTTP_STATUS_FIELDS = ("http_status_code", "http_status", "status_code")
TOOL_REQUEST_BODY_FIELDS = ("arguments", "request_body")
TOOL_RESPONSE_BODY_FIELDS = ("result", "response_body")
SPAN_HTTP_STATUS_ATTRIBUTES = ("http.status_code", "http.response.status_code")

ERROR_STATUS_VALUES = {"error", "failed", "failure"}
SPAN_STATUS_CODE_ERROR = 2


@dataclass
class ExtractedFields:
    """Normalized, bounded fields pulled out of a call session."""

    transcript: List[NormalizedTranscriptTurn] = field(default_factory=list)
    agent_instructions: Optional[str] = None
    api_calls: List[NormalizedApiCall] = field(default_factory=list)


def _dig(obj: Any, path: Sequence[Union[str, int]]) -> Any:
    """Follow a path of dict keys / list indexes, returning None on any miss."""
    current = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, list) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def _first_present(mapping: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_http_status(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_label(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _as_text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    return truncate_body(value)


def resolve_agent_config(call_session: CallSession) -> Optional[Dict[str, Any]]:
    """Explicit configuration first, then the copy stored in call metadata."""
    if call_session.complete_configuration:
        return call_session.complete_configuration
    config = _dig(call_session.metadata, ("complete_configuration",))
    return config if isinstance(config, dict) else None


def get_session_traces(call_session: CallSession) -> List[Dict[str, Any]]:
    traces = _dig(call_session.telemetry_data, ("session_traces",))
    if not isinstance(traces, list):
        return []
    return [record for record in traces if isinstance(record, dict)]


def extract_agent_instructions(config: Optional[Dict[str, Any]]) -> Optional[str]:
    """
    Find the agent's system prompt in its configuration.

    Probes AGENT_INSTRUCTION_PROBES in order and returns the first
    non-empty string, untruncated.
    """
    if not config:
        return None

    for path in AGENT_INSTRUCTION_PROBES:
        value = _dig(config, path)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _tool_call_status(tool: Dict[str, Any], http_status: Optional[int]) -> str:
    explicit = tool.get("status")
    if isinstance(explicit, str) and explicit.lower() in ERROR_STATUS_VALUES:
        return "error"
    if tool.get("error"):
        return "error"
    if tool.get("success") is False:
        return "error"
    if http_status is not None and http_status >= 400:
        return "error"
    return "success"


def normalize_tool_call(tool: Dict[str, Any], timestamp: Any = None) -> NormalizedApiCall:
    """Normalize an explicit tool-call entry from a telemetry record."""
    http_status = _as_http_status(_first_present(tool, TOOL_HTTP_STATUS_FIELDS))
    status = _tool_call_status(tool, http_status)

    error = _as_text(tool.get("error"))
    if error is None and tool.get("success") is False:
        error = "Tool call failed"
    if error is None and http_status is not None and http_status >= 400:
        error = f"HTTP {http_status}"

    return NormalizedApiCall(
        name=str(_first_present(tool, TOOL_NAME_FIELDS) or "unknown"),
        operation="tool_call",
        status=status,
        http_status=http_status,
        request=ApiRequest(
            method=_as_label(tool.get("request_method")),
            url=_as_label(tool.get("url")),
            body=truncate_body(_first_present(tool, TOOL_REQUEST_BODY_FIELDS)),
        ),
        response=ApiResponse(
            status=tool.get("response_status") or http_status,
            body=truncate_body(_first_present(tool, TOOL_RESPONSE_BODY_FIELDS)),
        ),
        error=error,
        timestamp=timestamp,
    )


def is_api_span(span: Dict[str, Any]) -> bool:
    """Case-insensitive keyword match on the span's name or kind."""
    name = str(span.get("name") or "").lower()
    kind = str(span.get("kind") or "").lower()
    return any(keyword in name or keyword in kind for keyword in API_SPAN_KEYWORDS)


def _span_has_error_code(status: Dict[str, Any]) -> bool:
    code = status.get("code")
    if code == SPAN_STATUS_CODE_ERROR:
        return True
    return isinstance(code, str) and code.upper() in ("ERROR", "STATUS_CODE_ERROR")


def normalize_span(span: Dict[str, Any], timestamp: Any = None) -> NormalizedApiCall:
    """Normalize a generic span record that looks like an API call."""
    attributes = span.get("attributes") or {}
    if not isinstance(attributes, dict):
        attributes = {}
    span_status = span.get("status") or {}
    if not isinstance(span_status, dict):
        span_status = {}

    http_status = _as_http_status(_first_present(attributes, SPAN_HTTP_STATUS_ATTRIBUTES))
    is_error = _span_has_error_code(span_status) or (http_status is not None and http_status >= 400)

    error = _as_text(span_status.get("message"))
    if error is None and http_status is not None and http_status >= 400:
        error = f"HTTP {http_status}"

    return NormalizedApiCall(
        name=str(span.get("name") or "unknown"),
        operation=str(span.get("kind") or "api_call"),
        status="error" if is_error else "success",
        http_status=http_status,
        request=ApiRequest(
            method=_as_label(attributes.get("http.method") or attributes.get("http.request.method")),
            url=_as_label(attributes.get("http.url") or attributes.get("url.full")),
            body=truncate_body(attributes.get("http.request.body")),
        ),
        response=ApiResponse(
            status=http_status,
            body=truncate_body(attributes.get("http.response.body")),
        ),
        error=error,
        timestamp=timestamp,
    )


def extract_api_calls(session_traces: List[Dict[str, Any]]) -> List[NormalizedApiCall]:
    """
    Collect API calls from telemetry records.

    Each record contributes its explicit tool calls first, then any spans
    matching the API heuristic, preserving record order.
    """
    api_calls: List[NormalizedApiCall] = []

    for record in session_traces:
        timestamp = record.get("unix_timestamp")

        tool_calls = record.get("tool_calls")
        if isinstance(tool_calls, list):
            for tool in tool_calls:
                if isinstance(tool, dict):
                    api_calls.append(normalize_tool_call(tool, timestamp))

        spans = record.get("otel_spans")
        if isinstance(spans, list):
            for span in spans:
                if isinstance(span, dict) and is_api_span(span):
                    api_calls.append(normalize_span(span, timestamp))

    return api_calls


def _tool_reference(tool: Any) -> Dict[str, Any]:
    if not isinstance(tool, dict):
        return {"name": None, "arguments": truncate_body(tool), "result": None}
    function = tool.get("function") if isinstance(tool.get("function"), dict) else {}
    return {
        "name": _first_present(tool, TOOL_NAME_FIELDS) or function.get("name"),
        "arguments": truncate_body(tool.get("arguments") or function.get("arguments")),
        "result": truncate_body(tool.get("result")),
    }


def _tool_references(tools: Any) -> Optional[List[Dict[str, Any]]]:
    if not isinstance(tools, list):
        return None
    return [_tool_reference(tool) for tool in tools]


def synthesize_transcript(session_traces: List[Dict[str, Any]]) -> List[NormalizedTranscriptTurn]:
    """Build one transcript turn per telemetry record carrying user or agent text."""
    turns: List[NormalizedTranscriptTurn] = []

    for record in session_traces:
        user_text = record.get("user_transcript")
        agent_text = record.get("agent_response")
        if not user_text and not agent_text:
            continue

        turns.append(
            NormalizedTranscriptTurn(
                turn_id=record.get("turn_id"),
                timestamp=record.get("unix_timestamp"),
                user=truncate_turn_text(user_text) if user_text else None,
                agent=truncate_turn_text(agent_text) if agent_text else None,
                tool_calls=_tool_references(record.get("tool_calls")),
            )
        )

    return turns


def normalize_turn(item: Any) -> NormalizedTranscriptTurn:
    if isinstance(item, str):
        return NormalizedTranscriptTurn(content=truncate_turn_text(item))
    if not isinstance(item, dict):
        return NormalizedTranscriptTurn(content=item)

    user_text = item.get("user_transcript") or item.get("user")
    agent_text = item.get("agent_response") or item.get("agent")

    return NormalizedTranscriptTurn(
        turn_id=item.get("turn_id"),
        timestamp=item.get("timestamp"),
        role=_as_label(item.get("role")),
        content=truncate_turn_text(item.get("content")) if item.get("content") else None,
        user=truncate_turn_text(user_text) if isinstance(user_text, str) and user_text else None,
        agent=truncate_turn_text(agent_text) if isinstance(agent_text, str) and agent_text else None,
        tool_calls=_tool_references(item.get("tool_calls")),
        function_calls=_tool_references(item.get("function_calls")),
    )


def normalize_transcript(
    raw_transcript: Any,
    session_traces: List[Dict[str, Any]],
) -> List[NormalizedTranscriptTurn]:
    """
    Normalize the raw transcript, synthesizing it from telemetry when empty.

    Args:
        raw_transcript: The stored transcript (list of turns, text, or nothing)
        session_traces: Per-turn telemetry records for the same call

    Returns:
        Bounded transcript turns in call order
    """
    if isinstance(raw_transcript, str) and raw_transcript.strip():
        return [normalize_turn(raw_transcript)]

    if isinstance(raw_transcript, list) and raw_transcript:
        return [normalize_turn(item) for item in raw_transcript]

    if session_traces:
        return synthesize_transcript(session_traces)

    return []


def extract_review_fields(call_session: CallSession) -> ExtractedFields:
    """
    Pull transcript, agent instructions and API calls out of a call session.

    Missing configuration, telemetry or transcript never raises; the
    corresponding field is left empty and the degradation is logged.
    """
    config = resolve_agent_config(call_session)
    session_traces = get_session_traces(call_session)

    if config is None:
        logger.warning(f"Extraction degraded for call {call_session.id}: no agent configuration")
    if not session_traces:
        logger.warning(f"Extraction degraded for call {call_session.id}: no telemetry trace")

    transcript = normalize_transcript(call_session.transcript_json, session_traces)
    if not transcript:
        logger.warning(f"Extraction degraded for call {call_session.id}: empty transcript")

    return ExtractedFields(
        transcript=transcript,
        agent_instructions=truncate_instructions(extract_agent_instructions(config)),
        api_calls=extract_api_calls(session_traces),
    )
