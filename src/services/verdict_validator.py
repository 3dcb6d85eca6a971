
import json
import logging
import re

from pydantic import ValidationError

from src.api.schemas.review import ReviewResult
from src.exceptions import VerdictMalformed

logger = logging.getLogger(__name__)


RAW_TEXT_LOG_LIMIT = 2000

_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*([\s\S]*?)\s*```\s*$")


def _strip_code_fence(raw_text: str) -> str:
    match = _CODE_FENCE.match(raw_text)
    return match.group(1) if match else raw_text


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors()[:5]:
        location = ".".join(str(part) for part in item["loc"]) or "<root>"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


def parse_review_result(raw_text: str) -> ReviewResult:
    """
    Parse the judge's raw text into a ReviewResult.

    A single surrounding markdown code fence is tolerated. Anything that
    is not a JSON object with an `errors` list of well-formed findings is
    rejected; there is no partial acceptance.

    Raises:
        VerdictMalformed: Invalid JSON, missing `errors`, or an unknown finding type
    """
    if raw_text is None or not raw_text.strip():
        raise VerdictMalformed("Judge returned an empty verdict", raw_text=raw_text)

    try:
        data = json.loads(_strip_code_fence(raw_text))
    except json.JSONDecodeError as e:
        logger.warning(f"Judge verdict is not valid JSON ({e}): {raw_text[:RAW_TEXT_LOG_LIMIT]}")
        raise VerdictMalformed(f"Judge verdict is not valid JSON: {e}", raw_text=raw_text) from e

    if not isinstance(data, dict):
        logger.warning(f"Judge verdict is not a JSON object: {raw_text[:RAW_TEXT_LOG_LIMIT]}")
        raise VerdictMalformed("Judge verdict is not a JSON object", raw_text=raw_text)

    try:
        return ReviewResult.model_validate(data)
    except ValidationError as e:
        summary = _describe_validation_error(e)
        logger.warning(f"Judge verdict failed schema validation ({summary}): {raw_text[:RAW_TEXT_LOG_LIMIT]}")
        raise VerdictMalformed(f"Judge verdict failed schema validation: {summary}", raw_text=raw_text) from e
