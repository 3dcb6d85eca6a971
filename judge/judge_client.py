
import logging
import time
from typing import Dict, Any, Optional

import httpx

from src.config import get_settings
from src.exceptions import JudgeUnavailable, JudgeEmptyResponse
from judge.credentials import CredentialProvider

logger = logging.getLogger(__name__)


VERTEX_GENERATE_URL = (
    "https://{location}-aiplatform.googleapis.com/v1/projects/{project}"
    "/locations/{location}/publishers/google/models/{model}:generateContent"
)


class JudgeClient:
    """Vertex AI Gemini client that returns the judge model's raw text."""

    def __init__(
        self,
        credential_provider: CredentialProvider,
        project_id: Optional[str] = None,
        location: Optional[str] = None,
        model_name: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the judge client; the credential provider is shared."""
        settings = get_settings()
        self.credential_provider = credential_provider
        self.project_id = project_id or settings.google_project_id
        self.location = location or settings.google_location
        self.model_name = model_name or settings.judge_model
        self.timeout = timeout or settings.judge_timeout_seconds
        self.generation_config = {
            "temperature": settings.judge_temperature,
            "topP": settings.judge_top_p,
            "topK": settings.judge_top_k,
            "maxOutputTokens": settings.judge_max_output_tokens,
            "responseMimeType": "application/json",
        }
        self._http_client = http_client

        logger.info(f"Judge client initialized with model: {self.model_name}")

    @property
    def endpoint(self) -> str:
        return VERTEX_GENERATE_URL.format(
            location=self.location,
            project=self.project_id,
            model=self.model_name,
        )

    def build_request_body(self, document: str) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": document}],
                }
            ],
            "generationConfig": dict(self.generation_config),
        }

    async def _post(self, headers: Dict[str, str], body: Dict[str, Any]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(self.endpoint, headers=headers, json=body, timeout=self.timeout)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.endpoint, headers=headers, json=body)

    @staticmethod
    def _extract_text(result: Any) -> str:
        if not isinstance(result, dict):
            raise JudgeEmptyResponse("Unexpected Gemini response shape")

        candidates = result.get("candidates") or []
        if not candidates:
            block_reason = (result.get("promptFeedback") or {}).get("blockReason")
            reason = f" (blocked: {block_reason})" if block_reason else ""
            raise JudgeEmptyResponse(f"No content in Gemini response{reason}")

        candidate = candidates[0] or {}
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))

        if not text.strip():
            finish_reason = candidate.get("finishReason")
            reason = f" (finish reason: {finish_reason})" if finish_reason else ""
            raise JudgeEmptyResponse(f"No content in Gemini response{reason}")

        return text

    async def generate(self, document: str) -> str:
        """
        Submit the judge document and return the model's raw text.

        Args:
            document: Instruction document plus serialized review payload

        Returns:
            The model's response text (expected to be JSON)

        Raises:
            JudgeUnavailable: Credential, transport or non-2xx failure
            JudgeEmptyResponse: The model returned no usable content
        """
        try:
            token = await self.credential_provider.get_token()
        except Exception as e:
            logger.error(f"Judge authentication failed: {e}")
            raise JudgeUnavailable(f"Authentication failed: {e}") from e

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        start_time = time.time()

        try:
            response = await self._post(headers, self.build_request_body(document))
        except httpx.TimeoutException as e:
            raise JudgeUnavailable(f"Gemini API request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise JudgeUnavailable(f"Gemini API request failed: {e}") from e

        latency_ms = int((time.time() - start_time) * 1000)

        if not response.is_success:
            logger.error(f"Gemini API returned {response.status_code} after {latency_ms}ms")
            raise JudgeUnavailable(
                f"Gemini API error: {response.status_code} - {response.text}",
                status_code=response.status_code,
                detail=response.text,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise JudgeEmptyResponse("Gemini response body was not valid JSON") from e

        text = self._extract_text(result)
        logger.info(f"Judge response received in {latency_ms}ms ({len(text)} chars)")
        return text

    async def health_check(self) -> bool:
        """Check that a token can be obtained for the judge model."""
        try:
            await self.credential_provider.get_token()
            return True
        except Exception as e:
            logger.error(f"Judge health check failed: {e}")
            return False
