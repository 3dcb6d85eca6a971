
import logging
import time
from functools import lru_cache
from typing import TypedDict, List, Optional, Dict, Any

from langgraph.graph import StateGraph, END
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.api.schemas.call_log import CallSession
from src.api.schemas.payload import ReviewPayload
from src.api.schemas.review import ProgressMessage, ReviewResult, ReviewStatus
from src.config import get_settings
from src.exceptions import CallLogNotFound, JudgeUnavailable, PersistenceFailure, ReviewPipelineError
from src.services.call_log_sources import (
    AgentConfigSource,
    CallLogRepository,
    HttpAgentConfigSource,
    InMemoryCallLogRepository,
    SupabaseCallLogRepository,
)
from src.services.payload_assembler import build_review_payload, build_judge_document
from src.services.progress_broadcaster import ProgressBroadcaster
from src.services.review_store import (
    InMemoryReviewStore,
    ReviewStore,
    SupabaseReviewStore,
    utc_now,
)
from src.services.supabase_rest import SupabaseRest
from src.services.verdict_validator import parse_review_result
from judge.credentials import GoogleServiceAccountCredentialProvider
from judge.judge_client import JudgeClient

logger = logging.getLogger(__name__)


class ReviewState(TypedDict):
    """State for the call review workflow."""

    call_log_id: str
    agent_id: Optional[str]
    call_session: CallSession


    payload: Optional[ReviewPayload]
    document: Optional[str]
    raw_verdict: Optional[str]
    review_result: Optional[ReviewResult]


    error: Optional[Exception]
    failed_stage: Optional[str]
    persist_error: Optional[Exception]
    latency_ms: int


class ReviewPipeline:
    """
    LangGraph-based review orchestrator.

    Workflow:
    1. Fetch Context - Agent configuration and telemetry (missing data tolerated)
    2. Build Payload - Extract, truncate and assemble the judge document
    3. Invoke Judge - Call the judge model
    4. Validate Verdict - Parse the judge output into a ReviewResult
    5. Record Completed - Persist and broadcast the verdict

    Any failure routes to Record Failure, which persists and broadcasts
    the `failed` state before the error is re-raised to the caller.
    """

    def __init__(
        self,
        store: ReviewStore,
        judge_client: JudgeClient,
        call_logs: Optional[CallLogRepository] = None,
        agent_configs: Optional[AgentConfigSource] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        judge_max_retries: Optional[int] = None,
    ):
        """Initialize the pipeline; a missing broadcaster disables progress updates."""
        self.store = store
        self.judge_client = judge_client
        self.call_logs = call_logs or InMemoryCallLogRepository()
        self.agent_configs = agent_configs
        self.broadcaster = broadcaster
        if judge_max_retries is None:
            judge_max_retries = get_settings().judge_max_retries
        self.judge_max_retries = max(0, judge_max_retries)
        self.judge_retry_wait = wait_exponential(multiplier=1, min=2, max=10)
        self.graph = self._build_graph()

    def _build_graph(self) -> StateGraph:
        """Build the LangGraph workflow."""

        workflow = StateGraph(ReviewState)


        workflow.add_node("fetch_context", self._fetch_context)
        workflow.add_node("build_payload", self._build_payload)
        workflow.add_node("invoke_judge", self._invoke_judge)
        workflow.add_node("validate_verdict", self._validate_verdict)
        workflow.add_node("record_completed", self._record_completed)
        workflow.add_node("record_failure", self._record_failure)


        workflow.set_entry_point("fetch_context")
        workflow.add_edge("fetch_context", "build_payload")
        for stage, next_stage in (
            ("build_payload", "invoke_judge"),
            ("invoke_judge", "validate_verdict"),
            ("validate_verdict", "record_completed"),
            ("record_completed", END),
        ):
            workflow.add_conditional_edges(
                stage,
                self._route_after_stage,
                {
                    "continue": next_stage,
                    "error": "record_failure",
                },
            )
        workflow.add_edge("record_failure", END)

        return workflow.compile()

    def _route_after_stage(self, state: ReviewState) -> str:
        """Send the run to the failure handler once any stage has failed."""
        if state.get("error") is not None:
            return "error"
        return "continue"

    def _broadcast(self, call_log_id: str, status: ReviewStatus, **fields: Any) -> None:
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.publish(ProgressMessage(call_log_id=call_log_id, status=status, **fields))
        except Exception as e:
            logger.error(f"Broadcast of {status} for {call_log_id} failed: {e}")

    async def _fetch_context(self, state: ReviewState) -> Dict[str, Any]:
        """Attach agent configuration and telemetry unless already supplied."""
        call_session = state["call_session"]
        call_log_id = state["call_log_id"]
        updates: Dict[str, Any] = {}

        if not call_session.complete_configuration and self.agent_configs is not None:
            try:
                agent_config = await self.agent_configs.get_agent_config(call_log_id)
            except Exception as e:
                logger.warning(f"Extraction degraded for call {call_log_id}: agent config lookup failed: {e}")
                agent_config = None
            if agent_config:
                updates["complete_configuration"] = agent_config

        existing_traces = (call_session.telemetry_data or {}).get("session_traces")
        if not existing_traces:
            try:
                telemetry = await self.call_logs.get_telemetry(call_log_id)
            except Exception as e:
                logger.warning(f"Extraction degraded for call {call_log_id}: telemetry lookup failed: {e}")
                telemetry = None
            updates["telemetry_data"] = {"session_traces": telemetry or []}

        if not updates:
            return {}
        return {"call_session": call_session.model_copy(update=updates)}

    async def _build_payload(self, state: ReviewState) -> Dict[str, Any]:
        """Extract, truncate and assemble the judge document."""
        logger.info(f"Building review payload for call {state['call_log_id']}")

        try:
            payload = build_review_payload(state["call_session"])
            document = build_judge_document(payload)
        except Exception as e:
            logger.error(f"Payload assembly failed for call {state['call_log_id']}: {e}")
            return {"error": e, "failed_stage": "build_payload"}

        return {"payload": payload, "document": document}

    async def _call_judge(self, document: str) -> str:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.judge_max_retries + 1),
            wait=self.judge_retry_wait,
            retry=retry_if_exception_type(JudgeUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying judge call (attempt {attempt.retry_state.attempt_number})")
                return await self.judge_client.generate(document)

    async def _invoke_judge(self, state: ReviewState) -> Dict[str, Any]:
        """Submit the document to the judge model."""
        logger.info(f"Invoking judge for call {state['call_log_id']}")
        start_time = time.time()

        try:
            raw_verdict = await self._call_judge(state["document"])
        except Exception as e:
            logger.error(f"Judge invocation failed for call {state['call_log_id']}: {e}")
            return {"error": e, "failed_stage": "invoke_judge"}

        return {
            "raw_verdict": raw_verdict,
            "latency_ms": int((time.time() - start_time) * 1000),
        }

    async def _validate_verdict(self, state: ReviewState) -> Dict[str, Any]:
        """Parse the judge output into a ReviewResult."""
        try:
            review_result = parse_review_result(state["raw_verdict"])
        except Exception as e:
            logger.error(f"Verdict rejected for call {state['call_log_id']}: {e}")
            return {"error": e, "failed_stage": "validate_verdict"}

        return {"review_result": review_result}

    async def _record_completed(self, state: ReviewState) -> Dict[str, Any]:
        """Persist the verdict and broadcast completion."""
        call_log_id = state["call_log_id"]
        review_result = state["review_result"]
        summary = {
            "error_count": review_result.error_count,
            "has_api_failures": review_result.has_type("API_FAILURE"),
            "has_wrong_actions": review_result.has_type("WRONG_ACTION"),
            "has_wrong_outputs": review_result.has_type("WRONG_OUTPUT"),
        }

        try:
            await self.store.upsert(
                call_log_id,
                agent_id=state["agent_id"],
                status="completed",
                review_result=review_result,
                error_message=None,
                reviewed_at=utc_now(),
                **summary,
            )
        except PersistenceFailure as e:
            logger.error(f"Failed to store review result for call {call_log_id}: {e}")
            return {"error": e, "failed_stage": "record_completed"}

        self._broadcast(call_log_id, "completed", **summary)
        logger.info(
            f"Call {call_log_id} reviewed: "
            f"errors={summary['error_count']}, "
            f"latency={state.get('latency_ms', 0)}ms"
        )
        return {}

    async def _record_failure(self, state: ReviewState) -> Dict[str, Any]:
        """Persist and broadcast the failed state."""
        call_log_id = state["call_log_id"]
        error = state["error"]
        error_message = str(error) or error.__class__.__name__
        updates: Dict[str, Any] = {}

        logger.error(f"Review failed for call {call_log_id} at {state.get('failed_stage')}: {error_message}")

        try:
            await self.store.upsert(
                call_log_id,
                agent_id=state["agent_id"],
                status="failed",
                error_message=error_message,
            )
        except PersistenceFailure as e:
            logger.error(f"Failed to mark review failed for call {call_log_id}: {e}")
            updates["persist_error"] = e

        self._broadcast(call_log_id, "failed", error_message=error_message)
        return updates

    async def review_call_log(self, call_session: CallSession) -> ReviewResult:
        """
        Review a single call log end to end.

        Args:
            call_session: The call to review, identified by `id` and `agent_id`

        Returns:
            The validated ReviewResult (also persisted as `completed`)

        Raises:
            ReviewPipelineError: Any failure; the record is left `failed`
        """
        call_log_id = call_session.id
        agent_id = call_session.agent_id

        try:
            await self.store.upsert(call_log_id, agent_id=agent_id, status="processing")
        except PersistenceFailure as e:
            logger.error(f"Failed to mark call {call_log_id} processing: {e}")
            self._broadcast(call_log_id, "failed", error_message=str(e))
            raise
        self._broadcast(call_log_id, "processing")

        initial_state: ReviewState = {
            "call_log_id": call_log_id,
            "agent_id": agent_id,
            "call_session": call_session,
            "payload": None,
            "document": None,
            "raw_verdict": None,
            "review_result": None,
            "error": None,
            "failed_stage": None,
            "persist_error": None,
            "latency_ms": 0,
        }

        final_state = await self.graph.ainvoke(initial_state)

        error = final_state.get("error")
        persist_error = final_state.get("persist_error")
        if persist_error is not None:
            raise persist_error from error
        if error is not None:
            raise error

        return final_state["review_result"]

    async def queue_review(self, call_log_id: str, agent_id: str) -> None:
        """Create or reset the pending record; the review itself runs elsewhere."""
        await self.store.upsert(call_log_id, agent_id=agent_id, status="pending")
        self._broadcast(call_log_id, "pending")
        logger.info(f"Queued review for call {call_log_id}")

    async def review_by_id(self, call_log_id: str) -> ReviewResult:
        """Load a call log and review it immediately."""
        call_session = await self.call_logs.get_call_log(call_log_id)
        if call_session is None:
            raise CallLogNotFound(call_log_id)
        return await self.review_call_log(call_session)

    async def _fail_claimed(self, call_log_id: str, error: Exception) -> None:
        """Move a claimed record to failed when its review never started."""
        error_message = str(error) or error.__class__.__name__
        try:
            await self.store.upsert(call_log_id, status="failed", error_message=error_message)
        except PersistenceFailure as e:
            logger.error(f"Failed to mark review failed for call {call_log_id}: {e}")
            raise e from error
        finally:
            self._broadcast(call_log_id, "failed", error_message=error_message)

    async def review_queued(self, call_log_id: str) -> Optional[ReviewResult]:
        """
        Run the review for a pending record.

        Returns None without doing anything when the record is no longer
        pending (already claimed by another trigger, or finished).
        """
        if not await self.store.claim_pending(call_log_id):
            logger.info(f"Call log {call_log_id} already processed or not pending")
            return None

        try:
            call_session = await self.call_logs.get_call_log(call_log_id)
            if call_session is None:
                raise CallLogNotFound(call_log_id)
        except Exception as e:
            logger.error(f"Could not load call log {call_log_id} for review: {e}")
            await self._fail_claimed(call_log_id, e)
            raise

        return await self.review_call_log(call_session)

    async def batch_queue(self, agent_id: str, limit: int = 50) -> Dict[str, Any]:
        """Queue the agent's most recent call logs; per-call failures are logged."""
        call_logs = await self.call_logs.list_recent_call_logs(agent_id, limit)

        queued_count = 0
        for call_log in call_logs:
            try:
                await self.queue_review(call_log.id, call_log.agent_id or agent_id)
                queued_count += 1
            except ReviewPipelineError as e:
                logger.error(f"Failed to queue review for {call_log.id}: {e}")

        return {"total": len(call_logs), "queued": queued_count, "agent_id": agent_id}

    async def status_counts(self) -> Dict[str, int]:
        return await self.store.status_counts()



@lru_cache()
def get_progress_broadcaster() -> ProgressBroadcaster:
    """Get the process-wide progress broadcaster."""
    return ProgressBroadcaster(subscriber_queue_size=get_settings().subscriber_queue_size)


_pipeline_instance: Optional[ReviewPipeline] = None


def get_review_pipeline() -> ReviewPipeline:
    """Get or create the review pipeline singleton from settings."""
    global _pipeline_instance
    if _pipeline_instance is not None:
        return _pipeline_instance

    settings = get_settings()

    if settings.supabase_url and settings.supabase_service_role_key:
        client = SupabaseRest(
            settings.supabase_url,
            settings.supabase_service_role_key,
            timeout=settings.storage_timeout_seconds,
        )
        store: ReviewStore = SupabaseReviewStore(client, table=settings.call_reviews_table)
        call_logs: CallLogRepository = SupabaseCallLogRepository(
            client,
            call_logs_table=settings.call_logs_table,
            metrics_logs_table=settings.metrics_logs_table,
        )
        logger.info("Review pipeline using Supabase storage")
    else:
        store = InMemoryReviewStore()
        call_logs = InMemoryCallLogRepository()
        logger.warning("Supabase not configured, review pipeline using in-memory storage")

    agent_configs = None
    if settings.agent_config_base_url:
        agent_configs = HttpAgentConfigSource(settings.agent_config_base_url)

    judge_client = JudgeClient(
        GoogleServiceAccountCredentialProvider(settings.google_application_credentials)
    )

    _pipeline_instance = ReviewPipeline(
        store=store,
        judge_client=judge_client,
        call_logs=call_logs,
        agent_configs=agent_configs,
        broadcaster=get_progress_broadcaster(),
        judge_max_retries=settings.judge_max_retries,
    )
    return _pipeline_instance
