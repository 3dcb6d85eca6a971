
import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from src.api.schemas.call_log import (
    BatchReviewRequest,
    InternalReviewRequest,
    QueueReviewRequest,
    ReviewCallRequest,
)
from src.api.schemas.review import ReviewRecord, ReviewStatsResponse
from src.config import Settings, get_settings
from src.exceptions import (
    CallLogNotFound,
    JudgeEmptyResponse,
    JudgeUnavailable,
    PersistenceFailure,
    ReviewPipelineError,
    VerdictMalformed,
)
from src.services.progress_broadcaster import (
    SSE_KEEPALIVE,
    ProgressBroadcaster,
    Subscription,
    format_sse,
    format_update,
)
from src.services.review_pipeline import ReviewPipeline, get_progress_broadcaster, get_review_pipeline
from src.services.review_store import utc_now

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["Call Reviews"])
internal_router = APIRouter(prefix="/api/internal", tags=["Internal"])


def _http_error_for(error: Exception) -> HTTPException:
    """Map a pipeline failure to the HTTP error returned to the caller."""
    if isinstance(error, CallLogNotFound):
        return HTTPException(status_code=404, detail=f"Call log not found: {error.call_log_id}")
    if isinstance(error, (JudgeUnavailable, JudgeEmptyResponse)):
        return HTTPException(status_code=503, detail=f"Judge model error: {str(error)}")
    if isinstance(error, VerdictMalformed):
        return HTTPException(status_code=502, detail=f"Invalid judge verdict: {str(error)}")
    if isinstance(error, PersistenceFailure):
        return HTTPException(status_code=500, detail=f"Storage error: {str(error)}")
    return HTTPException(status_code=500, detail=f"Internal error: {str(error)}")


def _split_ids(raw: str) -> List[str]:
    return [value.strip() for value in raw.split(",") if value.strip()]


async def run_queued_review(pipeline: ReviewPipeline, call_log_id: str) -> None:
    """Background trigger for a pending review; failures are logged only."""
    try:
        result = await pipeline.review_queued(call_log_id)
        if result is not None:
            logger.info(f"Background review completed for {call_log_id}: {result.error_count} errors")
    except Exception as e:
        logger.error(f"Background review failed for {call_log_id}: {e}")


@router.post("/call-reviews/review")
async def review_calls(
    request: ReviewCallRequest,
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """
    Review one call log, or a batch, immediately.

    The review record moves to `processing` and then to `completed` or
    `failed`; observers on the SSE stream see each transition.
    """
    if request.call_log_id:
        try:
            result = await pipeline.review_by_id(request.call_log_id)
        except Exception as e:
            logger.error(f"Review failed for call log {request.call_log_id}: {e}")
            raise _http_error_for(e)

        return {
            "success": True,
            "data": {
                "call_log_id": request.call_log_id,
                "result": result.model_dump(),
            },
        }

    if request.call_log_ids:
        results: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        for call_log_id in request.call_log_ids:
            try:
                result = await pipeline.review_by_id(call_log_id)
                results.append({"call_log_id": call_log_id, "result": result.model_dump()})
            except Exception as e:
                logger.error(f"Review failed for call log {call_log_id}: {e}")
                errors.append({"call_log_id": call_log_id, "error": str(e)})

        return {
            "success": True,
            "data": {
                "processed": len(results),
                "failed": len(errors),
                "results": results,
                "errors": errors,
            },
        }

    raise HTTPException(
        status_code=400,
        detail="Missing required parameters: call_log_id or call_log_ids",
    )


@router.get("/call-reviews/review", response_model=ReviewRecord)
async def get_review_status(
    call_log_id: str = Query(..., min_length=1, description="Call log to look up"),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """Get the stored review record for a call log."""
    try:
        review = await pipeline.store.get(call_log_id)
    except ReviewPipelineError as e:
        logger.error(f"Get review status error: {e}")
        raise _http_error_for(e)

    if review is None:
        raise HTTPException(status_code=404, detail="Review not found")
    return review


@router.get("/call-reviews/statuses", response_model=Dict[str, ReviewRecord])
async def get_review_statuses(
    call_log_ids: str = Query(..., description="Comma-separated call log ids"),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """Get review records for several call logs; unknown ids are omitted."""
    ids = _split_ids(call_log_ids)
    if not ids:
        raise HTTPException(status_code=400, detail="Missing call_log_ids")

    try:
        return await pipeline.store.get_many(ids)
    except ReviewPipelineError as e:
        raise _http_error_for(e)


@router.post("/call-reviews/webhook")
async def queue_review_webhook(
    background_tasks: BackgroundTasks,
    body: Dict[str, Any] = Body(...),
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
    settings: Settings = Depends(get_settings),
):
    """
    Queue a review when a call log is created.

    Accepts the database webhook format (`{"type": "INSERT", "record": {...}}`)
    or a direct `{"call_log_id", "agent_id"}` body.
    """
    if body.get("type") == "INSERT" and isinstance(body.get("record"), dict):
        record = body["record"]
        call_log_id = record.get("id")
        agent_id = record.get("agent_id")
    else:
        call_log_id = body.get("call_log_id")
        agent_id = body.get("agent_id")

    try:
        queued = QueueReviewRequest(
            call_log_id=str(call_log_id or ""),
            agent_id=str(agent_id or ""),
        )
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload: call_log_id and agent_id are required")

    try:
        await pipeline.queue_review(queued.call_log_id, queued.agent_id)
    except ReviewPipelineError as e:
        logger.error(f"Call review webhook error: {e}")
        raise _http_error_for(e)

    if settings.auto_review_on_queue:
        background_tasks.add_task(run_queued_review, pipeline, queued.call_log_id)

    return {
        "success": True,
        "message": "Review queued successfully",
        "data": queued.model_dump(),
    }


@router.post("/call-reviews/batch-review")
async def batch_review(
    request: BatchReviewRequest,
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
    settings: Settings = Depends(get_settings),
):
    """Queue the most recent call logs of an agent for review."""
    limit = request.limit or settings.batch_review_default_limit
    try:
        summary = await pipeline.batch_queue(request.agent_id, limit)
    except ReviewPipelineError as e:
        raise _http_error_for(e)

    if summary["total"] == 0:
        message = "No call logs found for this agent"
    else:
        message = f"Queued {summary['queued']} call logs for review"

    return {"success": True, "message": message, "data": summary}


@router.get("/call-reviews/stats", response_model=ReviewStatsResponse)
async def review_stats(pipeline: ReviewPipeline = Depends(get_review_pipeline)):
    """Counts of review records per status."""
    try:
        stats = await pipeline.status_counts()
    except ReviewPipelineError as e:
        raise _http_error_for(e)
    return ReviewStatsResponse(stats=stats, timestamp=utc_now())


async def review_event_stream(
    request: Request,
    broadcaster: ProgressBroadcaster,
    subscription: Subscription,
    keepalive_seconds: float,
):
    """Yield SSE frames for a subscription until the client disconnects."""
    try:
        yield format_sse({"type": "connected", "subscription_key": subscription.key})
        while True:
            if await request.is_disconnected():
                break
            try:
                message = await subscription.get(timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield SSE_KEEPALIVE
                continue
            yield format_update(message)
    finally:
        broadcaster.unsubscribe(subscription)
        logger.info(f"SSE connection closed for {subscription.key}")


@router.get("/call-reviews/sse")
async def review_updates_sse(
    request: Request,
    call_log_ids: Optional[str] = Query(None, description="Comma-separated call log ids to watch"),
    broadcaster: ProgressBroadcaster = Depends(get_progress_broadcaster),
    settings: Settings = Depends(get_settings),
):
    """Stream review state transitions for the given call logs."""
    ids = _split_ids(call_log_ids or "")
    if not ids:
        raise HTTPException(status_code=400, detail="Missing call_log_ids")

    subscription = broadcaster.subscribe(ids)
    logger.info(f"New SSE connection for {subscription.key}")

    return StreamingResponse(
        review_event_stream(request, broadcaster, subscription, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/call-reviews/health")
async def call_reviews_health(pipeline: ReviewPipeline = Depends(get_review_pipeline)):
    """Check health of the call review service."""
    try:
        judge_available = await pipeline.judge_client.health_check()
        return {
            "status": "healthy" if judge_available else "degraded",
            "judge_available": judge_available,
            "judge_model": pipeline.judge_client.model_name,
            "workflow": "langgraph",
        }
    except Exception as e:
        return {
            "status": "degraded",
            "judge_available": False,
            "error": str(e),
        }


def verify_internal_secret(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Require `Authorization: Bearer <internal_webhook_secret>`."""
    if not settings.internal_webhook_secret:
        logger.error("internal_webhook_secret not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    if authorization != f"Bearer {settings.internal_webhook_secret}":
        logger.error("Unauthorized internal webhook attempt")
        raise HTTPException(status_code=401, detail="Unauthorized")


@internal_router.post("/ai-review", dependencies=[Depends(verify_internal_secret)])
async def internal_ai_review(
    request: InternalReviewRequest,
    pipeline: ReviewPipeline = Depends(get_review_pipeline),
):
    """
    Run the review for a pending record.

    Called by the database trigger when a pending review is created;
    records that are no longer pending are acknowledged and skipped.
    """
    logger.info(f"Received AI review request for call log: {request.call_log_id}")

    try:
        result = await pipeline.review_queued(request.call_log_id)
    except Exception as e:
        logger.error(f"AI review failed for call log {request.call_log_id}: {e}")
        raise _http_error_for(e)

    if result is None:
        return {"success": True, "message": "Already processed"}

    return {
        "success": True,
        "data": {
            "call_log_id": request.call_log_id,
            "error_count": result.error_count,
            "status": "completed",
        },
    }
