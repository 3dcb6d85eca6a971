
import json

import httpx
import pytest

from src.api.schemas.review import ReviewResult
from src.exceptions import PersistenceFailure
from src.services.review_store import InMemoryReviewStore, SupabaseReviewStore
from src.services.supabase_rest import SupabaseRest, in_filter


class TestInMemoryReviewStore:
    """Tests for the dict-backed review store."""

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, review_store):
        """Two writes for one call log leave a single record; the later write wins."""
        await review_store.upsert("log-1", agent_id="agent-1", status="pending")
        await review_store.upsert("log-1", status="processing")

        assert len(review_store) == 1
        record = await review_store.get("log-1")
        assert record.status == "processing"
        assert record.agent_id == "agent-1"
        assert record.created_at is not None
        assert record.updated_at >= record.created_at

    @pytest.mark.asyncio
    async def test_completed_record(self, review_store):
        result = ReviewResult(errors=[])
        await review_store.upsert("log-1", status="completed", review_result=result, error_count=0)

        record = await review_store.get("log-1")
        assert record.review_result == result
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, review_store):
        with pytest.raises(PersistenceFailure):
            await review_store.upsert("log-1", status="archived")
        assert await review_store.get("log-1") is None

    @pytest.mark.asyncio
    async def test_get_missing(self, review_store):
        assert await review_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_get_many_omits_unknown(self, review_store):
        await review_store.upsert("a", status="pending")
        await review_store.upsert("b", status="failed", error_message="boom")

        records = await review_store.get_many(["a", "b", "c"])
        assert set(records) == {"a", "b"}
        assert records["b"].error_message == "boom"

    @pytest.mark.asyncio
    async def test_status_counts(self, review_store):
        await review_store.upsert("a", status="pending")
        await review_store.upsert("b", status="pending")
        await review_store.upsert("c", status="completed")

        assert await review_store.status_counts() == {"pending": 2, "completed": 1}

    @pytest.mark.asyncio
    async def test_claim_pending(self, review_store):
        await review_store.upsert("a", status="pending")

        assert await review_store.claim_pending("a") is True
        assert (await review_store.get("a")).status == "processing"
        assert await review_store.claim_pending("a") is False
        assert await review_store.claim_pending("missing") is False


def make_supabase_store(handler) -> SupabaseReviewStore:
    client = SupabaseRest(
        "https://db.example.supabase.co/",
        "service-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return SupabaseReviewStore(client, table="call_reviews")


class TestSupabaseReviewStore:
    """Tests for the PostgREST-backed review store."""

    @pytest.mark.asyncio
    async def test_upsert_request(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201)

        store = make_supabase_store(handler)
        await store.upsert("log-1", status="completed", review_result=ReviewResult(errors=[]), error_count=0)

        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/call_reviews"
        assert request.url.params["on_conflict"] == "call_log_id"
        assert request.headers["Prefer"] == "resolution=merge-duplicates,return=minimal"
        assert request.headers["apikey"] == "service-key"
        assert json.loads(request.content) == {
            "call_log_id": "log-1",
            "status": "completed",
            "review_result": {"call_timestamp": None, "analysis_date": None, "errors": []},
            "error_count": 0,
        }

    @pytest.mark.asyncio
    async def test_get(self):
        def handler(request):
            assert request.url.params["call_log_id"] == "eq.log-1"
            return httpx.Response(200, json=[{"call_log_id": "log-1", "status": "failed", "error_message": "x"}])

        record = await make_supabase_store(handler).get("log-1")
        assert record.status == "failed"
        assert record.error_message == "x"

    @pytest.mark.asyncio
    async def test_get_missing(self):
        store = make_supabase_store(lambda request: httpx.Response(200, json=[]))
        assert await store.get("log-1") is None

    @pytest.mark.asyncio
    async def test_get_many(self):
        def handler(request):
            assert request.url.params["call_log_id"] == 'in.("a","b")'
            return httpx.Response(200, json=[{"call_log_id": "a", "status": "pending"}])

        records = await make_supabase_store(handler).get_many(["a", "b"])
        assert list(records) == ["a"]

    @pytest.mark.asyncio
    async def test_status_counts(self):
        rows = [{"status": "completed"}, {"status": "completed"}, {"status": "failed"}]
        store = make_supabase_store(lambda request: httpx.Response(200, json=rows))
        assert await store.status_counts() == {"completed": 2, "failed": 1}

    @pytest.mark.asyncio
    async def test_claim_pending(self):
        def handler(request):
            assert request.method == "PATCH"
            assert request.url.params["status"] == "eq.pending"
            return httpx.Response(200, json=[{"call_log_id": "a", "status": "processing"}])

        assert await make_supabase_store(handler).claim_pending("a") is True

    @pytest.mark.asyncio
    async def test_claim_pending_nothing_claimed(self):
        store = make_supabase_store(lambda request: httpx.Response(200, json=[]))
        assert await store.claim_pending("a") is False

    @pytest.mark.asyncio
    async def test_error_status_raises_persistence_failure(self):
        store = make_supabase_store(lambda request: httpx.Response(500, text="db down"))
        with pytest.raises(PersistenceFailure):
            await store.upsert("log-1", status="pending")

    @pytest.mark.asyncio
    async def test_transport_error_raises_persistence_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(PersistenceFailure):
            await make_supabase_store(handler).get("log-1")


def test_in_filter_quotes_values():
    assert in_filter(["a", 'b"c']) == 'in.("a","b\\"c")'
