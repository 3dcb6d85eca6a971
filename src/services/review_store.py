
import logging
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from src.api.schemas.review import ReviewRecord, ReviewResult
from src.exceptions import PersistenceFailure
from src.services.supabase_rest import SupabaseRest, SupabaseRestError, in_filter

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ReviewStore(ABC):
    """
    Persisted review state, one record per call log.

    Every write is an upsert keyed by `call_log_id`: fields given to a
    later write replace those of earlier writes, other fields are kept.
    """

    @abstractmethod
    async def upsert(self, call_log_id: str, **fields: Any) -> None:
        """Create or merge the record for `call_log_id`."""

    @abstractmethod
    async def get(self, call_log_id: str) -> Optional[ReviewRecord]:
        """Return the record, or None when no review exists."""

    @abstractmethod
    async def get_many(self, call_log_ids: List[str]) -> Dict[str, ReviewRecord]:
        """Return the existing records for the given ids, keyed by id."""

    @abstractmethod
    async def status_counts(self) -> Dict[str, int]:
        """Number of records per status."""

    @abstractmethod
    async def claim_pending(self, call_log_id: str) -> bool:
        """Move a record from pending to processing; False if it was not pending."""


class InMemoryReviewStore(ReviewStore):
    """Dict-backed store for tests and single-process deployments."""

    def __init__(self):
        self._records: Dict[str, ReviewRecord] = {}

    async def upsert(self, call_log_id: str, **fields: Any) -> None:
        now = utc_now()
        existing = self._records.get(call_log_id)
        base = existing.model_dump() if existing else {"created_at": now}

        try:
            record = ReviewRecord.model_validate(
                {**base, **fields, "call_log_id": call_log_id, "updated_at": now}
            )
        except ValidationError as e:
            raise PersistenceFailure(f"Failed to store review for {call_log_id}: {e}") from e

        self._records[call_log_id] = record

    async def get(self, call_log_id: str) -> Optional[ReviewRecord]:
        return self._records.get(call_log_id)

    async def get_many(self, call_log_ids: List[str]) -> Dict[str, ReviewRecord]:
        return {
            call_log_id: self._records[call_log_id]
            for call_log_id in call_log_ids
            if call_log_id in self._records
        }

    async def status_counts(self) -> Dict[str, int]:
        return dict(Counter(record.status for record in self._records.values()))

    async def claim_pending(self, call_log_id: str) -> bool:
        record = self._records.get(call_log_id)
        if record is None or record.status != "pending":
            return False
        await self.upsert(call_log_id, status="processing")
        return True

    def __len__(self) -> int:
        return len(self._records)


class SupabaseReviewStore(ReviewStore):
    """Review records in a Supabase table with a unique `call_log_id`."""

    def __init__(self, client: SupabaseRest, table: str = "call_reviews"):
        self.client = client
        self.table = table

    @staticmethod
    def _to_row(call_log_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        row: Dict[str, Any] = {"call_log_id": call_log_id}
        for key, value in fields.items():
            row[key] = value.model_dump(mode="json") if isinstance(value, ReviewResult) else value
        return row

    @staticmethod
    def _to_record(row: Dict[str, Any]) -> ReviewRecord:
        try:
            return ReviewRecord.model_validate(row)
        except ValidationError as e:
            raise PersistenceFailure(f"Stored review for {row.get('call_log_id')} is invalid: {e}") from e

    async def upsert(self, call_log_id: str, **fields: Any) -> None:
        try:
            await self.client.request(
                "POST",
                self.table,
                params={"on_conflict": "call_log_id"},
                json=self._to_row(call_log_id, fields),
                prefer="resolution=merge-duplicates,return=minimal",
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to store review for {call_log_id}: {e}") from e

    async def get(self, call_log_id: str) -> Optional[ReviewRecord]:
        try:
            rows = await self.client.select(
                self.table,
                {"call_log_id": f"eq.{call_log_id}", "select": "*", "limit": "1"},
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to get review status: {e}") from e
        return self._to_record(rows[0]) if rows else None

    async def get_many(self, call_log_ids: List[str]) -> Dict[str, ReviewRecord]:
        if not call_log_ids:
            return {}
        try:
            rows = await self.client.select(
                self.table,
                {"call_log_id": in_filter(call_log_ids), "select": "*"},
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to get review statuses: {e}") from e
        records = [self._to_record(row) for row in rows]
        return {record.call_log_id: record for record in records}

    async def status_counts(self) -> Dict[str, int]:
        try:
            rows = await self.client.select(self.table, {"select": "status"})
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to get review stats: {e}") from e
        return dict(Counter(row.get("status") for row in rows))

    async def claim_pending(self, call_log_id: str) -> bool:
        try:
            rows = await self.client.request(
                "PATCH",
                self.table,
                params={"call_log_id": f"eq.{call_log_id}", "status": "eq.pending"},
                json={"status": "processing"},
                prefer="return=representation",
            )
        except SupabaseRestError as e:
            raise PersistenceFailure(f"Failed to claim review for {call_log_id}: {e}") from e
        return bool(rows)
