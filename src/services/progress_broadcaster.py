
import asyncio
import json
import logging
from typing import Any, Dict, FrozenSet, Iterable, Optional, Set

from src.api.schemas.review import ProgressMessage

logger = logging.getLogger(__name__)


class Subscription:
    """
    One live observer of review progress.

    Messages are buffered in a bounded queue; an empty `call_log_ids`
    set means the subscriber receives every call's updates.
    """

    def __init__(self, call_log_ids: Optional[Iterable[str]] = None, maxsize: int = 100):
        self.call_log_ids: FrozenSet[str] = frozenset(call_log_ids or ())
        self.queue: "asyncio.Queue[ProgressMessage]" = asyncio.Queue(maxsize=maxsize)

    @property
    def key(self) -> str:
        return "call-reviews:" + ",".join(sorted(self.call_log_ids))

    def wants(self, call_log_id: str) -> bool:
        return not self.call_log_ids or call_log_id in self.call_log_ids

    def deliver(self, message: ProgressMessage) -> None:
        self.queue.put_nowait(message)

    async def get(self, timeout: Optional[float] = None) -> ProgressMessage:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)


class ProgressBroadcaster:
    """Fans review state transitions out to the registered subscriptions."""

    def __init__(self, subscriber_queue_size: int = 100):
        self.subscriber_queue_size = subscriber_queue_size
        self._subscriptions: Set[Subscription] = set()

    def subscribe(self, call_log_ids: Optional[Iterable[str]] = None) -> Subscription:
        subscription = Subscription(call_log_ids, maxsize=self.subscriber_queue_size)
        self._subscriptions.add(subscription)
        logger.info(f"Registered subscription {subscription.key}. Total: {len(self._subscriptions)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.discard(subscription)
            logger.info(f"Unregistered subscription {subscription.key}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, message: ProgressMessage) -> int:
        """
        Deliver a message to every interested subscription.

        Never raises and never waits: a subscriber whose queue is full or
        that fails on delivery is dropped.

        Returns:
            Number of subscriptions the message was delivered to
        """
        sent_count = 0

        for subscription in list(self._subscriptions):
            if not subscription.wants(message.call_log_id):
                continue
            try:
                subscription.deliver(message)
                sent_count += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscription {subscription.key} is not keeping up, dropping it")
                self._subscriptions.discard(subscription)
            except Exception as e:
                logger.error(f"Failed to deliver update to {subscription.key}: {e}")
                self._subscriptions.discard(subscription)

        logger.debug(f"Broadcast {message.status} for {message.call_log_id} to {sent_count} subscribers")
        return sent_count


def format_sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def format_update(message: ProgressMessage) -> str:
    """SSE frame for a progress message, null fields omitted."""
    return format_sse({"type": "update", "data": message.model_dump(exclude_none=True)})


SSE_KEEPALIVE = ": keepalive\n\n"
