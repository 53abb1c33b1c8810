"""
Progress/Event Notifier

In-process publish/subscribe for generation progress. Subscribers attach to
one (generation_id, user_id) pair and receive only matching events. Every
subscriber gets its own bounded queue (fan-out); nothing is buffered for
subscribers that connect later.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

VISUAL_PROCESSING = "visual_processing"
VISUAL_COMPLETED = "visual_completed"
VISUAL_FAILED = "visual_failed"
GENERATION_COMPLETED = "generation_completed"

EVENT_TYPES = (VISUAL_PROCESSING, VISUAL_COMPLETED, VISUAL_FAILED, GENERATION_COMPLETED)


class GenerationEvent:
    """One progress notification"""

    def __init__(self, type: str, generation_id: str, user_id: str, data: Optional[Dict[str, Any]] = None,
                 timestamp: Optional[str] = None):
        if type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {type}")
        self.type = type
        self.generation_id = generation_id
        self.user_id = user_id
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "generationId": self.generation_id,
            "userId": self.user_id,
            "timestamp": self.timestamp,
            **self.data,
        }

    def __repr__(self):
        return f"GenerationEvent({self.type}, generation={self.generation_id})"


class Subscription:
    """Queue of events for one connected client"""

    def __init__(self, bus: "GenerationEventBus", generation_id: str, user_id: str, maxsize: int):
        self._bus = bus
        self.generation_id = generation_id
        self.user_id = user_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, event: GenerationEvent) -> bool:
        return event.generation_id == self.generation_id and event.user_id == self.user_id

    def offer(self, event: GenerationEvent):
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Subscriber queue full for generation {self.generation_id}, dropping {event.type} "
                f"(dropped so far: {self.dropped})"
            )

    async def get(self, timeout: Optional[float] = None) -> Optional[GenerationEvent]:
        """Next event, or None if timeout elapsed"""
        try:
            if timeout is None:
                return await self.queue.get()
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self):
        self._bus.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class GenerationEventBus:
    """Broadcast channel filtered by (generation_id, user_id)"""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []

    def subscribe(self, generation_id: str, user_id: str) -> Subscription:
        subscription = Subscription(self, generation_id, user_id, self.queue_size)
        self._subscribers.append(subscription)
        logger.info(f"User {user_id} | Subscribed to generation {generation_id} ({len(self._subscribers)} active)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass  # Already removed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: GenerationEvent) -> int:
        """
        Deliver event to every matching subscriber.

        Returns:
            Number of subscribers the event was offered to
        """
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription.matches(event):
                subscription.offer(event)
                delivered += 1
        logger.debug(f"Published {event.type} for generation {event.generation_id} to {delivered} subscribers")
        return delivered

    # ==================== EMITTERS ====================

    def visual_processing(self, generation_id: str, user_id: str, index: int, visual_type: str) -> GenerationEvent:
        event = GenerationEvent(VISUAL_PROCESSING, generation_id, user_id, {
            "visualIndex": index,
            "visualType": visual_type,
        })
        self.publish(event)
        return event

    def visual_completed(self, generation_id: str, user_id: str, index: int, visual: Dict[str, Any]) -> GenerationEvent:
        event = GenerationEvent(VISUAL_COMPLETED, generation_id, user_id, {
            "visualIndex": index,
            "visual": {
                "type": visual.get("type"),
                "status": visual.get("status"),
                "image_url": visual.get("image_url"),
                "generated_at": visual.get("generated_at"),
                "prompt": visual.get("prompt"),
            },
        })
        self.publish(event)
        return event

    def visual_failed(self, generation_id: str, user_id: str, index: int, error: str) -> GenerationEvent:
        event = GenerationEvent(VISUAL_FAILED, generation_id, user_id, {
            "visualIndex": index,
            "error": error,
        })
        self.publish(event)
        return event

    def generation_completed(self, generation_id: str, user_id: str, status: str,
                             completed_count: int, total_count: int) -> GenerationEvent:
        event = GenerationEvent(GENERATION_COMPLETED, generation_id, user_id, {
            "status": status,
            "completedCount": completed_count,
            "totalCount": total_count,
        })
        self.publish(event)
        return event
