import asyncio
import logging
from typing import Dict, Set

logger = logging.getLogger("EventBus")


class EventBus:
    """
    In-process pub/sub for pipeline events.

    Responsibility:
    - Bounded queues per subscriber.
    - Drop-oldest on overflow so a slow reader never stalls the pipeline.

    Events are plain dicts with a "type" key:
    incremental_result, backpressure_drop, terminal_backpressure,
    adaptive_pause, adaptive_resume, window_error.
    """

    MAX_QUEUE_SIZE = 1000

    def __init__(self, max_queue_size: int = MAX_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self.subscribers: Dict[str, Set[asyncio.Queue]] = {}
        self.active = True
        self.published = 0

    def subscribe(self, consumer_name: str, topic: str = "all") -> asyncio.Queue:
        """
        Returns a bounded queue for the consumer. topic is an event type or "all".
        """
        q = asyncio.Queue(maxsize=self.max_queue_size)
        self.subscribers.setdefault(topic, set()).add(q)
        logger.info(f"Subscriber connected: {consumer_name} ({topic})")
        return q

    def unsubscribe(self, q: asyncio.Queue):
        for queues in self.subscribers.values():
            queues.discard(q)

    def publish(self, event: dict):
        """
        Non-blocking publish.
        If queue full: Drop Oldest (get_nowait) then Put.
        """
        if not self.active:
            return
        self.published += 1

        targets = set(self.subscribers.get("all", ()))
        targets |= self.subscribers.get(event.get("type", ""), set())
        for q in targets:
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Dropped {event.get('type')} event for a full subscriber")

    async def shutdown(self):
        self.active = False
        for queues in self.subscribers.values():
            for q in queues:
                while not q.empty():
                    q.get_nowait()
                # Poison Pill
                await q.put(None)

        self.subscribers.clear()
        logger.info("EventBus shutdown complete.")
