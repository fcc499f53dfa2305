"""
Fixed-interval batch poller for channels with at-least-once delivery.

Every tick the whole channel queue is drained, triaged as one batch, then
handed to the detailed handler. Message ids already seen are dropped.
"""

from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Set
import asyncio
import structlog

from lumen.domain.models.agent_state import InboundMessage, LandscapeResult
from lumen.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

TriageHandler = Callable[[List[InboundMessage]], Awaitable[Optional[LandscapeResult]]]
BatchHandler = Callable[[List[InboundMessage], Optional[LandscapeResult]], Awaitable[Any]]


class RecentIdSet:
    """Set of ids that forgets the oldest entries beyond ``capacity``"""

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._ids: "OrderedDict[Hashable, None]" = OrderedDict()

    def add(self, item: Hashable) -> bool:
        """Add ``item``; returns False if it was already present"""
        if item in self._ids:
            self._ids.move_to_end(item)
            return False
        self._ids[item] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, item: Hashable) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class BatchPoller:
    """Drains a channel queue on a fixed tick with two-phase handling"""

    def __init__(
        self,
        on_batch: BatchHandler,
        triage: Optional[TriageHandler] = None,
        interval_ms: int = 3000,
        dedup_capacity: int = 1000,
    ):
        self.on_batch = on_batch
        self.triage = triage
        self.interval_ms = interval_ms
        self.in_tray: List[InboundMessage] = []
        self.processed_ids = RecentIdSet(dedup_capacity)
        self.is_processing = False
        self._poll_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    def enqueue(self, message: InboundMessage) -> bool:
        """Queue a message unless its id was seen recently"""
        if not self.processed_ids.add(message.message_id):
            logger.info("Duplicate message skipped", message_id=message.message_id, identity=message.identity)
            metrics.increment_counter("poller.duplicates")
            return False

        self.in_tray.append(message)
        logger.debug("Message enqueued", message_id=message.message_id, identity=message.identity)
        return True

    async def start(self):
        """Start the polling loop"""
        if self._poll_task is not None:
            return
        logger.info("Batch poller started", interval_ms=self.interval_ms)
        self._poll_task = asyncio.create_task(self._run())

    async def stop(self):
        """Stop ticking; a batch already being handled is allowed to finish"""
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        if self._tick_tasks:
            await asyncio.gather(*self._tick_tasks, return_exceptions=True)
        logger.info("Batch poller stopped")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_ms / 1000)
            # Ticks keep firing while a batch is handled; poll() skips them
            task = asyncio.create_task(self.poll())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)

    async def poll(self):
        """Main polling cycle"""
        if self.is_processing or not self.in_tray:
            return

        self.is_processing = True
        batch, self.in_tray = self.in_tray, []

        try:
            logger.info("Processing batch", messages=len(batch))

            landscape = None
            if self.triage is not None:
                landscape = await self.triage(batch)
                if landscape is not None:
                    logger.info(
                        "Batch triaged",
                        summary=landscape.situation_summary,
                        intent=landscape.overall_intent,
                        priority=landscape.priority,
                    )

            await self.on_batch(batch, landscape)
            metrics.increment_counter("poller.batches")

        except Exception as e:
            # At-most-once: a failed batch is not returned to the tray
            logger.error("Error during batch processing", error=str(e), messages=len(batch), exc_info=True)
            metrics.increment_counter("poller.batch_errors")
        finally:
            self.is_processing = False

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queued_messages": len(self.in_tray),
            "processed_total": len(self.processed_ids),
            "is_processing": self.is_processing,
            "polling_interval_ms": self.interval_ms,
        }
