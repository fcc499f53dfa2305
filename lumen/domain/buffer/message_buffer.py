"""
Coalescing message buffer.

Collects messages per identity and flushes them after a quiet period so a burst
of short messages becomes one request. At most one flush per identity runs at a
time; anything arriving meanwhile waits in an overflow queue and is coalesced
into the next batch.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
from dataclasses import dataclass, field
import structlog

from lumen.domain.models.agent_state import BufferedMessage
from lumen.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

FlushHandler = Callable[[str, List[BufferedMessage]], Awaitable[Any]]


@dataclass
class BufferState:
    """Per-identity buffer. Owned exclusively by MessageBuffer."""
    pending: List[BufferedMessage] = field(default_factory=list)
    overflow: List[BufferedMessage] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None
    in_flight: bool = False
    flush_task: Optional[asyncio.Task] = None

    @property
    def is_idle(self) -> bool:
        return not (self.pending or self.overflow or self.in_flight or self.timer)


class MessageBuffer:
    """Debounced per-identity batching with strict arrival order"""

    def __init__(self, on_flush: Optional[FlushHandler] = None, debounce_ms: int = 3000):
        if debounce_ms <= 0:
            raise ValueError("debounce_ms must be positive")
        self.debounce_ms = debounce_ms
        self.on_flush = on_flush
        self._buffers: Dict[str, BufferState] = {}

    def submit(self, identity: str, text: str) -> bool:
        """Add a message for ``identity``.

        Returns False when a flush for this identity is in progress; the message
        is then held for the batch after it. Must be called from within the
        running event loop.
        """
        state = self._buffers.setdefault(identity, BufferState())
        message = BufferedMessage(text=text)

        if state.in_flight:
            state.overflow.append(message)
            agent_logger.log_buffer_event(identity, "queued_overflow", {"overflow": len(state.overflow)})
            return False

        state.pending.append(message)
        self._arm_timer(identity, state)
        agent_logger.log_buffer_event(
            identity, "timer_reset", {"pending": len(state.pending), "debounce_ms": self.debounce_ms}
        )
        return True

    async def flush(self, identity: str):
        """Hand the pending batch for ``identity`` to the handler"""
        state = self._buffers.get(identity)
        if state is None or not state.pending or state.in_flight:
            return

        self._cancel_timer(state)
        batch, state.pending = state.pending, []
        state.in_flight = True

        logger.info("Flushing buffer", identity=identity, messages=len(batch))
        metrics.increment_counter("buffer.flushes")
        metrics.increment_counter("buffer.messages_flushed", len(batch))

        try:
            if self.on_flush is not None:
                await self.on_flush(identity, batch)
        except Exception as e:
            # At-most-once: the batch is dropped, never re-enqueued
            logger.error("Error flushing buffer", identity=identity, error=str(e), exc_info=True)
            metrics.increment_counter("buffer.flush_errors")
        finally:
            state.in_flight = False
            state.flush_task = None

            if state.overflow:
                agent_logger.log_buffer_event(identity, "overflow_promoted", {"messages": len(state.overflow)})
                state.pending, state.overflow = state.overflow, []
                self._arm_timer(identity, state)
            elif self._buffers.get(identity) is state and state.is_idle:
                # Nothing left to do for this identity; release its state
                del self._buffers[identity]

    def is_processing(self, identity: str) -> bool:
        state = self._buffers.get(identity)
        return state.in_flight if state else False

    def clear(self, identity: str):
        """Cancel the timer and drop all buffered state for ``identity``"""
        state = self._buffers.pop(identity, None)
        if state is not None:
            self._cancel_timer(state)
        agent_logger.log_buffer_event(identity, "cleared")

    def get_stats(self, identity: str) -> Optional[Dict[str, Any]]:
        state = self._buffers.get(identity)
        if state is None:
            return None

        return {
            "current_messages": len(state.pending),
            "queued_messages": len(state.overflow),
            "processing": state.in_flight,
            "has_timer": state.timer is not None,
        }

    @property
    def active_identities(self) -> List[str]:
        return list(self._buffers.keys())

    def _arm_timer(self, identity: str, state: BufferState):
        self._cancel_timer(state)
        loop = asyncio.get_running_loop()
        state.timer = loop.call_later(self.debounce_ms / 1000, self._on_timer, identity, state)

    def _on_timer(self, identity: str, state: BufferState):
        state.timer = None
        if self._buffers.get(identity) is not state:
            # Cleared while the timer was pending
            return
        state.flush_task = asyncio.ensure_future(self.flush(identity))

    @staticmethod
    def _cancel_timer(state: BufferState):
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None
