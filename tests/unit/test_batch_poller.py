"""Tests for the fixed-interval batch poller and its dedup set."""

import asyncio

import pytest

from lumen.domain.buffer.batch_poller import BatchPoller, RecentIdSet
from lumen.domain.models.agent_state import InboundMessage, LandscapeResult


def message(message_id: str, text: str = "hi", identity: str = "chat-1") -> InboundMessage:
    return InboundMessage(message_id=message_id, identity=identity, text=text)


class TestRecentIdSet:
    """Bounded most-recently-seen set."""

    def test_add_reports_duplicates(self):
        seen = RecentIdSet(capacity=3)
        assert seen.add("a") is True
        assert seen.add("a") is False
        assert len(seen) == 1

    def test_oldest_entries_are_forgotten(self):
        seen = RecentIdSet(capacity=2)
        seen.add("a")
        seen.add("b")
        seen.add("c")

        assert "a" not in seen
        assert "b" in seen and "c" in seen
        assert len(seen) == 2

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            RecentIdSet(capacity=0)


class TestBatchPoller:
    """Two-phase handling of drained batches."""

    @pytest.mark.asyncio
    async def test_poll_drains_whole_queue_in_order(self):
        handled = []

        async def on_batch(batch, landscape):
            handled.append([m.text for m in batch])

        poller = BatchPoller(on_batch=on_batch)
        poller.enqueue(message("1", "first"))
        poller.enqueue(message("2", "second"))

        await poller.poll()

        assert handled == [["first", "second"]]
        assert poller.get_stats()["queued_messages"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_dropped(self):
        poller = BatchPoller(on_batch=lambda batch, landscape: asyncio.sleep(0))

        assert poller.enqueue(message("42")) is True
        assert poller.enqueue(message("42")) is False
        assert poller.get_stats()["queued_messages"] == 1

    @pytest.mark.asyncio
    async def test_triage_result_is_passed_to_handler(self):
        landscape = LandscapeResult(
            situationSummary="two status pings",
            overallIntent="check health",
            suggestedApproach="answer once",
            priority="low",
        )
        received = []

        async def triage(batch):
            return landscape

        async def on_batch(batch, result):
            received.append(result)

        poller = BatchPoller(on_batch=on_batch, triage=triage)
        poller.enqueue(message("1"))
        await poller.poll()

        assert received == [landscape]

    @pytest.mark.asyncio
    async def test_empty_tray_skips_handler(self):
        calls = []

        async def on_batch(batch, landscape):
            calls.append(batch)

        poller = BatchPoller(on_batch=on_batch)
        await poller.poll()

        assert calls == []

    @pytest.mark.asyncio
    async def test_failed_batch_is_not_requeued(self):
        async def on_batch(batch, landscape):
            raise RuntimeError("handler exploded")

        poller = BatchPoller(on_batch=on_batch)
        poller.enqueue(message("1"))
        await poller.poll()

        assert poller.get_stats()["queued_messages"] == 0
        assert poller.is_processing is False

    @pytest.mark.asyncio
    async def test_ticks_during_processing_are_skipped(self):
        release = asyncio.Event()
        batches = []

        async def on_batch(batch, landscape):
            batches.append([m.message_id for m in batch])
            await release.wait()

        poller = BatchPoller(on_batch=on_batch)
        poller.enqueue(message("1"))
        first = asyncio.create_task(poller.poll())
        await asyncio.sleep(0)

        poller.enqueue(message("2"))
        await poller.poll()
        assert batches == [["1"]]

        release.set()
        await first
        await poller.poll()
        assert batches == [["1"], ["2"]]

    @pytest.mark.asyncio
    async def test_start_and_stop_run_the_tick_loop(self):
        handled = []

        async def on_batch(batch, landscape):
            handled.extend(m.message_id for m in batch)

        poller = BatchPoller(on_batch=on_batch, interval_ms=10)
        await poller.start()
        poller.enqueue(message("1"))
        await asyncio.sleep(0.05)
        await poller.stop()

        assert handled == ["1"]
