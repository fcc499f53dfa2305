"""Tests for the coalescing message buffer.

Covers:
- Debounce: a burst becomes one ordered batch, timer restarts on each arrival
- Overflow: arrivals during a flush wait for the next batch, nothing lost
- Handler failures are contained
- clear(), stats and idle-state release
"""

import asyncio

import pytest

from lumen.domain.buffer.message_buffer import MessageBuffer

DEBOUNCE_MS = 30


class Recorder:
    def __init__(self):
        self.batches = []

    async def __call__(self, identity, messages):
        self.batches.append((identity, [m.text for m in messages]))


async def settle(ms: float = DEBOUNCE_MS * 3):
    await asyncio.sleep(ms / 1000)


class TestDebounce:
    """Pure debounce behaviour."""

    @pytest.mark.asyncio
    async def test_burst_is_one_ordered_batch(self):
        recorder = Recorder()
        buffer = MessageBuffer(on_flush=recorder, debounce_ms=DEBOUNCE_MS)

        for text in ("a", "b", "c"):
            assert buffer.submit("u1", text) is True

        await settle()

        assert recorder.batches == [("u1", ["a", "b", "c"])]

    @pytest.mark.asyncio
    async def test_each_arrival_restarts_the_quiet_period(self):
        recorder = Recorder()
        buffer = MessageBuffer(on_flush=recorder, debounce_ms=DEBOUNCE_MS)

        buffer.submit("u1", "first")
        await asyncio.sleep(DEBOUNCE_MS * 0.6 / 1000)
        buffer.submit("u1", "second")
        await asyncio.sleep(DEBOUNCE_MS * 0.6 / 1000)

        # 1.2x debounce since the first message, but only 0.6x since the second
        assert recorder.batches == []

        await settle()
        assert recorder.batches == [("u1", ["first", "second"])]

    @pytest.mark.asyncio
    async def test_at_most_one_live_timer(self):
        buffer = MessageBuffer(on_flush=Recorder(), debounce_ms=DEBOUNCE_MS)

        buffer.submit("u1", "a")
        first_timer = buffer._buffers["u1"].timer
        buffer.submit("u1", "b")

        assert first_timer.cancelled()
        assert buffer.get_stats("u1")["has_timer"] is True

    @pytest.mark.asyncio
    async def test_identities_are_independent(self):
        recorder = Recorder()
        buffer = MessageBuffer(on_flush=recorder, debounce_ms=DEBOUNCE_MS)

        buffer.submit("u1", "x")
        buffer.submit("u2", "y")
        buffer.submit("u1", "z")

        await settle()

        assert sorted(recorder.batches) == [("u1", ["x", "z"]), ("u2", ["y"])]

    @pytest.mark.asyncio
    async def test_flush_of_empty_buffer_is_noop(self):
        recorder = Recorder()
        buffer = MessageBuffer(on_flush=recorder, debounce_ms=DEBOUNCE_MS)

        await buffer.flush("nobody")

        assert recorder.batches == []

    def test_rejects_non_positive_debounce(self):
        with pytest.raises(ValueError):
            MessageBuffer(debounce_ms=0)


class TestOverflow:
    """Arrivals while a flush is in flight."""

    @pytest.mark.asyncio
    async def test_arrivals_during_flush_form_the_next_batch(self):
        release = asyncio.Event()
        batches = []

        async def slow_handler(identity, messages):
            batches.append([m.text for m in messages])
            if len(batches) == 1:
                await release.wait()

        buffer = MessageBuffer(on_flush=slow_handler, debounce_ms=DEBOUNCE_MS)
        buffer.submit("u1", "one")
        await settle()

        assert buffer.is_processing("u1")
        assert buffer.submit("u1", "two") is False
        assert buffer.submit("u1", "three") is False
        assert buffer.get_stats("u1")["queued_messages"] == 2

        release.set()
        await settle()

        assert batches == [["one"], ["two", "three"]]
        assert not buffer.is_processing("u1")

    @pytest.mark.asyncio
    async def test_flushes_for_one_identity_never_overlap(self):
        active = 0
        peak = 0

        async def handler(identity, messages):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(DEBOUNCE_MS * 2 / 1000)
            active -= 1

        buffer = MessageBuffer(on_flush=handler, debounce_ms=DEBOUNCE_MS)
        buffer.submit("u1", "a")
        await settle(DEBOUNCE_MS * 1.5)
        buffer.submit("u1", "b")
        await asyncio.gather(buffer.flush("u1"), buffer.flush("u1"))
        await settle(DEBOUNCE_MS * 6)

        assert peak == 1

    @pytest.mark.asyncio
    async def test_handler_error_does_not_lose_later_messages(self):
        batches = []

        async def flaky(identity, messages):
            batches.append([m.text for m in messages])
            if len(batches) == 1:
                raise RuntimeError("downstream failed")

        buffer = MessageBuffer(on_flush=flaky, debounce_ms=DEBOUNCE_MS)
        buffer.submit("u1", "a")
        await settle()
        buffer.submit("u1", "b")
        await settle()

        assert batches == [["a"], ["b"]]


class TestLifecycle:
    """clear(), stats and state release."""

    @pytest.mark.asyncio
    async def test_clear_cancels_pending_flush(self):
        recorder = Recorder()
        buffer = MessageBuffer(on_flush=recorder, debounce_ms=DEBOUNCE_MS)

        buffer.submit("u1", "never sent")
        buffer.clear("u1")
        await settle()

        assert recorder.batches == []
        assert buffer.get_stats("u1") is None

    @pytest.mark.asyncio
    async def test_stats_report_pending_and_timer(self):
        buffer = MessageBuffer(on_flush=Recorder(), debounce_ms=DEBOUNCE_MS)
        buffer.submit("u1", "a")
        buffer.submit("u1", "b")

        assert buffer.get_stats("u1") == {
            "current_messages": 2,
            "queued_messages": 0,
            "processing": False,
            "has_timer": True,
        }

    @pytest.mark.asyncio
    async def test_idle_state_is_released_after_flush(self):
        buffer = MessageBuffer(on_flush=Recorder(), debounce_ms=DEBOUNCE_MS)
        buffer.submit("u1", "a")
        assert buffer.active_identities == ["u1"]

        await settle()

        assert buffer.active_identities == []
