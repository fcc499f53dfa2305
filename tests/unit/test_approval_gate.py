"""Tests for pending command approvals."""

import asyncio

import pytest

from lumen.domain.orchestration.core.approval_gate import ApprovalGate


class TestApprovalGate:
    """Resolution, cancellation and timeouts."""

    @pytest.mark.asyncio
    async def test_approval_resumes_waiter(self):
        gate = ApprovalGate()
        request = gate.request("u1", "ls", "look around")
        waiter = asyncio.create_task(gate.wait(request.id))
        await asyncio.sleep(0)

        assert gate.pending_for("u1") == 1
        assert gate.resolve(request.id, True) is True
        assert await waiter is True
        assert gate.pending_count == 0

    @pytest.mark.asyncio
    async def test_rejection(self):
        gate = ApprovalGate()
        request = gate.request("u1", "ls")
        gate.resolve(request.id, False)

        assert await gate.wait(request.id) is False

    @pytest.mark.asyncio
    async def test_unknown_or_repeated_resolution(self):
        gate = ApprovalGate()
        request = gate.request("u1", "ls")

        assert gate.resolve("approval_missing", True) is False
        assert gate.resolve(request.id, True) is True
        assert gate.resolve(request.id, False) is False

    @pytest.mark.asyncio
    async def test_other_identity_cannot_answer(self):
        gate = ApprovalGate()
        request = gate.request("u1", "ls")

        assert gate.resolve(request.id, True, identity="intruder") is False
        assert gate.resolve(request.id, True, identity="u1") is True

    @pytest.mark.asyncio
    async def test_cancel_denies_only_that_identity(self):
        gate = ApprovalGate()
        mine = gate.request("u1", "ls")
        theirs = gate.request("u2", "ls")

        assert gate.cancel("u1") == 1
        assert await gate.wait(mine.id) is False
        assert gate.resolve(theirs.id, True) is True

    @pytest.mark.asyncio
    async def test_timeout_counts_as_denial(self):
        gate = ApprovalGate(timeout_s=0.02)
        request = gate.request("u1", "ls")

        assert await gate.wait(request.id) is False
        assert gate.pending_count == 0

    @pytest.mark.asyncio
    async def test_ids_are_unique(self):
        gate = ApprovalGate()

        assert gate.request("u1", "a").id != gate.request("u1", "b").id

    @pytest.mark.asyncio
    async def test_discard_releases_an_unawaited_request(self):
        gate = ApprovalGate()
        request = gate.request("u1", "ls")

        gate.discard(request.id)

        assert gate.pending_count == 0
        assert gate.resolve(request.id, True) is False
        gate.discard(request.id)
