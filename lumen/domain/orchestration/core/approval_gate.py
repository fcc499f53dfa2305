from typing import Dict, Optional, Tuple
import asyncio
import uuid
import structlog

from lumen.domain.models.agent_state import ApprovalRequest

logger = structlog.get_logger(__name__)


class ApprovalGate:
    """Pending command confirmations, one future per request.

    A run waiting on ``wait`` resumes when the operator answers through
    ``resolve``, when the identity disconnects (``cancel``), or when the
    optional timeout expires. Anything but an explicit approval is a denial.
    """

    def __init__(self, timeout_s: Optional[float] = None):
        self.timeout_s = timeout_s
        self._pending: Dict[str, Tuple[ApprovalRequest, asyncio.Future]] = {}

    def request(self, identity: str, command: str, reasoning: Optional[str] = None) -> ApprovalRequest:
        """Register a pending confirmation"""

        approval = ApprovalRequest(
            id=f"approval_{uuid.uuid4().hex[:12]}",
            identity=identity,
            command=command,
            reasoning=reasoning,
        )
        future = asyncio.get_running_loop().create_future()
        self._pending[approval.id] = (approval, future)
        logger.info("Approval requested", identity=identity, approval_id=approval.id)
        return approval

    async def wait(self, approval_id: str) -> bool:
        """Block until the request is resolved; True only for an explicit approval"""

        entry = self._pending.get(approval_id)
        if entry is None:
            return False

        _, future = entry
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Approval timed out", approval_id=approval_id)
            return False
        finally:
            self._pending.pop(approval_id, None)

    def resolve(self, approval_id: str, approved: bool, identity: Optional[str] = None) -> bool:
        """Answer a pending request.

        False when the id is unknown, already answered, or belongs to another
        identity than the one answering.
        """

        entry = self._pending.get(approval_id)
        if entry is None:
            return False

        approval, future = entry
        if identity is not None and approval.identity != identity:
            logger.warning("Approval answered by another identity", approval_id=approval_id, identity=identity)
            return False
        if future.done():
            return False

        future.set_result(bool(approved))
        logger.info("Approval resolved", identity=approval.identity, approval_id=approval_id, approved=approved)
        return True

    def cancel(self, identity: str) -> int:
        """Deny every pending request of ``identity``"""

        denied = 0
        for approval, future in list(self._pending.values()):
            if approval.identity == identity and not future.done():
                future.set_result(False)
                denied += 1
        if denied:
            logger.info("Pending approvals denied", identity=identity, count=denied)
        return denied

    def discard(self, approval_id: str):
        """Drop a request whose waiter is gone, denying it if still open"""

        entry = self._pending.pop(approval_id, None)
        if entry is not None and not entry[1].done():
            entry[1].set_result(False)

    def pending_for(self, identity: str) -> int:
        return sum(1 for approval, _ in self._pending.values() if approval.identity == identity)

    @property
    def pending_count(self) -> int:
        return len(self._pending)
