from typing import Dict, List, Any, Optional
from datetime import datetime
import asyncio
from collections import defaultdict

from pydantic import BaseModel, Field

from lumen.domain.models.agent_state import utc_now


class Interaction(BaseModel):
    """One recorded request/response pair"""
    request: Dict[str, Any]
    response: Dict[str, Any]
    timestamp: datetime = Field(default_factory=utc_now)


class RuntimeMemory:
    """Manages runtime memory for active identities"""

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self.conversations: Dict[str, List[Interaction]] = defaultdict(list)
        self.total_recorded = 0
        self._lock = asyncio.Lock()

    async def add_interaction(self, identity: str, request: Dict[str, Any], response: Dict[str, Any]) -> Interaction:
        """Append an interaction to the identity's history"""

        interaction = Interaction(request=request, response=response)

        async with self._lock:
            history = self.conversations[identity]
            history.append(interaction)
            self.total_recorded += 1

            if len(history) > self.history_limit:
                self.conversations[identity] = history[-self.history_limit:]

        return interaction

    async def get_conversation_history(self, identity: str, limit: Optional[int] = None) -> List[Interaction]:
        """Get interaction history for an identity, oldest first"""

        async with self._lock:
            history = list(self.conversations.get(identity, []))

        if limit is not None:
            return history[-limit:]
        return history

    async def clear_session(self, identity: str):
        """Clear all data for an identity"""

        async with self._lock:
            self.conversations.pop(identity, None)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            stored = sum(len(h) for h in self.conversations.values())
            timestamps = [i.timestamp for h in self.conversations.values() for i in h]

        return {
            "total_interactions_processed": self.total_recorded,
            "current_interactions_stored": stored,
            "identities": len(self.conversations),
            "oldest_interaction": min(timestamps).isoformat() if timestamps else None,
            "newest_interaction": max(timestamps).isoformat() if timestamps else None,
        }
