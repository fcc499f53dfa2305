from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional
import json
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, get_buffer_string

from .memory.runtime_memory import Interaction, RuntimeMemory

logger = structlog.get_logger(__name__)


class ContextProvider(ABC):
    """Persists each turn and supplies the accumulated context for reasoning calls"""

    @abstractmethod
    async def record(self, identity: str, request: Dict[str, Any], response: Dict[str, Any]) -> None:
        """Persist one request/response pair. Must complete before the next turn starts."""

    @abstractmethod
    async def snapshot(self, identity: str) -> str:
        """Render the accumulated context for ``identity``"""


class ContextManager(ContextProvider):
    """In-memory context provider backed by RuntimeMemory"""

    def __init__(self, runtime_memory: Optional[RuntimeMemory] = None, context_window: int = 20):
        self.runtime_memory = runtime_memory or RuntimeMemory()
        self.context_window = context_window

    async def record(self, identity: str, request: Dict[str, Any], response: Dict[str, Any]) -> None:
        await self.runtime_memory.add_interaction(identity, request, response)
        logger.debug("Interaction recorded", identity=identity, stage=request.get("stage"))

    async def snapshot(self, identity: str) -> str:
        history = await self.runtime_memory.get_conversation_history(identity, limit=self.context_window)
        if not history:
            return ""
        return get_buffer_string(self.to_messages(history), human_prefix="Request", ai_prefix="Response")

    async def recent_interactions(self, identity: str, limit: int = 5) -> List[Interaction]:
        return await self.runtime_memory.get_conversation_history(identity, limit=limit)

    async def get_stats(self) -> Dict[str, Any]:
        return await self.runtime_memory.get_stats()

    async def clear_session_context(self, identity: str):
        """Clear all context for an identity"""

        logger.info("Clearing session context", identity=identity)
        await self.runtime_memory.clear_session(identity)

    @staticmethod
    def to_messages(history: List[Interaction]) -> List[BaseMessage]:
        """Interactions as a request/response message sequence"""

        messages: List[BaseMessage] = []
        for interaction in history:
            request = interaction.request
            stage = request.get("stage", "request")
            details = {k: v for k, v in request.items() if k not in ("stage", "query")}
            content = f"[{stage}] {request.get('query', '')}"
            if details:
                content += "\n" + json.dumps(details, default=str)

            messages.append(HumanMessage(content=content))
            messages.append(AIMessage(content=json.dumps(interaction.response, default=str)))
        return messages
