from typing import Dict, Any, Optional, List, Callable, Awaitable
import structlog

from lumen.application.websocket.connection_manager import ConnectionManager
from lumen.application.websocket.schema.events import (
    BaseEvent, StatusEvent, ResponseEvent, ToolResponseEvent, ExecutionEvent,
    ApprovalRequestEvent, WarningEvent, ErrorEvent, CompleteEvent, EventType
)
from lumen.domain.models.agent_state import ApprovalRequest, ExecutionOutcome, OrchestrationRun

logger = structlog.get_logger(__name__)

EventHandler = Callable[[str, BaseEvent], Awaitable[None]]


class StreamingHandler:
    """Turns orchestration progress into typed events for the transport adapter"""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        self.connection_manager = connection_manager or ConnectionManager()
        self.event_handlers: Dict[str, List[EventHandler]] = {}

    async def emit(self, identity: str, event: BaseEvent):
        """Deliver an event to the adapter, then to any registered handlers"""

        delivered = await self.connection_manager.send_event(identity, event)
        if not delivered:
            logger.debug("Event not delivered", identity=identity, event_type=event.type.value)

        for handler in self.event_handlers.get(event.type.value, []):
            try:
                await handler(identity, event)
            except Exception as e:
                logger.error("Error in event handler",
                             event_type=event.type.value,
                             error=str(e))

    async def send_status(self, identity: str, message: str):
        await self.emit(identity, StatusEvent(message=message))

    async def send_response(self, identity: str, data: Dict[str, Any], iteration: int, post_tool: bool = False):
        await self.emit(identity, ResponseEvent(data=data, iteration=iteration, post_tool=post_tool))

    async def send_tool_response(self, identity: str, tool: str, data: Dict[str, Any]):
        await self.emit(identity, ToolResponseEvent(tool=tool, data=data))

    async def send_execution(self, identity: str, outcome: ExecutionOutcome):
        # Outcome arrives masked: placeholders in place of restored values
        await self.emit(identity, ExecutionEvent(result=outcome.model_dump(mode="json")))

    async def send_approval_request(self, identity: str, request: ApprovalRequest):
        await self.emit(
            identity,
            ApprovalRequestEvent(
                approval_id=request.id,
                command=request.command,
                reasoning=request.reasoning
            )
        )

    async def send_warning(self, identity: str, message: str, code: Optional[str] = None):
        await self.emit(identity, WarningEvent(message=message, code=code))

    async def send_error(self, identity: str, message: str, error_code: Optional[str] = None):
        await self.emit(identity, ErrorEvent(payload={"message": message}, error_code=error_code))

    async def send_complete(self, identity: str, run: OrchestrationRun):
        """Send run completion signal"""

        await self.emit(
            identity,
            CompleteEvent(
                terminal_reason=run.terminal_reason.value if run.terminal_reason else "unknown",
                iterations=run.current_iteration
            )
        )

    def register_event_handler(self, event_type: EventType, handler: EventHandler):
        """Register a custom event handler"""

        self.event_handlers.setdefault(event_type.value, []).append(handler)
