from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from typing import Any, Dict, List, Optional
from collections import OrderedDict
import asyncio
import structlog
import uvicorn
from pydantic import BaseModel, ValidationError

from .connection_manager import ConnectionManager
from .schema.events import (
    ApproveCommand, ConfigEvent, EventType, SetAutoApprove, UserMessage
)
from lumen.domain.buffer.batch_poller import BatchPoller
from lumen.domain.buffer.message_buffer import MessageBuffer
from lumen.domain.context.context_manager import ContextManager
from lumen.domain.context.health_monitor import ConversationHealthMonitor
from lumen.domain.context.memory.cache_memory_store import CacheMemoryStore
from lumen.domain.context.memory.runtime_memory import RuntimeMemory
from lumen.domain.models.agent_state import BufferedMessage, InboundMessage, LandscapeResult
from lumen.domain.orchestration.core.approval_gate import ApprovalGate
from lumen.domain.orchestration.core.evaluators import FulfillmentEvaluator, LandscapeAnalyzer
from lumen.domain.orchestration.core.main_agent import AgentOrchestrator
from lumen.domain.orchestration.core.reasoning import ReasoningService
from lumen.domain.streaming.streaming_handler import StreamingHandler
from lumen.domain.tool.catalog import default_capabilities
from lumen.domain.tool.tool_executor import ExecutionSandbox
from lumen.domain.tool.tool_registry import CapabilityRegistry
from lumen.infrastructure.config.settings import Settings, get_settings
from lumen.infrastructure.observability.logging import metrics, setup_logging
from lumen.infrastructure.reasoning.openai_reasoning import OpenAIReasoningService

logger = structlog.get_logger(__name__)


class ChannelMessage(BaseModel):
    """Message delivered by an at-least-once channel"""
    message_id: str
    identity: str
    text: str


def _payload(data: Dict[str, Any]) -> Dict[str, Any]:
    # The discriminator is already consumed by the dispatch
    return {key: value for key, value in data.items() if key != "type"}


class AgentRuntime:
    """Wires buffer, orchestrator and transport together for one process"""

    def __init__(
        self,
        settings: Settings,
        reasoning: ReasoningService,
        sandbox: Optional[ExecutionSandbox] = None,
        registry: Optional[CapabilityRegistry] = None,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        self.settings = settings
        self.connection_manager = connection_manager or ConnectionManager()
        self.streaming_handler = StreamingHandler(self.connection_manager)
        self.context_manager = ContextManager(
            RuntimeMemory(history_limit=settings.history_limit),
            context_window=settings.context_window
        )
        self.approval_gate = ApprovalGate(timeout_s=settings.approval_timeout_s)
        self.user_settings = CacheMemoryStore(
            max_entries=settings.settings_capacity,
            default_ttl=settings.settings_ttl_s
        )
        self.health_monitor = ConversationHealthMonitor()

        fulfillment = FulfillmentEvaluator(reasoning, self.context_manager) if settings.verify_fulfillment else None
        self.orchestrator = AgentOrchestrator(
            reasoning=reasoning,
            context_provider=self.context_manager,
            registry=registry or CapabilityRegistry(default_capabilities()),
            sandbox=sandbox or ExecutionSandbox(default_timeout_ms=settings.command_timeout_ms),
            streaming_handler=self.streaming_handler,
            approval_gate=self.approval_gate,
            max_iterations=settings.max_iterations,
            command_timeout_ms=settings.command_timeout_ms,
            redaction_mode=settings.redaction_mode,
            fulfillment_evaluator=fulfillment,
        )

        self.buffer = MessageBuffer(on_flush=self.handle_batch, debounce_ms=settings.debounce_ms)
        self.poller = BatchPoller(
            on_batch=self.handle_channel_batch,
            triage=LandscapeAnalyzer(reasoning),
            interval_ms=settings.poll_interval_ms,
            dedup_capacity=settings.dedup_capacity,
        )

    async def get_auto_approve(self, identity: str) -> bool:
        return await self.user_settings.get(f"{identity}:auto_approve", self.settings.auto_approve_default)

    async def set_auto_approve(self, identity: str, value: bool):
        await self.user_settings.set(f"{identity}:auto_approve", value)

    async def handle_batch(self, identity: str, messages: List[BufferedMessage], interactive: bool = True):
        """Flush handler: one coalesced request per batch"""

        text = "\n".join(message.text for message in messages)
        auto_approve = await self.get_auto_approve(identity)

        await self.orchestrator.process_message(identity, text, auto_approve=auto_approve, interactive=interactive)
        await self.reflect(identity)

    async def handle_channel_batch(self, batch: List[InboundMessage], landscape: Optional[LandscapeResult]):
        """Poller handler: group the batch by identity, then run each group"""

        grouped: "OrderedDict[str, List[BufferedMessage]]" = OrderedDict()
        for message in batch:
            grouped.setdefault(message.identity, []).append(
                BufferedMessage(text=message.text, timestamp=message.timestamp)
            )

        if landscape is not None:
            for identity in grouped:
                await self.streaming_handler.send_status(
                    identity, f"[{landscape.priority}] {landscape.situation_summary}"
                )

        # Channel identities have no socket to answer approvals on
        await asyncio.gather(*(
            self.handle_batch(identity, messages, interactive=False) for identity, messages in grouped.items()
        ))

    async def reflect(self, identity: str):
        """Speak up when recent interactions look unhealthy"""

        interactions = await self.context_manager.recent_interactions(identity, limit=self.health_monitor.window)
        issues = self.health_monitor.analyze(interactions)
        message = self.health_monitor.reflection_message(issues)
        if message:
            logger.info("Conversation health issues", identity=identity, issues=[i.type for i in issues])
            await self.streaming_handler.send_warning(identity, message, code="reflection")

    async def handle_client_event(self, identity: str, data: Dict[str, Any]):
        """Dispatch one inbound client event"""

        self.connection_manager.touch(identity)
        event_type = data.get("type")

        if event_type == EventType.USER_MESSAGE.value:
            message = UserMessage(**_payload(data))
            accepted = self.buffer.submit(identity, message.text)
            if not accepted:
                await self.streaming_handler.send_status(identity, "Message queued for the next batch")

        elif event_type == EventType.SET_AUTO_APPROVE.value:
            update = SetAutoApprove(**_payload(data))
            await self.set_auto_approve(identity, update.value)
            await self.streaming_handler.emit(identity, ConfigEvent(auto_approve=update.value))

        elif event_type == EventType.APPROVE_COMMAND.value:
            answer = ApproveCommand(**_payload(data))
            if not self.approval_gate.resolve(answer.approval_id, answer.approved, identity=identity):
                await self.streaming_handler.send_warning(
                    identity, f"No pending approval with id {answer.approval_id}", code="unknown_approval"
                )

        else:
            await self.streaming_handler.send_error(
                identity, f"Unsupported event type: {event_type}", error_code="unsupported_event"
            )

    async def on_disconnect(self, identity: str):
        self.buffer.clear(identity)
        self.approval_gate.cancel(identity)

    async def get_stats(self) -> Dict[str, Any]:
        return {
            "active_sessions": len(self.connection_manager.get_active_sessions()),
            "buffers": {
                identity: self.buffer.get_stats(identity) for identity in self.buffer.active_identities
            },
            "poller": self.poller.get_stats(),
            "memory": await self.context_manager.get_stats(),
            "user_settings": await self.user_settings.get_stats(),
            "pending_approvals": self.approval_gate.pending_count,
            "metrics": metrics.get_metrics_summary(),
        }


def create_app(runtime: Optional[AgentRuntime] = None) -> FastAPI:
    """Build the FastAPI application; the runtime is created on startup unless given"""

    settings = runtime.settings if runtime is not None else get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    app = FastAPI(title="Lumen Relay")
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    background: List[asyncio.Task] = []

    @app.on_event("startup")
    async def startup_event():
        """Initialize the runtime and start background tasks"""
        if app.state.runtime is None:
            app.state.runtime = AgentRuntime(settings, OpenAIReasoningService.from_settings(settings))

        runtime_ = app.state.runtime
        await runtime_.poller.start()
        background.append(asyncio.create_task(runtime_.connection_manager.health_check()))

        logger.info("Relay started", port=settings.port)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown"""
        runtime_ = app.state.runtime
        await runtime_.poller.stop()
        for task in background:
            task.cancel()

        for session_id in list(runtime_.connection_manager.get_active_sessions()):
            await runtime_.on_disconnect(session_id)
            await runtime_.connection_manager.disconnect(session_id)

        logger.info("Relay shutdown")

    @app.websocket("/ws/agent/{session_id}")
    async def agent_websocket(websocket: WebSocket, session_id: str):
        """Main WebSocket endpoint; the session id is the identity"""

        runtime_: AgentRuntime = app.state.runtime
        await runtime_.connection_manager.connect(websocket, session_id)
        await runtime_.streaming_handler.emit(
            session_id, ConfigEvent(auto_approve=await runtime_.get_auto_approve(session_id))
        )

        try:
            while True:
                data = await websocket.receive_json()

                try:
                    await runtime_.handle_client_event(session_id, data)
                except ValidationError as e:
                    logger.warning("Invalid client event", session_id=session_id, errors=e.error_count())
                    await runtime_.streaming_handler.send_error(
                        session_id, "Invalid event payload", error_code="invalid_event"
                    )

        except WebSocketDisconnect:
            logger.info("Client disconnected", session_id=session_id)
        except Exception as e:
            logger.error("WebSocket error", error=str(e), session_id=session_id)
        finally:
            await runtime_.on_disconnect(session_id)
            await runtime_.connection_manager.disconnect(session_id)

    @app.post("/channels/messages", status_code=202)
    async def ingest_channel_message(message: ChannelMessage):
        """Queue a message from an at-least-once channel for the next poll tick"""
        accepted = app.state.runtime.poller.enqueue(
            InboundMessage(message_id=message.message_id, identity=message.identity, text=message.text)
        )
        return {"accepted": accepted}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/stats")
    async def stats():
        return await app.state.runtime.get_stats()

    return app


def main():
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
