"""Shared fakes for the unit tests."""

from typing import Any, Callable, Dict, List, Optional, Type, Union

import pytest
from pydantic import BaseModel

from lumen.application.websocket.connection_manager import ConnectionManager
from lumen.application.websocket.schema.events import BaseEvent, EventType
from lumen.domain.context.context_manager import ContextManager
from lumen.domain.models.agent_state import CommandRequest, ExecutionOutcome, ExecutionStatus
from lumen.domain.orchestration.core.reasoning import ReasoningService
from lumen.domain.streaming.streaming_handler import StreamingHandler
from lumen.infrastructure.config.settings import Settings

Reply = Union[Dict[str, Any], Exception, Callable[[str, str], Dict[str, Any]]]


class ScriptedReasoningService(ReasoningService):
    """Replies from per-schema scripts; the last reply of a script repeats."""

    def __init__(self, script: Optional[Dict[str, List[Reply]]] = None):
        self.script: Dict[str, List[Reply]] = {name: list(replies) for name, replies in (script or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    def add(self, schema_name: str, *replies: Reply):
        self.script.setdefault(schema_name, []).extend(replies)

    def calls_for(self, schema_name: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["schema"] == schema_name]

    async def query(self, prompt: str, schema: Type[BaseModel], context: str = "") -> Dict[str, Any]:
        self.calls.append({"prompt": prompt, "schema": schema.__name__, "context": context})

        replies = self.script.get(schema.__name__)
        if not replies:
            raise AssertionError(f"No scripted reply for {schema.__name__}")

        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt, context)
        return reply


class RecordingConnectionManager(ConnectionManager):
    """Connection manager that records events instead of writing to sockets."""

    def __init__(self):
        super().__init__()
        self.events: List[BaseEvent] = []

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        if event.session_id is None:
            event.session_id = session_id
        self.events.append(event)
        return True

    def of_type(self, event_type: EventType, session_id: Optional[str] = None) -> List[BaseEvent]:
        return [
            event for event in self.events
            if event.type == event_type and (session_id is None or event.session_id == session_id)
        ]

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


class FakeSandbox:
    """Records requests and returns a fixed outcome."""

    def __init__(self, status: ExecutionStatus = ExecutionStatus.SUCCESS, stdout: str = "ok\n", exit_code: int = 0):
        self.status = status
        self.stdout = stdout
        self.exit_code = exit_code
        self.requests: List[CommandRequest] = []

    async def run(
        self, request: CommandRequest, auto_approve: bool = False, timeout_ms: Optional[int] = None
    ) -> ExecutionOutcome:
        self.requests.append(request)
        return ExecutionOutcome(
            status=self.status,
            command=request.command,
            stdout=self.stdout,
            exit_code=self.exit_code,
            message="fake run",
        )


def base_reply(response: str = "done", *, cont: bool = False, tool: bool = False, **extra) -> Dict[str, Any]:
    reply = {"choice": "response", "tool": tool, "continue": cont, "response": response}
    reply.update(extra)
    return reply


def command_reply(command: str, *, requires_approval: bool = True, cont: bool = False) -> Dict[str, Any]:
    return {
        "choice": "terminalCommand",
        "tool": False,
        "continue": cont,
        "terminalCommand": command,
        "commandReasoning": "inspect the target",
        "requiresApproval": requires_approval,
    }


@pytest.fixture
def reasoning() -> ScriptedReasoningService:
    return ScriptedReasoningService()


@pytest.fixture
def connections() -> RecordingConnectionManager:
    return RecordingConnectionManager()


@pytest.fixture
def streaming(connections) -> StreamingHandler:
    return StreamingHandler(connections)


@pytest.fixture
def context_manager() -> ContextManager:
    return ContextManager()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        debounce_ms=20,
        poll_interval_ms=20,
        max_iterations=5,
        command_timeout_ms=2000,
    )
