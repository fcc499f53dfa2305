from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from lumen.domain.models.agent_state import utc_now


class EventType(str, Enum):
    """WebSocket event types"""
    # Outbound
    STATUS = "status"
    RESPONSE = "response"
    TOOL_RESPONSE = "tool-response"
    EXECUTION = "execution"
    APPROVAL_REQUEST = "approval"
    WARNING = "warning"
    ERROR = "error"
    COMPLETE = "complete"
    CONNECTION = "connection"
    CONFIG = "config"
    # Inbound
    USER_MESSAGE = "message"
    APPROVE_COMMAND = "approve-command"
    SET_AUTO_APPROVE = "set-auto-approve"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=utc_now)
    session_id: Optional[str] = None


class StatusEvent(BaseEvent):
    """Progress indicator"""
    type: Literal[EventType.STATUS] = EventType.STATUS
    message: str


class ResponseEvent(BaseEvent):
    """Output of a BASE or POST_BASE turn"""
    type: Literal[EventType.RESPONSE] = EventType.RESPONSE
    data: Dict[str, Any]
    iteration: int
    post_tool: bool = False


class ToolResponseEvent(BaseEvent):
    """Structured output of a capability"""
    type: Literal[EventType.TOOL_RESPONSE] = EventType.TOOL_RESPONSE
    tool: str
    data: Dict[str, Any]


class ExecutionEvent(BaseEvent):
    """Outcome of a sandboxed command"""
    type: Literal[EventType.EXECUTION] = EventType.EXECUTION
    result: Dict[str, Any]


class ApprovalRequestEvent(BaseEvent):
    """A command is waiting for the operator's confirmation"""
    type: Literal[EventType.APPROVAL_REQUEST] = EventType.APPROVAL_REQUEST
    approval_id: str
    command: str
    reasoning: Optional[str] = None


class WarningEvent(BaseEvent):
    """Non-fatal notice, e.g. iteration cap reached"""
    type: Literal[EventType.WARNING] = EventType.WARNING
    message: str
    code: Optional[str] = None


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class CompleteEvent(BaseEvent):
    """A run reached DONE"""
    type: Literal[EventType.COMPLETE] = EventType.COMPLETE
    terminal_reason: str
    iterations: int


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected", "reconnecting"]


class ConfigEvent(BaseEvent):
    """Acknowledges a per-identity settings change"""
    type: Literal[EventType.CONFIG] = EventType.CONFIG
    auto_approve: bool


class UserMessage(BaseEvent):
    """User message event"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    text: str


class ApproveCommand(BaseEvent):
    """Operator decision on a pending command"""
    type: Literal[EventType.APPROVE_COMMAND] = EventType.APPROVE_COMMAND
    approval_id: str
    approved: bool = True


class SetAutoApprove(BaseEvent):
    """Toggle automatic command approval for this identity"""
    type: Literal[EventType.SET_AUTO_APPROVE] = EventType.SET_AUTO_APPROVE
    value: bool
