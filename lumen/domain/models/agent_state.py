from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Stage(str, Enum):
    """Orchestration stages"""
    BASE = "base"
    TOOL_CHOICE = "tool_choice"
    TOOL_EXEC = "tool_exec"
    POST_BASE = "post_base"
    DONE = "done"


class TerminalReason(str, Enum):
    """Why a run reached DONE"""
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    ABORTED = "aborted"


class ExecutionStatus(str, Enum):
    """Outcome of a sandboxed command"""
    SUCCESS = "success"
    DENIED = "denied"
    BLOCKED = "blocked"
    ERROR = "error"


class BufferedMessage(BaseModel):
    """One arrival held by the coalescing buffer"""
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


class InboundMessage(BaseModel):
    """Message from an at-least-once channel, identified for de-duplication"""
    message_id: str
    identity: str
    text: str
    timestamp: datetime = Field(default_factory=utc_now)


# --- Reasoning stage schemas ---------------------------------------------------


class _StageSchema(BaseModel):
    """Reasoning outputs use camelCase on the wire"""
    model_config = ConfigDict(populate_by_name=True)


class BaseTurnResult(_StageSchema):
    """Structured output of a BASE or POST_BASE turn"""
    choice: Literal["response", "code", "terminalCommand"] = Field(
        description="Kind of answer: a plain response, a code block, or a terminal command to run"
    )
    tool: bool = Field(description="True when a specialized capability should be consulted")
    continue_: bool = Field(alias="continue", description="True when more turns are needed")
    response: Optional[str] = Field(None, description="Text answer when choice is 'response'")
    code: Optional[str] = Field(None, description="Source code when choice is 'code'")
    language: Optional[str] = Field(None, description="Language of the code block")
    terminal_command: Optional[str] = Field(
        None, alias="terminalCommand", description="Shell command when choice is 'terminalCommand'"
    )
    command_reasoning: Optional[str] = Field(
        None, alias="commandReasoning", description="Why the command is appropriate"
    )
    requires_approval: bool = Field(
        True, alias="requiresApproval", description="Whether a human must confirm before execution"
    )

    @model_validator(mode="after")
    def _check_choice_payload(self) -> "BaseTurnResult":
        if self.choice == "terminalCommand" and not (self.terminal_command or "").strip():
            raise ValueError("choice 'terminalCommand' requires a terminalCommand")
        if self.choice == "code" and self.code is None:
            raise ValueError("choice 'code' requires code")
        return self


class ToolChoiceResult(_StageSchema):
    """Structured output of a TOOL_CHOICE turn"""
    choice: Optional[str] = Field(None, description="Capability id to invoke, or null for none")
    reasoning: str = Field("", description="Why this capability was chosen")
    missing_context: List[str] = Field(
        default_factory=list, alias="missingContext", description="Information the user still needs to provide"
    )


class LandscapeResult(_StageSchema):
    """Batch-level triage of messages drained by the poller"""
    situation_summary: str = Field(alias="situationSummary")
    overall_intent: str = Field(alias="overallIntent")
    suggested_approach: str = Field(alias="suggestedApproach")
    priority: Literal["low", "medium", "high", "critical"] = "medium"


class RequestFulfilledResult(_StageSchema):
    """Verdict of the fulfilment check"""
    request_fulfilled: bool = Field(
        alias="requestFulfilled",
        description="True only if every requested step is done and verified",
    )


# --- Execution -------------------------------------------------------------------


class CommandRequest(BaseModel):
    """A command proposed by the reasoning stage, placeholders already substituted"""
    command: str
    reasoning: Optional[str] = None
    requires_approval: bool = True


class ExecutionOutcome(BaseModel):
    """Structured result of handing a command to the sandbox"""
    status: ExecutionStatus
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    message: str = ""
    execution_time_ms: float = 0.0

    @property
    def forces_continuation(self) -> bool:
        """The next turn must interpret what the process did"""
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.ERROR)


class ApprovalRequest(BaseModel):
    """Pending confirmation for a privileged command"""
    id: str = Field(description="Unique request identifier")
    identity: str
    command: str
    reasoning: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# --- Runs ------------------------------------------------------------------------


class AgentTurn(BaseModel):
    """One reasoning (or capability) step of a run"""
    stage: Stage
    query: str
    context: str = ""
    output: Dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class OrchestrationRun(BaseModel):
    """Bounded execution of the state machine for one originating request"""
    run_id: str
    identity: str
    max_iterations: int
    current_iteration: int = 0
    continuation: bool = False
    terminal_reason: Optional[TerminalReason] = None
    error: Optional[str] = None
    turns: List[AgentTurn] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def is_done(self) -> bool:
        return self.terminal_reason is not None

    def finish(self, reason: TerminalReason, error: Optional[str] = None):
        """Mark the run terminal"""
        self.terminal_reason = reason
        self.error = error
        self.continuation = False
        self.finished_at = utc_now()

    def get_run_summary(self) -> Dict[str, Any]:
        """Get a summary of the run"""
        return {
            "run_id": self.run_id,
            "identity": self.identity,
            "iterations": self.current_iteration,
            "max_iterations": self.max_iterations,
            "turns": len(self.turns),
            "terminal_reason": self.terminal_reason.value if self.terminal_reason else None,
            "error": self.error,
        }
