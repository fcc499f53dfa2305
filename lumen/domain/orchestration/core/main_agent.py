from typing import TypedDict, Dict, Any, Optional, Literal
from langgraph.graph import StateGraph, END
import structlog
import time
import uuid

from lumen.domain.context.context_manager import ContextProvider
from lumen.domain.errors import LumenError, UnredactedSecretError
from lumen.domain.models.agent_state import (
    AgentTurn, BaseTurnResult, CommandRequest, ExecutionOutcome, ExecutionStatus,
    OrchestrationRun, Stage, TerminalReason, ToolChoiceResult
)
from lumen.domain.orchestration.core.approval_gate import ApprovalGate
from lumen.domain.orchestration.core.evaluators import FulfillmentEvaluator
from lumen.domain.orchestration.core.prompts import CONTINUATION_QUERY, POST_TOOL_QUERY, tool_choice_prompt
from lumen.domain.orchestration.core.reasoning import ReasoningService, structured_query
from lumen.domain.security.secret_redactor import RedactionMode, SecretRedactor, build_security_context
from lumen.domain.streaming.streaming_handler import StreamingHandler
from lumen.domain.tool.tool_executor import ExecutionSandbox
from lumen.domain.tool.tool_registry import CapabilityRegistry
from lumen.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


class RunState(TypedDict):
    """State carried through the graph for one run"""
    run: OrchestrationRun
    redactor: SecretRedactor
    request: str
    query: str
    auto_approve: bool
    interactive: bool
    base_result: Optional[BaseTurnResult]
    outcome: Optional[ExecutionOutcome]
    capability: Optional[str]
    post_result: Optional[BaseTurnResult]


class AgentOrchestrator:
    """BASE -> (TOOL_CHOICE -> TOOL_EXEC) -> POST_BASE -> loop or DONE, using LangGraph.

    Runs hold no cross-run state. Everything a later turn needs to see goes
    through the context provider, which is written before the next turn starts.
    """

    def __init__(
        self,
        reasoning: ReasoningService,
        context_provider: ContextProvider,
        registry: CapabilityRegistry,
        sandbox: ExecutionSandbox,
        streaming_handler: Optional[StreamingHandler] = None,
        approval_gate: Optional[ApprovalGate] = None,
        max_iterations: int = 5,
        command_timeout_ms: int = 30000,
        redaction_mode: RedactionMode = "fail_open",
        fulfillment_evaluator: Optional[FulfillmentEvaluator] = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

        self.reasoning = reasoning
        self.context_provider = context_provider
        self.registry = registry
        self.registry.freeze()
        self.sandbox = sandbox
        self.streaming_handler = streaming_handler or StreamingHandler()
        self.approval_gate = approval_gate or ApprovalGate()
        self.max_iterations = max_iterations
        self.command_timeout_ms = command_timeout_ms
        self.redaction_mode = redaction_mode
        self.fulfillment_evaluator = fulfillment_evaluator
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the orchestration graph"""

        workflow = StateGraph(RunState)

        workflow.add_node("base", self.base_node)
        workflow.add_node("execute", self.execute_node)
        workflow.add_node("tool_choice", self.tool_choice_node)
        workflow.add_node("tool_exec", self.tool_exec_node)
        workflow.add_node("post_base", self.post_base_node)
        workflow.add_node("advance", self.advance_node)

        workflow.set_entry_point("base")

        workflow.add_conditional_edges(
            "base",
            self.route_after_base,
            {
                "execute": "execute",
                "tool_choice": "tool_choice",
                "advance": "advance"
            }
        )

        workflow.add_conditional_edges(
            "execute",
            self.route_after_execute,
            {
                "tool_choice": "tool_choice",
                "advance": "advance"
            }
        )

        workflow.add_conditional_edges(
            "tool_choice",
            self.route_after_tool_choice,
            {
                "tool_exec": "tool_exec",
                "post_base": "post_base"
            }
        )

        workflow.add_edge("tool_exec", "post_base")
        workflow.add_edge("post_base", "advance")

        workflow.add_conditional_edges(
            "advance",
            self.route_after_advance,
            {
                "continue": "base",
                "done": END
            }
        )

        return workflow.compile()

    # --- Nodes -----------------------------------------------------------------

    async def base_node(self, state: RunState) -> Dict[str, Any]:
        """Primary reasoning turn"""

        run = state["run"]
        run.current_iteration += 1
        query = state["request"] if run.current_iteration == 1 else CONTINUATION_QUERY

        agent_logger.log_stage_transition(
            run.identity, "advance" if run.current_iteration > 1 else "start", Stage.BASE.value, run.current_iteration
        )

        context = await self._reasoning_context(state)
        result = await structured_query(self.reasoning, query, BaseTurnResult, context=context, stage=Stage.BASE.value)
        output = result.model_dump(by_alias=True, exclude_none=True)

        await self._record(
            state, Stage.BASE, {"stage": Stage.BASE.value, "iteration": run.current_iteration, "query": query},
            output, context
        )
        await self.streaming_handler.send_response(run.identity, output, run.current_iteration)

        return {"query": query, "base_result": result, "outcome": None, "capability": None, "post_result": None}

    async def execute_node(self, state: RunState) -> Dict[str, Any]:
        """Run the BASE turn's terminal command, behind approval when required"""

        run = state["run"]
        base = state["base_result"]
        redactor = state["redactor"]

        command = redactor.substitute(base.terminal_command)
        request = CommandRequest(
            command=command,
            reasoning=base.command_reasoning,
            requires_approval=base.requires_approval
        )

        approved = state["auto_approve"] or not request.requires_approval
        denial = "Command was not approved"
        if not approved and not state["interactive"]:
            # Nobody can answer an approval on this route
            denial = "Command requires approval and no operator is attached"
            logger.warning("Approval unavailable, command denied", identity=run.identity)
        elif not approved:
            # The operator approves the command as written, placeholders included
            approval = self.approval_gate.request(run.identity, base.terminal_command, base.command_reasoning)
            try:
                await self.streaming_handler.send_approval_request(run.identity, approval)
                approved = await self.approval_gate.wait(approval.id)
            finally:
                self.approval_gate.discard(approval.id)

        if approved:
            outcome = await self.sandbox.run(request, auto_approve=True, timeout_ms=self.command_timeout_ms)
        else:
            outcome = ExecutionOutcome(
                status=ExecutionStatus.DENIED,
                command=command,
                message=denial
            )

        # Only masked output leaves this node
        masked = outcome.model_copy(update={
            "command": base.terminal_command,
            "stdout": redactor.mask(outcome.stdout),
            "stderr": redactor.mask(outcome.stderr),
            "message": redactor.mask(outcome.message),
        })

        agent_logger.log_command_execution(
            run.identity, masked.status.value, masked.exit_code, masked.execution_time_ms, masked.message
        )
        metrics.increment_counter("commands", tags={"status": masked.status.value})

        await self._record(
            state, None,
            {"stage": "execution", "iteration": run.current_iteration, "command": base.terminal_command},
            masked.model_dump(mode="json")
        )
        await self.streaming_handler.send_execution(run.identity, masked)

        return {"outcome": masked}

    async def tool_choice_node(self, state: RunState) -> Dict[str, Any]:
        """Pick a capability from the catalog"""

        run = state["run"]
        agent_logger.log_stage_transition(run.identity, Stage.BASE.value, Stage.TOOL_CHOICE.value, run.current_iteration)

        prompt = tool_choice_prompt(self.registry.describe(), state["request"])
        context = await self._reasoning_context(state)
        result = await structured_query(
            self.reasoning, prompt, ToolChoiceResult, context=context, stage=Stage.TOOL_CHOICE.value
        )
        output = result.model_dump(by_alias=True)

        await self._record(
            state, Stage.TOOL_CHOICE,
            {"stage": Stage.TOOL_CHOICE.value, "iteration": run.current_iteration, "query": prompt},
            output, context
        )

        if result.choice and result.choice not in self.registry:
            logger.warning("Unknown capability selected", identity=run.identity, capability_id=result.choice)

        return {"capability": result.choice}

    async def tool_exec_node(self, state: RunState) -> Dict[str, Any]:
        """Invoke the chosen capability"""

        run = state["run"]
        capability = self.registry.get(state["capability"])
        agent_logger.log_stage_transition(run.identity, Stage.TOOL_CHOICE.value, Stage.TOOL_EXEC.value, run.current_iteration)

        context = await self._reasoning_context(state)
        started = time.perf_counter()
        try:
            output = await capability.run(state["request"], context, self.reasoning)
        except Exception as e:
            agent_logger.log_capability_execution(
                capability.name, run.identity, (time.perf_counter() - started) * 1000, success=False, error=str(e)
            )
            raise

        agent_logger.log_capability_execution(capability.name, run.identity, (time.perf_counter() - started) * 1000)

        await self._record(
            state, Stage.TOOL_EXEC,
            {"stage": Stage.TOOL_EXEC.value, "iteration": run.current_iteration,
             "tool": capability.name, "query": state["request"]},
            output, context
        )
        await self.streaming_handler.send_tool_response(run.identity, capability.name, output)

        return {"capability": capability.name}

    async def post_base_node(self, state: RunState) -> Dict[str, Any]:
        """Interpret the accumulated results"""

        run = state["run"]
        agent_logger.log_stage_transition(run.identity, Stage.TOOL_EXEC.value, Stage.POST_BASE.value, run.current_iteration)

        context = await self._reasoning_context(state)
        result = await structured_query(
            self.reasoning, POST_TOOL_QUERY, BaseTurnResult, context=context, stage=Stage.POST_BASE.value
        )
        output = result.model_dump(by_alias=True, exclude_none=True)

        await self._record(
            state, Stage.POST_BASE,
            {"stage": Stage.POST_BASE.value, "iteration": run.current_iteration, "query": POST_TOOL_QUERY},
            output, context
        )
        await self.streaming_handler.send_response(run.identity, output, run.current_iteration, post_tool=True)

        return {"post_result": result}

    async def advance_node(self, state: RunState) -> Dict[str, Any]:
        """Decide whether another BASE turn runs"""

        run = state["run"]
        run.continuation = self.should_continue(state)

        if not run.continuation:
            run.finish(TerminalReason.COMPLETED)
            agent_logger.log_stage_transition(run.identity, "advance", Stage.DONE.value, run.current_iteration, "completed")
        elif run.current_iteration >= run.max_iterations:
            run.finish(TerminalReason.MAX_ITERATIONS)
            agent_logger.log_stage_transition(
                run.identity, "advance", Stage.DONE.value, run.current_iteration, "max_iterations"
            )

        return {"run": run}

    # --- Routing ---------------------------------------------------------------

    def route_after_base(self, state: RunState) -> Literal["execute", "tool_choice", "advance"]:
        base = state["base_result"]
        if base.choice == "terminalCommand":
            return "execute"
        if base.tool:
            return "tool_choice"
        return "advance"

    def route_after_execute(self, state: RunState) -> Literal["tool_choice", "advance"]:
        return "tool_choice" if state["base_result"].tool else "advance"

    def route_after_tool_choice(self, state: RunState) -> Literal["tool_exec", "post_base"]:
        return "tool_exec" if state["capability"] in self.registry else "post_base"

    def route_after_advance(self, state: RunState) -> Literal["continue", "done"]:
        return "done" if state["run"].is_done else "continue"

    @staticmethod
    def should_continue(state: RunState) -> bool:
        """POST_BASE has the last word when it ran; otherwise BASE, forced on by an execution outcome"""

        if state.get("post_result") is not None:
            return state["post_result"].continue_

        outcome = state.get("outcome")
        if outcome is not None and outcome.forces_continuation:
            return True
        return state["base_result"].continue_

    # --- Helpers ---------------------------------------------------------------

    async def _reasoning_context(self, state: RunState) -> str:
        snapshot = await self.context_provider.snapshot(state["run"].identity)
        security = build_security_context(state["redactor"])
        return "\n\n".join(part for part in (snapshot, security) if part)

    async def _record(
        self,
        state: RunState,
        stage: Optional[Stage],
        request: Dict[str, Any],
        response: Dict[str, Any],
        context: str = ""
    ):
        run = state["run"]
        await self.context_provider.record(run.identity, request, response)
        if stage is not None:
            run.turns.append(AgentTurn(stage=stage, query=request.get("query", ""), context=context, output=response))

    # --- Entry point -----------------------------------------------------------

    async def process_message(
        self, identity: str, text: str, auto_approve: bool = False, interactive: bool = True
    ) -> OrchestrationRun:
        """Drive one run for an originating request.

        ``interactive=False`` marks routes where nobody can answer an approval:
        commands that need one are denied instead of waiting.
        """

        run = OrchestrationRun(
            run_id=f"run_{uuid.uuid4().hex[:12]}",
            identity=identity,
            max_iterations=self.max_iterations
        )
        log = logger.bind(identity=identity, run_id=run.run_id)
        started = time.perf_counter()

        redactor = SecretRedactor(mode=self.redaction_mode)
        try:
            redacted = redactor.redact(text)
        except UnredactedSecretError as e:
            log.warning("Run refused: unprotected sensitive data", keywords=e.keywords)
            run.finish(TerminalReason.ABORTED, str(e))
            await self.streaming_handler.send_error(identity, str(e), error_code="unredacted_secret")
            return run

        if redactor.has_secrets():
            report = redactor.get_report()
            await self.streaming_handler.send_status(
                identity, f"Protected {report.secrets_protected} secret(s) before processing"
            )

        initial_state: RunState = {
            "run": run,
            "redactor": redactor,
            "request": redacted,
            "query": redacted,
            "auto_approve": auto_approve,
            "interactive": interactive,
            "base_result": None,
            "outcome": None,
            "capability": None,
            "post_result": None
        }

        try:
            # Six nodes at most per iteration
            config = {"recursion_limit": run.max_iterations * 6 + 4}
            async for chunk in self.workflow.astream(initial_state, config=config):
                log.debug("Graph step", nodes=list(chunk.keys()))
        except Exception as e:
            error_code = "reasoning_error" if isinstance(e, LumenError) else "internal_error"
            log.error("Run aborted", error=str(e), iteration=run.current_iteration, exc_info=True)
            run.finish(TerminalReason.ABORTED, str(e))
            metrics.increment_counter("runs.aborted")
            await self.streaming_handler.send_error(identity, str(e), error_code=error_code)
            return run

        if run.terminal_reason == TerminalReason.MAX_ITERATIONS:
            await self.streaming_handler.send_warning(
                identity,
                f"Stopped after reaching the maximum of {run.max_iterations} iterations",
                code="max_iterations"
            )

        if self.fulfillment_evaluator is not None and run.terminal_reason == TerminalReason.COMPLETED:
            await self._verify_fulfillment(identity, redacted, log)

        metrics.record_latency("run", (time.perf_counter() - started) * 1000,
                               tags={"terminal_reason": run.terminal_reason.value})
        metrics.increment_counter(f"runs.{run.terminal_reason.value}")
        log.info("Run finished", **run.get_run_summary())

        await self.streaming_handler.send_complete(identity, run)
        return run

    async def _verify_fulfillment(self, identity: str, request: str, log):
        try:
            fulfilled = await self.fulfillment_evaluator.evaluate(identity, request)
        except LumenError as e:
            log.warning("Fulfillment check failed", error=str(e))
            return

        if not fulfilled:
            await self.streaming_handler.send_warning(
                identity, "The request may not be fully completed", code="request_unfulfilled"
            )
