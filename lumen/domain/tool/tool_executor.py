from typing import Optional
import asyncio
import os
import signal
import time

import structlog

from lumen.domain.errors import CommandValidationError
from lumen.domain.models.agent_state import CommandRequest, ExecutionOutcome, ExecutionStatus
from lumen.domain.tool.tool_validator import truncate_output, validate_command
from lumen.infrastructure.observability.langfuse_tracing import trace_stage
from lumen.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)


class ExecutionSandbox:
    """Runs shell commands on behalf of an identity.

    Never raises for process-level problems: every failure comes back as an
    ``ExecutionOutcome``. Command text is not logged since it may carry
    restored secret values.
    """

    def __init__(self, default_timeout_ms: int = 30000, cwd: Optional[str] = None):
        self.default_timeout_ms = default_timeout_ms
        self.cwd = cwd

    @trace_stage("command_execution", capture_io=False)
    async def run(
        self,
        request: CommandRequest,
        auto_approve: bool = False,
        timeout_ms: Optional[int] = None,
    ) -> ExecutionOutcome:
        if request.requires_approval and not auto_approve:
            return ExecutionOutcome(
                status=ExecutionStatus.DENIED,
                command=request.command,
                message="Command requires approval",
            )

        try:
            validate_command(request.command)
        except CommandValidationError as e:
            metrics.increment_counter("sandbox.blocked")
            return ExecutionOutcome(
                status=ExecutionStatus.BLOCKED,
                command=request.command,
                message=str(e),
            )

        timeout_s = (timeout_ms if timeout_ms is not None else self.default_timeout_ms) / 1000
        started = time.perf_counter()

        try:
            process = await asyncio.create_subprocess_shell(
                request.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                start_new_session=os.name != "nt",
            )
        except OSError as e:
            return ExecutionOutcome(
                status=ExecutionStatus.ERROR,
                command=request.command,
                message=f"Failed to start command: {e}",
                execution_time_ms=_elapsed_ms(started),
            )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            _kill_process_tree(process)
            await process.wait()
            metrics.increment_counter("sandbox.timeouts")
            return ExecutionOutcome(
                status=ExecutionStatus.ERROR,
                command=request.command,
                message=f"Command timed out after {timeout_s:g}s",
                execution_time_ms=_elapsed_ms(started),
            )

        exit_code = process.returncode
        outcome = ExecutionOutcome(
            status=ExecutionStatus.SUCCESS if exit_code == 0 else ExecutionStatus.ERROR,
            command=request.command,
            stdout=truncate_output(stdout.decode(errors="replace")),
            stderr=truncate_output(stderr.decode(errors="replace")),
            exit_code=exit_code,
            message="Command completed" if exit_code == 0 else f"Command exited with code {exit_code}",
            execution_time_ms=_elapsed_ms(started),
        )
        metrics.record_latency("sandbox.run", outcome.execution_time_ms, tags={"status": outcome.status.value})
        return outcome


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _kill_process_tree(process: asyncio.subprocess.Process):
    """Kill the shell and everything it started; the shell leads its own session"""
    if os.name == "nt":
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
