"""Agent CLI subprocess management.

The orchestrator treats the agent as a black box: it sends a prompt and
receives ``{success, structured_output, content}``. CliAgentRunner runs an
agent CLI as an async subprocess with timeout enforcement, line streaming
to the log and structured result capture.

The CLI receives the prompt on stdin and is expected to print a JSON
envelope::

    {"result": "...", "structured_output": {...}, "usage": {...}}

Plain text output is accepted too; a JSON block inside it is then used as
the structured output.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from src.devpipeline.parsing.agent_output import extract_json

logger = logging.getLogger(__name__)


@dataclass
class AgentRunRequest:
    """Input to a single agent run.

    Attributes:
        workflow: Workflow name (product-dev, tech-design, implementation, ...).
        prompt: The full prompt text.
        mode: new, feedback, clarification or post-selection.
        issue_number: Tracker issue the run is for.
        working_directory: Directory the agent runs in, if any.
        allow_writes: Whether the agent may modify files (implementation).
        branch: Branch the agent works on, for implementation and review.
    """

    workflow: str
    prompt: str
    mode: str = "new"
    issue_number: Optional[int] = None
    working_directory: Optional[str] = None
    allow_writes: bool = False
    branch: Optional[str] = None


@dataclass
class AgentRunResult:
    """Result of an agent run.

    Attributes:
        success: True when the agent finished and produced output.
        structured_output: Parsed structured payload, if any.
        content: Free-text output.
        usage: Token usage reported by the agent.
        duration_seconds: Wall-clock execution time.
        error: Failure reason when ``success`` is False.
        exit_code: Process exit code (-1 for timeout/OS errors).
    """

    success: bool
    structured_output: Optional[Dict[str, Any]] = None
    content: str = ""
    usage: Dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0
    error: Optional[str] = None
    exit_code: int = 0


@runtime_checkable
class AgentRunner(Protocol):
    """Runs an agent and returns its output."""

    async def run(self, request: AgentRunRequest) -> AgentRunResult:
        ...


def parse_cli_output(stdout: str) -> Tuple[Optional[Dict[str, Any]], str, Dict[str, Any]]:
    """Split agent CLI output into (structured_output, content, usage).

    Example:
        >>> parse_cli_output('{"result": "done", "usage": {"input_tokens": 3}}')
        (None, 'done', {'input_tokens': 3})
    """
    text = stdout.strip()
    try:
        envelope = json.loads(text) if text else None
    except ValueError:
        envelope = None

    if isinstance(envelope, dict) and ("result" in envelope or "structured_output" in envelope):
        content = envelope.get("result") or ""
        structured = envelope.get("structured_output")
        if not isinstance(structured, dict):
            parsed = extract_json(content)
            structured = parsed if isinstance(parsed, dict) else None
        usage = envelope.get("usage") if isinstance(envelope.get("usage"), dict) else {}
        return structured, str(content), usage

    parsed = extract_json(text)
    return (parsed if isinstance(parsed, dict) else None), text, {}


class CliAgentRunner:
    """Runs an agent CLI as an async subprocess.

    Attributes:
        cli_path: Filesystem path to the agent CLI executable.
        timeout_seconds: Maximum execution time before the process is killed.
        extra_args: Additional arguments passed on every run.
    """

    def __init__(
        self,
        cli_path: str,
        timeout_seconds: int = 1800,
        extra_args: Optional[List[str]] = None,
        log_callback: Optional[Callable[[str], None]] = None,
    ):
        self.cli_path = cli_path
        self.timeout_seconds = timeout_seconds
        self.extra_args = list(extra_args or [])
        self.log_callback = log_callback

    async def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run the agent CLI for a request.

        Args:
            request: Workflow, prompt and run options.

        Returns:
            AgentRunResult with parsed output, usage and duration.
        """
        start_time = time.monotonic()
        process = None

        try:
            process = await self._start_process(request)
            stdout, stderr = await self._collect_output_with_timeout(process, request.prompt)
            exit_code = process.returncode or 0
        except asyncio.TimeoutError:
            return self._handle_timeout(process, start_time)
        except OSError as exc:
            return self._handle_os_error(exc, start_time)

        duration = time.monotonic() - start_time
        return self._build_result(request, exit_code, stdout, stderr, duration)

    def _build_args(self, request: AgentRunRequest) -> List[str]:
        args = [self.cli_path, "--print", "--output-format", "json"]
        if request.allow_writes:
            args.append("--allow-writes")
        return args + self.extra_args

    async def _start_process(self, request: AgentRunRequest) -> asyncio.subprocess.Process:
        """Launch the agent CLI.

        Raises:
            OSError: If the executable cannot be found or started.
        """
        logger.info(
            "Starting agent CLI",
            extra={
                "workflow": request.workflow,
                "mode": request.mode,
                "issue_number": request.issue_number,
                "timeout": self.timeout_seconds,
            },
        )
        return await asyncio.create_subprocess_exec(
            *self._build_args(request),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=request.working_directory,
        )

    async def _collect_output_with_timeout(
        self,
        process: asyncio.subprocess.Process,
        prompt: str,
    ) -> Tuple[str, str]:
        """Send the prompt, then stream and collect output within the timeout.

        Raises:
            asyncio.TimeoutError: If the process exceeds the timeout.
        """
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        async def write_prompt():
            if process.stdin is None:
                return
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
            process.stdin.close()

        async def stream_stdout():
            async for line in self._read_stream(process.stdout):
                stdout_lines.append(line)

        async def stream_stderr():
            async for line in self._read_stream(process.stderr):
                stderr_lines.append(line)
                self._emit_line("stderr", line)

        async def gather():
            await asyncio.gather(write_prompt(), stream_stdout(), stream_stderr())
            await process.wait()

        await asyncio.wait_for(gather(), timeout=self.timeout_seconds)
        return "\n".join(stdout_lines), "\n".join(stderr_lines)

    async def _read_stream(self, stream: Optional[asyncio.StreamReader]):
        """Yield decoded lines from an async stream."""
        if stream is None:
            return

        while True:
            raw_line = await stream.readline()
            if not raw_line:
                break
            yield raw_line.decode("utf-8", errors="replace").rstrip("\n")

    def _emit_line(self, stream_name: str, line: str) -> None:
        logger.debug("agent %s: %s", stream_name, line)
        if self.log_callback is not None:
            self.log_callback(f"[{stream_name}] {line}")

    def _handle_timeout(
        self,
        process: Optional[asyncio.subprocess.Process],
        start_time: float,
    ) -> AgentRunResult:
        """Kill the process and return a timeout failure result."""
        if process is not None and process.returncode is None:
            process.kill()
        duration = time.monotonic() - start_time
        logger.error("Agent CLI timed out after %ds", self.timeout_seconds)
        return AgentRunResult(
            success=False,
            duration_seconds=duration,
            error=f"Agent timed out after {self.timeout_seconds}s",
            exit_code=-1,
        )

    def _handle_os_error(self, exc: OSError, start_time: float) -> AgentRunResult:
        duration = time.monotonic() - start_time
        logger.error("Failed to start agent CLI: %s", exc)
        return AgentRunResult(
            success=False,
            duration_seconds=duration,
            error=f"Failed to start agent CLI: {exc}",
            exit_code=-1,
        )

    def _build_result(
        self,
        request: AgentRunRequest,
        exit_code: int,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> AgentRunResult:
        """Construct an AgentRunResult from process output."""
        if exit_code != 0:
            logger.error(
                "Agent CLI failed with exit code %d in %.1fs",
                exit_code,
                duration,
            )
            return AgentRunResult(
                success=False,
                content=stdout,
                duration_seconds=duration,
                error=stderr.strip() or f"Agent exited with code {exit_code}",
                exit_code=exit_code,
            )

        structured, content, usage = parse_cli_output(stdout)
        logger.info(
            "Agent CLI completed in %.1fs",
            duration,
            extra={"workflow": request.workflow, "structured": structured is not None},
        )
        return AgentRunResult(
            success=bool(content or structured),
            structured_output=structured,
            content=content,
            usage=usage,
            duration_seconds=duration,
            error=None if (content or structured) else "Agent produced no output",
            exit_code=exit_code,
        )
