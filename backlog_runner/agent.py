"""Code-generation agent invocation.

Runs the Claude Code CLI as a subprocess with stream-json output, turning each
line into an AgentEvent as it arrives so cost can be accounted during the run.
"""

import asyncio
import json
import logging
import re
import signal
from pathlib import Path
from typing import Any, Callable

from backlog_runner.config import AgentConfig
from backlog_runner.errors import AgentError
from backlog_runner.models import AgentEvent, AgentResult

logger = logging.getLogger(__name__)

PR_URL_PATTERN = re.compile(r"https://github\.com/[^/\s]+/[^/\s]+/pull/\d+")

# Seconds to wait after SIGINT before killing the agent
INTERRUPT_GRACE_SECONDS = 5.0

EventCallback = Callable[[AgentEvent], None]


def extract_pr_reference(text: str) -> str | None:
    """First GitHub pull request URL in text, if any."""
    match = PR_URL_PATTERN.search(text or "")
    return match.group(0) if match else None


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."

    elif tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    elif tool_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."

    elif tool_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."

    else:
        return f"→ {tool_name}..."


def parse_stream_line(line: str) -> tuple[list[AgentEvent], dict[str, Any] | None]:
    """Parse one stream-json line.

    Returns:
        Tuple of (events, result payload). The payload is set only for the
        terminal "result" event. Malformed lines yield no events.
    """
    line = line.strip()
    if not line:
        return [], None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return [], None
    if not isinstance(event, dict):
        return [], None

    event_type = event.get("type")
    if event_type == "assistant":
        events = []
        for item in event.get("message", {}).get("content", []) or []:
            if item.get("type") == "text" and item.get("text"):
                events.append(AgentEvent(kind="text", text=item["text"]))
            elif item.get("type") == "tool_use":
                events.append(
                    AgentEvent(
                        kind="tool_use",
                        tool_name=item.get("name", ""),
                        tool_input=item.get("input", {}) or {},
                    )
                )
        return events, None

    if event_type == "result":
        cost = float(event.get("total_cost_usd", 0.0) or 0.0)
        return [
            AgentEvent(kind="result", text=event.get("result", "") or "", cost_delta=cost)
        ], event

    return [], None


class ClaudeAgent:
    """Runs the Claude Code CLI for a task.

    Each run() is one agent invocation. continue_session=True resumes the
    previous conversation in the same working directory (--continue).
    """

    def __init__(self, config: AgentConfig) -> None:
        self.config = config
        self._process: asyncio.subprocess.Process | None = None
        self._interrupted = False

    def build_command(self, prompt: str, continue_session: bool = False) -> list[str]:
        cmd = [self.config.command]
        if continue_session:
            cmd.append("--continue")
        cmd.extend(
            [
                "--print",
                "--verbose",  # Required for stream-json with --print
                "--output-format",
                "stream-json",
                "--dangerously-skip-permissions",
                "--max-turns",
                str(self.config.max_turns),
            ]
        )
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        cmd.append(prompt)
        return cmd

    async def run(
        self,
        prompt: str,
        cwd: Path | None = None,
        continue_session: bool = False,
        on_event: EventCallback | None = None,
    ) -> AgentResult:
        """Invoke the agent and stream its events.

        Args:
            prompt: Prompt text
            cwd: Working directory (repository checkout)
            continue_session: Resume the previous agent conversation
            on_event: Called for each parsed event, in order

        Returns:
            AgentResult with exit code, reported cost, collected output
            and any pull request URL found in it

        Raises:
            AgentError: If the agent binary cannot be started or its output
                stream cannot be read (the process is stopped first)
        """
        cmd = self.build_command(prompt, continue_session)
        self._interrupted = False
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=16 * 1024 * 1024,  # single events can carry large tool output
            )
        except (FileNotFoundError, PermissionError) as e:
            raise AgentError(
                f"Could not start agent '{self.config.command}': {e}",
                error_code="AGENT-LaunchFailed",
            ) from e

        process = self._process
        assert process.stdout is not None and process.stderr is not None
        stderr_task = asyncio.ensure_future(process.stderr.read())

        text_parts: list[str] = []
        result_data: dict[str, Any] | None = None
        cost = 0.0
        try:
            try:
                async for raw in process.stdout:
                    events, payload = parse_stream_line(raw.decode(errors="replace"))
                    for event in events:
                        if event.kind == "text":
                            text_parts.append(event.text)
                        elif event.kind == "result":
                            cost += event.cost_delta
                            if event.text:
                                text_parts.append(event.text)
                        if on_event is not None:
                            on_event(event)
                    if payload is not None:
                        result_data = payload
            except (ValueError, OSError) as e:
                # ValueError: a line longer than the stream limit
                logger.error(f"Agent output stream failed: {e}")
                await self.stop()
                raise AgentError(
                    f"Could not read agent output: {e}",
                    error_code="AGENT-StreamFailed",
                    details={"cost_usd": cost},
                ) from e
            exit_code = await process.wait()
        finally:
            stderr = (await stderr_task).decode(errors="replace")
            self._process = None

        output = "\n".join(text_parts)
        if exit_code != 0 and stderr:
            logger.warning(f"Agent exited {exit_code}: {stderr.strip()[:500]}")

        is_error = exit_code != 0 or result_data is None
        if result_data is not None:
            is_error = is_error or bool(result_data.get("is_error", False))

        return AgentResult(
            exit_code=exit_code,
            cost_usd=cost,
            output=output,
            is_error=is_error,
            session_id=(result_data or {}).get("session_id", ""),
            pr_reference=extract_pr_reference(output),
            interrupted=self._interrupted,
        )

    async def stop(self) -> None:
        """Interrupt a running invocation: SIGINT, then kill after a grace period."""
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._interrupted = True
        logger.info("Interrupting agent process")
        try:
            process.send_signal(signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=INTERRUPT_GRACE_SECONDS)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning("Agent did not exit after SIGINT, killing")
            process.kill()
