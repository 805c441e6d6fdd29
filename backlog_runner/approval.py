"""Human approval checkpoints.

When interactive mode is enabled, the runner pauses at configured checkpoints
(pre_task, phase1, phase2) until a human approves, rejects, or skips. The
decision travels through a JSON lock artifact in the state directory: the gate
creates it in "pending" state and polls it, while the `approve`/`reject` CLI
commands (or key presses in the runner's own terminal) write the decision.
"""

import asyncio
import getpass
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from opentelemetry import trace
from rich.console import Console
from rich.panel import Panel

from backlog_runner import telemetry
from backlog_runner.config import InteractiveConfig
from backlog_runner.models import Task

logger = logging.getLogger(__name__)

CHECKPOINTS = ("pre_task", "phase1", "phase2")

CHECKPOINT_TITLES = {
    "pre_task": "Pre-Task Review",
    "phase1": "Post-Implementation Review",
    "phase2": "Pre-PR Creation Review",
}

SKIP_FEEDBACK = "Task skipped by user"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class SignalResult(str, Enum):
    SIGNALLED = "signalled"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def artifact_path(state_dir: Path, checkpoint: str, task_id: int) -> Path:
    return state_dir / f"approval-{checkpoint}-{task_id}.lock"


class ApprovalArtifact:
    """The durable approval lock file for one checkpoint of one task."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_checkpoint(
        cls, state_dir: Path, checkpoint: str, task_id: int
    ) -> "ApprovalArtifact":
        return cls(artifact_path(state_dir, checkpoint, task_id))

    def create(
        self,
        task: Task,
        checkpoint: str,
        branch: str = "",
        extra: dict[str, Any] | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "status": ApprovalStatus.PENDING.value,
            "created_at": _now(),
            "issue_number": task.id,
            "issue_title": task.title,
            "branch": branch,
            "phase": checkpoint,
        }
        if extra:
            data.update(extra)
        self._write(data)

    def read(self) -> dict[str, Any] | None:
        """Artifact contents, or None if missing or unreadable."""
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            # A writer may be mid-replace; next poll will retry
            logger.debug(f"Could not read approval artifact {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def status(self) -> ApprovalStatus | None:
        data = self.read()
        if data is None:
            return None
        try:
            return ApprovalStatus(data.get("status", ""))
        except ValueError:
            return None

    def decide(
        self,
        status: ApprovalStatus,
        feedback: str | None = None,
        skip: bool = False,
        approver: str | None = None,
    ) -> None:
        """Record a decision on an existing artifact.

        Raises:
            FileNotFoundError: If the artifact no longer exists
        """
        data = self.read()
        if data is None:
            raise FileNotFoundError(f"No approval pending at {self.path}")
        data["status"] = status.value
        data["decided_at"] = _now()
        data["approver"] = approver or _current_user()
        if feedback:
            data["feedback"] = feedback
        if skip:
            data["skip"] = True
        self._write(data)

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def find_pending(state_dir: Path, task_id: int | None = None) -> list[ApprovalArtifact]:
    """All artifacts still awaiting a decision, optionally for one task."""
    if not state_dir.exists():
        return []
    pattern = f"approval-*-{task_id}.lock" if task_id is not None else "approval-*.lock"
    pending = []
    for path in sorted(state_dir.glob(pattern)):
        artifact = ApprovalArtifact(path)
        if artifact.status() is ApprovalStatus.PENDING:
            pending.append(artifact)
    return pending


def approve_pending(
    state_dir: Path, task_id: int | None = None, approver: str | None = None
) -> list[Path]:
    """Approve every pending checkpoint. Returns the artifacts touched."""
    touched = []
    for artifact in find_pending(state_dir, task_id):
        artifact.decide(ApprovalStatus.APPROVED, approver=approver)
        touched.append(artifact.path)
    return touched


def reject_pending(
    state_dir: Path,
    feedback: str | None = None,
    skip: bool = False,
    task_id: int | None = None,
    approver: str | None = None,
) -> list[Path]:
    """Reject (or skip) every pending checkpoint. Returns the artifacts touched."""
    touched = []
    if skip and not feedback:
        feedback = SKIP_FEEDBACK
    for artifact in find_pending(state_dir, task_id):
        artifact.decide(
            ApprovalStatus.REJECTED, feedback=feedback, skip=skip, approver=approver
        )
        touched.append(artifact.path)
    return touched


async def wait_for_signal(
    predicate: Callable[[], bool],
    poll_interval: float,
    timeout: float | None = None,
    stop_event: asyncio.Event | None = None,
) -> SignalResult:
    """Poll a predicate until it holds, the timeout elapses, or a stop is requested.

    The wait yields to the event loop between polls and wakes immediately
    when stop_event is set, so signal handlers stay responsive.

    Args:
        predicate: Checked once per poll
        poll_interval: Seconds between polls
        timeout: Seconds before giving up; None or 0 waits forever
        stop_event: Event that aborts the wait when set

    Returns:
        SignalResult describing why the wait ended
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout else None

    while True:
        if predicate():
            return SignalResult.SIGNALLED
        if stop_event is not None and stop_event.is_set():
            return SignalResult.STOPPED
        if deadline is not None and loop.time() >= deadline:
            return SignalResult.TIMED_OUT

        delay = poll_interval
        if deadline is not None:
            delay = max(0.0, min(delay, deadline - loop.time()))
        if stop_event is not None:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(delay)


WaitForSignal = Callable[
    [Callable[[], bool], float, "float | None", "asyncio.Event | None"],
    Awaitable[SignalResult],
]
DiffProvider = Callable[[bool], Awaitable[str]]


@dataclass
class ApprovalDecision:
    """Result of passing (or failing to pass) a checkpoint.

    Attributes:
        checkpoint: Checkpoint name
        status: Final checkpoint state (pending only when interrupted)
        proceed: Whether execution may continue past the checkpoint
        feedback: Human-supplied message, if any
        skip: The human asked to skip the task entirely
        interrupted: The wait was aborted by a stop request
    """

    checkpoint: str
    status: ApprovalStatus
    proceed: bool
    feedback: str | None = None
    skip: bool = False
    interrupted: bool = False


class KeyboardListener:
    """Translates single key presses into artifact decisions.

    Keys: y approve, n reject (then reads a feedback line), d show diff,
    s skip. Only attached when stdin is a TTY; the artifact stays the only
    signal the gate polls.
    """

    def __init__(
        self,
        artifact: ApprovalArtifact,
        console: Console,
        on_diff: Callable[[], None] | None = None,
    ) -> None:
        self.artifact = artifact
        self.console = console
        self.on_diff = on_diff
        self._reading_feedback = False
        self._buffer = ""
        self._fd: int | None = None
        self._saved_attrs: list[Any] | None = None

    def handle_key(self, key: str) -> None:
        key = key.lower()
        if key == "y":
            self.artifact.decide(ApprovalStatus.APPROVED)
            logger.info("Approved via keyboard")
        elif key == "n":
            self._reading_feedback = True
            self._restore_terminal()
            self.console.print(
                "[yellow]Enter feedback for the agent (press Enter when done):[/yellow]"
            )
        elif key == "d":
            if self.on_diff is not None:
                self.on_diff()
        elif key == "s":
            self.artifact.decide(
                ApprovalStatus.REJECTED, feedback=SKIP_FEEDBACK, skip=True
            )
            logger.info("Task skipped via keyboard")

    def handle_text(self, text: str) -> None:
        if not self._reading_feedback:
            for key in text:
                self.handle_key(key)
                if self._reading_feedback:
                    break
            return
        self._buffer += text
        if "\n" in self._buffer:
            feedback = self._buffer.split("\n", 1)[0].strip()
            self._reading_feedback = False
            self._buffer = ""
            self.artifact.decide(ApprovalStatus.REJECTED, feedback=feedback or None)
            logger.info("Rejected via keyboard")

    def attach(self) -> bool:
        """Start listening on stdin. Returns False when stdin is not a TTY."""
        if not sys.stdin.isatty():
            return False
        import termios
        import tty

        self._fd = sys.stdin.fileno()
        self._saved_attrs = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        asyncio.get_running_loop().add_reader(self._fd, self._on_readable)
        return True

    def detach(self) -> None:
        if self._fd is None:
            return
        asyncio.get_running_loop().remove_reader(self._fd)
        self._restore_terminal()
        self._fd = None

    def _on_readable(self) -> None:
        assert self._fd is not None
        data = os.read(self._fd, 1024).decode(errors="ignore")
        try:
            self.handle_text(data)
        except FileNotFoundError:
            logger.debug("Approval artifact already removed")

    def _restore_terminal(self) -> None:
        if self._fd is None or self._saved_attrs is None:
            return
        import termios

        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
        self._saved_attrs = None


class ApprovalGate:
    """Suspends task progress at enabled checkpoints until a human decides.

    With interactive mode disabled, or a checkpoint not enabled, request()
    returns an approved decision immediately and creates no artifact.

    Args:
        config: Interactive settings
        state_dir: Directory holding approval artifacts
        stop_event: Set by the signal handler to abort waits
        wait: Injectable wait-for-signal capability
        diff_provider: Async callable returning a diff (stat only when
            passed True), shown for phase checkpoints
        console: Rich console for the prompt
        use_keyboard: Attach a keyboard listener when stdin is a TTY
    """

    def __init__(
        self,
        config: InteractiveConfig,
        state_dir: Path,
        stop_event: asyncio.Event | None = None,
        wait: WaitForSignal = wait_for_signal,
        diff_provider: DiffProvider | None = None,
        console: Console | None = None,
        use_keyboard: bool = True,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config
        self.state_dir = state_dir
        self.stop_event = stop_event
        self.wait = wait
        self.diff_provider = diff_provider
        self.console = console or Console()
        self.use_keyboard = use_keyboard
        self.tracer = tracer or trace.get_tracer("backlog_runner")
        self._diff_task: asyncio.Task | None = None

    def is_enabled(self, checkpoint: str) -> bool:
        return self.config.checkpoint_enabled(checkpoint)

    async def request(
        self, checkpoint: str, task: Task, branch: str = ""
    ) -> ApprovalDecision:
        """Pass a checkpoint, waiting for a human decision if it is enabled."""
        if not self.is_enabled(checkpoint):
            return ApprovalDecision(
                checkpoint=checkpoint, status=ApprovalStatus.APPROVED, proceed=True
            )

        with self.tracer.start_as_current_span("backlog_runner.approval") as span:
            span.set_attribute("task.id", task.id)
            span.set_attribute("approval.checkpoint", checkpoint)

            artifact = ApprovalArtifact.for_checkpoint(
                self.state_dir, checkpoint, task.id
            )
            artifact.create(task, checkpoint, branch)
            listener: KeyboardListener | None = None
            try:
                await self._display_prompt(checkpoint, task)
                if self.use_keyboard:
                    listener = KeyboardListener(
                        artifact, self.console, on_diff=self._schedule_full_diff
                    )
                    if not listener.attach():
                        listener = None

                result = await self.wait(
                    lambda: artifact.status()
                    in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED),
                    self.config.poll_interval,
                    self.config.timeout or None,
                    self.stop_event,
                )
                decision = self._resolve(checkpoint, artifact, result)
            finally:
                if listener is not None:
                    listener.detach()
                self._cancel_full_diff()
                artifact.remove()

            span.set_attribute("approval.status", decision.status.value)
            telemetry.record_approval(checkpoint, decision.status.value)
            self._log_decision(task, decision)
            return decision

    def _resolve(
        self, checkpoint: str, artifact: ApprovalArtifact, result: SignalResult
    ) -> ApprovalDecision:
        if result is SignalResult.STOPPED:
            return ApprovalDecision(
                checkpoint=checkpoint,
                status=ApprovalStatus.PENDING,
                proceed=False,
                interrupted=True,
            )
        if result is SignalResult.TIMED_OUT:
            return ApprovalDecision(
                checkpoint=checkpoint,
                status=ApprovalStatus.TIMED_OUT,
                proceed=self.config.on_timeout == "approve",
            )

        data = artifact.read() or {}
        status = ApprovalStatus(data.get("status", ApprovalStatus.REJECTED.value))
        return ApprovalDecision(
            checkpoint=checkpoint,
            status=status,
            proceed=status is ApprovalStatus.APPROVED,
            feedback=data.get("feedback"),
            skip=bool(data.get("skip", False)),
        )

    def _log_decision(self, task: Task, decision: ApprovalDecision) -> None:
        label = f"Task #{task.id} {decision.checkpoint}"
        if decision.interrupted:
            logger.warning(f"{label}: approval wait interrupted")
        elif decision.status is ApprovalStatus.TIMED_OUT:
            outcome = "approving" if decision.proceed else "treating as rejected"
            logger.warning(
                f"{label}: approval timed out after {self.config.timeout:.0f}s, {outcome}"
            )
        elif decision.proceed:
            logger.info(f"{label}: approved")
        else:
            logger.warning(
                f"{label}: {'skipped' if decision.skip else 'rejected'}"
                + (f" ({decision.feedback})" if decision.feedback else "")
            )

    async def _display_prompt(self, checkpoint: str, task: Task) -> None:
        lines = [
            f"[cyan]Issue:[/cyan]  #{task.id}",
            f"[cyan]Title:[/cyan]  {task.title}",
            f"[cyan]Phase:[/cyan]  {CHECKPOINT_TITLES.get(checkpoint, checkpoint)}",
        ]

        if (
            self.config.show_diff
            and checkpoint != "pre_task"
            and self.diff_provider is not None
        ):
            summary = await self.diff_provider(True)
            lines += ["", "[bold]Changes Summary[/bold]", summary or "  No changes detected"]

        lines += [
            "",
            "[bold yellow]Keyboard Shortcuts:[/bold yellow]",
            "  [green]y[/green] - Approve and continue",
            "  [red]n[/red] - Reject and provide feedback",
            "  [cyan]d[/cyan] - View full diff",
            "  [yellow]s[/yellow] - Skip task (move back to Ready)",
            "",
            "Or run in another terminal:",
            "  [green]backlog-runner approve[/green]",
            '  [red]backlog-runner reject -m "feedback"[/red]',
        ]
        if self.config.timeout:
            lines.append(f"\n[dim]Timeout: {self.config.timeout:.0f}s[/dim]")

        self.console.print()
        self.console.print(
            Panel("\n".join(lines), title="APPROVAL REQUIRED", border_style="magenta")
        )

    def _schedule_full_diff(self) -> None:
        if self.diff_provider is None:
            self.console.print("[dim]No diff available[/dim]")
            return
        if self._diff_task is not None and not self._diff_task.done():
            return
        self._diff_task = asyncio.get_running_loop().create_task(self._show_full_diff())
        self._diff_task.add_done_callback(self._log_diff_failure)

    def _cancel_full_diff(self) -> None:
        if self._diff_task is not None:
            self._diff_task.cancel()
            self._diff_task = None

    @staticmethod
    def _log_diff_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            logger.warning(f"Could not show full diff: {error}")

    async def _show_full_diff(self) -> None:
        assert self.diff_provider is not None
        diff = await self.diff_provider(False)
        lines = diff.splitlines()
        self.console.print("\n".join(lines[:100]) or "[dim]No changes detected[/dim]")
        if len(lines) > 100:
            self.console.print(f"[dim]... {len(lines) - 100} more lines[/dim]")
