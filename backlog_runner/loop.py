"""Control loop: select, gate, execute and record until the backlog is done.

States:
    IDLE -> SELECTING -> EXECUTING -> RECORDING -> SELECTING | STOPPED
    PAUSED is entered before SELECTING while a pause lock exists.

Exactly one task is in flight at a time. SIGINT/SIGTERM set a stop event that
the approval wait and the agent wait both observe; the session record is
persisted on every exit path before run() returns.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from opentelemetry import trace
from rich.console import Console

from backlog_runner import telemetry
from backlog_runner.agent import ClaudeAgent
from backlog_runner.approval import ApprovalGate
from backlog_runner.budget import BudgetLedger
from backlog_runner.config import RunnerConfig
from backlog_runner.dependencies import DependencyCache, DependencyResolver
from backlog_runner.errors import PersistenceError, TrackerError, WorkspaceError
from backlog_runner.executor import (
    DriverResult,
    ExecutionDriver,
    GitWorkspace,
    abort_for_decision,
    branch_name,
)
from backlog_runner.hooks import HookContext, HookRunner
from backlog_runner.models import Priority, Task, TaskOutcome
from backlog_runner.notifications import Notifier
from backlog_runner.pause import PAUSE_POLL_SECONDS, PauseLock
from backlog_runner.selector import SelectionResult, TaskSelector
from backlog_runner.session import SessionRecorder, SessionSummary
from backlog_runner.tracker import TaskTracker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_SESSION_BUDGET = 125
EXIT_INTERRUPTED = 130

# Failures the on_max_iterations policy applies to
EXHAUSTED_REASONS = ("max_iterations", "timeout")


class LoopState(str, Enum):
    IDLE = "idle"
    PAUSED = "paused"
    SELECTING = "selecting"
    EXECUTING = "executing"
    RECORDING = "recording"
    STOPPED = "stopped"


@dataclass
class LoopResult:
    """How a session ended.

    Attributes:
        exit_code: Process exit status (0, 1, 125 or 130)
        exit_reason: queue_empty, dry_run, session_budget_exceeded,
            interrupted, persistence_failed or fatal_error
        summary: Aggregates over the session's task outcomes
    """

    exit_code: int
    exit_reason: str
    summary: SessionSummary


class ControlLoop:
    """Runs backlog tasks one at a time until stopped.

    Tasks that end skipped (or are sent back by the retry-later policy)
    return to the Ready column but are passed over for the rest of the
    session, so a task is never re-run in the session that gave up on it.

    Args:
        config: Runner configuration
        tracker: Issue tracker
        selector: Task selector (priority + dependencies)
        driver: Execution driver
        gate: Approval gate, used here for the pre_task checkpoint
        ledger: Budget ledger shared with the driver
        recorder: Session recorder
        notifier: Notification dispatcher
        workspace: Git checkout; branches are prepared here unless dry-run
        stop_event: Shared with the gate and the driver
        hooks: Lifecycle hook runner (pre_task and on_failure run here)
        ignore_dependencies: Skip dependency checks for this session
        install_signal_handlers: Route SIGINT/SIGTERM to request_stop()
    """

    def __init__(
        self,
        config: RunnerConfig,
        tracker: TaskTracker,
        selector: TaskSelector,
        driver: ExecutionDriver,
        gate: ApprovalGate,
        ledger: BudgetLedger,
        recorder: SessionRecorder,
        notifier: Notifier | None = None,
        workspace: GitWorkspace | None = None,
        stop_event: asyncio.Event | None = None,
        console: Console | None = None,
        tracer: trace.Tracer | None = None,
        hooks: HookRunner | None = None,
        ignore_dependencies: bool = False,
        install_signal_handlers: bool = True,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.selector = selector
        self.driver = driver
        self.gate = gate
        self.ledger = ledger
        self.recorder = recorder
        self.notifier = notifier
        self.workspace = workspace
        self.stop_event = stop_event or asyncio.Event()
        self.console = console or Console()
        self.tracer = tracer or trace.get_tracer("backlog_runner")
        self.hooks = hooks
        self.ignore_dependencies = ignore_dependencies
        self.install_signal_handlers = install_signal_handlers

        self.pause_lock = PauseLock(config.state_dir)
        self.pause_poll_interval = PAUSE_POLL_SECONDS
        self.state = LoopState.IDLE
        self.exit_code = EXIT_OK
        self.exit_reason = "queue_empty"
        self.empty_polls = 0
        self.passed_over: set[int] = set()
        self._handled_signals: list[signal.Signals] = []

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    def request_stop(self) -> None:
        """Ask the loop to stop after recording the task in flight."""
        if self.stop_event.is_set():
            return
        logger.warning("Stop requested, finishing up and saving session")
        self.console.print(
            "\n[yellow]Interrupt received - stopping after the current step...[/yellow]"
        )
        self.stop_event.set()

    async def run(self) -> LoopResult:
        """Run until the queue is empty, the session budget is spent, or a stop.

        Returns:
            LoopResult with the exit code and session summary

        Raises:
            Exception: Unexpected errors propagate after the session is persisted
        """
        self._add_signal_handlers()
        try:
            await self._run_loop()
        except PersistenceError as e:
            logger.critical(f"Stopping: {e}")
            self.exit_code, self.exit_reason = EXIT_ERROR, "persistence_failed"
        except Exception:
            self.exit_code, self.exit_reason = EXIT_ERROR, "fatal_error"
            raise
        finally:
            await self._shutdown()
        return LoopResult(
            exit_code=self.exit_code,
            exit_reason=self.exit_reason,
            summary=self.recorder.summarize(),
        )

    async def _run_loop(self) -> None:
        while True:
            await self._wait_if_paused()
            self.state = LoopState.SELECTING
            if self.stop_event.is_set():
                self._stop(EXIT_INTERRUPTED, "interrupted")
                return
            if self.ledger.session_exceeded():
                self._stop(EXIT_SESSION_BUDGET, "session_budget_exceeded")
                return

            selection = await self._select()
            if selection is None or selection.empty:
                self.empty_polls += 1
                if self.empty_polls >= self.config.consecutive_empty_threshold:
                    if self.config.on_empty_queue == "exit" or self.dry_run:
                        logger.info("No runnable tasks left, stopping")
                        self._stop(EXIT_OK, "queue_empty")
                        return
                await self._idle()
                continue

            self.empty_polls = 0
            assert selection.task is not None
            result = await self._process(selection.task, selection.priority)

            if result.stop_session:
                self._stop(EXIT_SESSION_BUDGET, "session_budget_exceeded")
                return
            if result.interrupted or self.stop_event.is_set():
                self._stop(EXIT_INTERRUPTED, "interrupted")
                return
            if self.dry_run:
                self._stop(EXIT_OK, "dry_run")
                return

    def _stop(self, exit_code: int, reason: str) -> None:
        self.exit_code = exit_code
        self.exit_reason = reason

    async def _idle(self) -> None:
        self.state = LoopState.IDLE
        logger.info(
            f"No runnable task ({self.empty_polls} empty poll(s)), "
            f"checking again in {self.config.poll_interval:.0f}s"
        )
        try:
            await asyncio.wait_for(
                self.stop_event.wait(), timeout=self.config.poll_interval
            )
        except asyncio.TimeoutError:
            pass

    async def _wait_if_paused(self) -> None:
        """Hold before the next selection while a pause lock exists."""
        pause = self.pause_lock.read()
        if pause is None:
            return
        self.state = LoopState.PAUSED
        self.console.rule("PAUSED - WAITING FOR RESUME")
        if pause.reason:
            logger.info(f"Pause reason: {pause.reason}")
        if pause.resume_at:
            logger.info(f"Auto-resume scheduled at {pause.resume_at}")
        self.console.print(
            "Run [green]backlog-runner resume[/green] in another terminal to continue."
        )
        stopped = await self.pause_lock.wait_until_resumed(
            self.stop_event, self.pause_poll_interval
        )
        if not stopped:
            self.console.rule("RESUMED - CONTINUING PROCESSING")
            logger.info("Pause lock removed, continuing with the task queue")

    async def _select(self) -> SelectionResult | None:
        """One selection pass. Tracker failures count as an empty poll."""
        try:
            candidates = await self.tracker.list_ready_tasks()
            candidates = [t for t in candidates if t.id not in self.passed_over]
            selection = await self.selector.select_next(
                candidates, self.ignore_dependencies
            )
        except TrackerError as e:
            logger.error(f"Could not read the backlog: {e}")
            return None

        for check in selection.skipped:
            blockers = ", ".join(f"#{i}" for i in check.blocking_ids)
            self.console.print(f"[dim]Skipping #{check.task_id}: blocked by {blockers}[/dim]")
        if selection.task is not None:
            self.console.print(
                f"[bold]Selected task #{selection.task.id}:[/bold] {selection.task.title} "
                f"[dim]({selection.priority.value})[/dim]"
            )
        return selection

    async def _process(self, task: Task, priority: Priority) -> DriverResult:
        """Take a selected task to a recorded outcome. Never drops the task.

        An unexpected error from the driver is recorded as a failed outcome
        before it propagates.
        """
        with self.tracer.start_as_current_span("backlog_runner.task") as span:
            span.set_attribute("task.id", task.id)
            span.set_attribute("task.title", task.title)
            span.set_attribute("task.priority", priority.value)

            self.state = LoopState.EXECUTING
            self._notify("task_started", {"task_id": task.id, "title": task.title})
            branch = branch_name(self.config.branch.prefix, task)
            started = time.monotonic()

            result = await self._start(task, priority, branch)
            if result is None:
                try:
                    result = await self.driver.run(task, priority, branch)
                except Exception as e:
                    logger.error(f"Unexpected error while running task #{task.id}: {e}")
                    self.state = LoopState.RECORDING
                    outcome = self._outcome(
                        task,
                        priority,
                        "failed",
                        "fatal_error",
                        started,
                        cost_usd=self.ledger.task_cost,
                    )
                    await self._record(task, outcome, branch)
                    raise

            self.state = LoopState.RECORDING
            await self._record(task, result.outcome, branch)
            span.set_attribute("task.status", result.outcome.status)
            span.set_attribute("task.cost_usd", result.outcome.cost_usd)
            return result

    @staticmethod
    def _outcome(
        task: Task,
        priority: Priority,
        status: str,
        reason: str,
        started: float,
        cost_usd: float = 0.0,
    ) -> TaskOutcome:
        """Outcome for a task that ended outside the driver."""
        now = datetime.now(timezone.utc).isoformat()
        return TaskOutcome(
            task_id=task.id,
            title=task.title,
            status=status,  # type: ignore[arg-type]
            elapsed_seconds=time.monotonic() - started,
            cost_usd=cost_usd,
            pr_reference=None,
            reason=reason,
            priority=priority.value,
            started_at=now,
            finished_at=now,
        )

    async def _start(
        self, task: Task, priority: Priority, branch: str
    ) -> DriverResult | None:
        """Claim the task, pass pre_task and its hook. Returns a result only on early exit."""
        started = time.monotonic()

        def early(status: str, reason: str, interrupted: bool = False) -> DriverResult:
            outcome = self._outcome(task, priority, status, reason, started)
            return DriverResult(outcome=outcome, interrupted=interrupted)

        if not self.dry_run:
            try:
                await self.tracker.move_task(task, self.config.github.in_progress_column)
            except TrackerError as e:
                logger.error(f"Could not claim task #{task.id}: {e}")
                return early("failed", "tracker_error")
            if self.workspace is not None:
                try:
                    await self.workspace.prepare_branch(branch)
                except WorkspaceError as e:
                    logger.error(f"Could not prepare branch {branch}: {e}")
                    return early("failed", "workspace_error")

        decision = await self.gate.request("pre_task", task, branch)
        abort = abort_for_decision(decision, on_reject="skip")
        if abort is not None:
            return early("skipped", abort.reason, interrupted=abort.interrupted)

        if self.hooks is not None and not self.dry_run:
            if not await self.hooks.run("pre_task", self._hook_context(task, branch)):
                logger.error(f"Pre-task hook aborted task #{task.id}")
                return early("skipped", "hook_aborted")
        return None

    def _hook_context(
        self, task: Task, branch: str, outcome: TaskOutcome | None = None
    ) -> HookContext:
        return HookContext(
            task=task,
            branch=branch,
            base_branch=self.config.branch.base,
            repo=self.config.github.repo or "",
            pr_reference=outcome.pr_reference if outcome else None,
            task_cost=outcome.cost_usd if outcome else 0.0,
            session_cost=self.ledger.session_cost,
            iteration=outcome.iterations if outcome else 0,
            max_iterations=self.config.iteration.max_iterations,
        )

    async def _record(self, task: Task, outcome: TaskOutcome, branch: str = "") -> None:
        await self._apply_transitions(task, outcome)
        if outcome.status == "skipped":
            self.passed_over.add(task.id)
        self.recorder.record_task(outcome)
        self.recorder.persist()
        telemetry.record_task(outcome.status, outcome.elapsed_seconds, outcome.cost_usd)

        if outcome.status == "failed" and self.hooks is not None and not self.dry_run:
            await self.hooks.run("on_failure", self._hook_context(task, branch, outcome))

        payload = {
            "task_id": task.id,
            "title": task.title,
            "cost_usd": outcome.cost_usd,
            "elapsed_seconds": outcome.elapsed_seconds,
            "pr_reference": outcome.pr_reference,
            "reason": outcome.reason,
        }
        if outcome.status == "success":
            self._notify("task_completed", payload)
        elif outcome.status == "failed":
            self._notify("task_failed", payload)

        color = {"success": "green", "failed": "red", "skipped": "yellow"}[outcome.status]
        reason = f" - {outcome.reason}" if outcome.reason else ""
        self.console.print(
            f"Task #{task.id}: [bold {color}]{outcome.status.upper()}[/bold {color}]{reason} "
            f"({outcome.elapsed_seconds:.0f}s, ${outcome.cost_usd:.2f})"
        )

    async def _apply_transitions(self, task: Task, outcome: TaskOutcome) -> None:
        """Board moves and labels for an outcome. Never done in dry-run.

        Failed tasks get the failed label and stay in progress, except that a
        task which ran out of iterations or time follows on_max_iterations:
        rollback also resets the checkout to the base branch, retry-later
        moves the task back to Ready instead.
        """
        if self.dry_run:
            return
        github = self.config.github
        policy = self.config.iteration.on_max_iterations
        exhausted = outcome.status == "failed" and outcome.reason in EXHAUSTED_REASONS
        try:
            if outcome.status == "success":
                column = github.done_column if outcome.auto_merged else github.review_column
                await self.tracker.move_task(task, column)
            elif outcome.status == "skipped":
                await self.tracker.move_task(task, github.ready_column)
            elif exhausted and policy == "retry-later":
                logger.info(f"Moving task #{task.id} back to {github.ready_column} for retry")
                await self.tracker.move_task(task, github.ready_column)
                self.passed_over.add(task.id)
            else:
                await self.tracker.set_labels(
                    task.id, sorted(task.labels | {github.failed_label})
                )
        except TrackerError as e:
            logger.error(f"Could not update task #{task.id} on the board: {e}")

        if exhausted and policy == "rollback" and self.workspace is not None:
            try:
                await self.workspace.rollback()
            except WorkspaceError as e:
                logger.error(f"Could not roll back task #{task.id}: {e}")

    def _notify(self, event: str, payload: dict) -> None:
        if self.notifier is not None:
            self.notifier.send(event, payload)

    async def _shutdown(self) -> None:
        self.state = LoopState.STOPPED
        self._remove_signal_handlers()
        try:
            self.recorder.persist(self.exit_reason)
        except PersistenceError as e:
            logger.critical(f"Session record could not be saved: {e}")

        summary = self.recorder.summarize()
        if self.notifier is not None:
            self.notifier.send(
                "session_ended",
                {**summary.to_dict(), "exit_reason": self.exit_reason,
                 "cost_usd": summary.total_cost_usd},
            )
            await self.notifier.drain()
        logger.info(
            f"Session {self.recorder.session_id} ended ({self.exit_reason}): "
            f"{summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.skipped} skipped, ${summary.total_cost_usd:.2f}"
        )

    def _add_signal_handlers(self) -> None:
        if not self.install_signal_handlers:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)
            self._handled_signals.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._handled_signals:
            loop.remove_signal_handler(sig)
        self._handled_signals.clear()


def create_loop(
    config: RunnerConfig,
    tracker: TaskTracker,
    agent: ClaudeAgent | None = None,
    workspace: GitWorkspace | None = None,
    console: Console | None = None,
    tracer: trace.Tracer | None = None,
    ignore_dependencies: bool = False,
    use_keyboard: bool = True,
) -> ControlLoop:
    """Wire the runner's components from configuration."""
    console = console or Console()
    stop_event = asyncio.Event()
    if workspace is None:
        workspace = GitWorkspace(Path.cwd(), config.branch.base)

    deps = config.dependencies
    resolver = DependencyResolver(
        is_completed=tracker.is_task_closed,
        patterns=deps.patterns,
        cache=DependencyCache(timeout_seconds=deps.cache_timeout),
        enabled=deps.enabled,
        linked_issues=tracker.get_linked_blocking_ids if deps.check_linked_issues else None,
    )
    selector = TaskSelector(
        resolver,
        config.priority.labels.as_label_sets(),
        priority_enabled=config.priority.enabled,
    )
    ledger = BudgetLedger(config.budget, dry_run=config.dry_run)
    gate = ApprovalGate(
        config.interactive,
        config.state_dir,
        stop_event=stop_event,
        diff_provider=workspace.diff,
        console=console,
        use_keyboard=use_keyboard,
        tracer=tracer,
    )
    notifier = Notifier(config.notifications)
    hooks = HookRunner(config.hooks, config.state_dir, cwd=workspace.root)
    driver = ExecutionDriver(
        config,
        agent or ClaudeAgent(config.agent),
        ledger,
        gate,
        tracker=tracker,
        notifier=notifier,
        workspace=workspace,
        stop_event=stop_event,
        console=console,
        tracer=tracer,
        hooks=hooks,
    )
    recorder = SessionRecorder(
        config.state_dir,
        retention_days=config.metrics_retention_days,
        max_failures=config.max_persistence_failures,
        dry_run=config.dry_run,
    )
    return ControlLoop(
        config,
        tracker,
        selector,
        driver,
        gate,
        ledger,
        recorder,
        notifier=notifier,
        workspace=workspace,
        stop_event=stop_event,
        console=console,
        tracer=tracer,
        hooks=hooks,
        ignore_dependencies=ignore_dependencies,
    )
