"""Execution driver: runs one task through the agent to an outcome.

Flow for a task:
    Phase 1 - implementation iterations; after each agent invocation the
              spend is checked against the budget and the configured
              test/build commands are run. Done when the agent prints the
              ready promise and verification passes.
    post_implementation hook, then the phase1 checkpoint. A rejection with
              feedback sends the feedback back into Phase 1.
    pre_pr hook (may abort) and the phase2 checkpoint.
    Phase 2 - the agent pushes the branch and opens a pull request. Budget
              limits are no longer enforced here; the spend is recorded.
    Optional auto-merge of that pull request.

Budget and approval aborts only ever produce "skipped" or "failed".
"""

import asyncio
import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from opentelemetry import trace
from rich.console import Console

from backlog_runner import telemetry
from backlog_runner.agent import ClaudeAgent, format_tool_call
from backlog_runner.approval import ApprovalDecision, ApprovalGate, ApprovalStatus
from backlog_runner.budget import BudgetAction, BudgetDecision, BudgetLedger
from backlog_runner.config import RunnerConfig
from backlog_runner.errors import AgentError, ConfigurationError, TrackerError, WorkspaceError
from backlog_runner.hooks import HookContext, HookRunner, kill_process_group
from backlog_runner.models import AgentEvent, AgentResult, Priority, Task, TaskOutcome
from backlog_runner.notifications import Notifier
from backlog_runner.tracker import TaskTracker

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TEMPLATE = """\
You are working on GitHub issue #{{ISSUE_NUMBER}}: {{ISSUE_TITLE}}
Issue URL: {{ISSUE_URL}}

## Issue Description

{{ISSUE_BODY}}

## Instructions

You are on branch `{{BRANCH_NAME}}`, created from `{{BASE_BRANCH}}`.

1. Implement everything the issue asks for, with tests.
2. Run the tests (`{{TEST_COMMAND}}`) and the build (`{{BUILD_COMMAND}}`) yourself.
3. Commit your work with clear messages.
4. Do NOT push or open a pull request yet.

When all requirements are implemented and verified, output:
<promise>{{READY_PROMISE}}</promise>
"""

DRY_RUN_PROMPT_TEMPLATE = """\
DRY RUN - do not modify any files, create branches, commit, or push.

Explore the repository and describe how you would implement GitHub issue
#{{ISSUE_NUMBER}}: {{ISSUE_TITLE}}

{{ISSUE_BODY}}

List the files you would change and the tests you would add.
"""

PR_PROMPT_TEMPLATE = """\
All tests and build verification have passed.

Now please:
1. Push the branch to origin
2. Create a Pull Request targeting **{{BASE_BRANCH}}**:

```bash
gh pr create --base {{BASE_BRANCH}} --title "{{ISSUE_PREFIX}} <clear title summarizing the change>" --body "$(cat <<'EOF'
## Summary
<bullet points of what changed>

## Test Plan
<how to verify this works>

Closes #{{ISSUE_NUMBER}}
EOF
)"
```

After creating the PR, output the PR URL and then: <promise>{{COMPLETION_PROMISE}}</promise>
"""

REVISION_PROMPT_TEMPLATE = """\
## Iteration Status: {{ITERATION}} of {{MAX_ITERATIONS}} ({{REMAINING}} remaining)

The previous iteration completed. Here are the test/build results:

{{VERIFICATION_REPORT}}

{{GUIDANCE}}

Do NOT create a PR yet - that comes after verification passes.
"""

FAILED_GUIDANCE = """\
## VERIFICATION FAILED

Follow these steps IN ORDER:
1. Identify the exact error message or failing test in the output above
2. Read the specific file(s) mentioned in the error
3. Make the minimal change that fixes it
4. Run the test/build command yourself to confirm the fix"""

PASSED_GUIDANCE = """\
## TESTS PASSED

If every requirement of the issue is implemented, output:
<promise>{{READY_PROMISE}}</promise>

If you are still implementing features, continue working."""

FEEDBACK_PROMPT_TEMPLATE = """\
## HUMAN REVIEW FEEDBACK

## Iteration Status: {{ITERATION}} of {{MAX_ITERATIONS}} ({{REMAINING}} remaining)

Your implementation was reviewed and the reviewer has requested changes:

**Feedback:** {{FEEDBACK}}

Address this feedback, then:
1. Run the tests to verify your changes work
2. Commit your changes
3. Output: <promise>{{READY_PROMISE}}</promise>

Do NOT create a PR yet - that comes after the review is approved.
"""


def render_template(template: str, values: dict[str, object]) -> str:
    """Replace {{KEY}} placeholders; unknown placeholders are left as-is."""

    def substitute(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return re.sub(r"\{\{([A-Z_]+)\}\}", substitute, template)


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


def branch_name(prefix: str, task: Task) -> str:
    return f"{prefix}{task.id}-{slugify(task.title)}"


def has_promise(output: str, promise: str) -> bool:
    return f"<promise>{promise}</promise>" in output


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def run_shell(
    command: str, cwd: Path | None = None, stop_event: asyncio.Event | None = None
) -> tuple[int | None, str]:
    """Run a shell command, returning (exit code, combined output).

    When stop_event is set before the command finishes, the command and its
    children are killed and the exit code is None.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    communicate = asyncio.ensure_future(process.communicate())
    if stop_event is not None:
        stop_wait = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait(
                {communicate, stop_wait}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_wait.cancel()
        if not communicate.done():
            logger.warning(f"Stopping command: {command}")
            kill_process_group(process)
            stdout, _ = await communicate
            return None, stdout.decode(errors="replace")
    stdout, _ = await communicate
    return process.returncode or 0, stdout.decode(errors="replace")


@dataclass
class VerificationResult:
    passed: bool
    report: str
    skipped: bool = False
    interrupted: bool = False


async def run_verification(
    test_command: str | None,
    build_command: str | None,
    cwd: Path | None = None,
    stop_event: asyncio.Event | None = None,
) -> VerificationResult:
    """Run the configured test and build commands.

    With neither configured, verification passes and is marked skipped. A
    stop request kills the running command and fails verification with
    interrupted set.
    """
    if not test_command and not build_command:
        return VerificationResult(
            passed=True,
            report="=== VERIFICATION SKIPPED ===\nNo test or build command configured",
            skipped=True,
        )

    sections = []
    passed = True
    for label, command in (("TEST", test_command), ("BUILD", build_command)):
        if not command:
            continue
        logger.info(f"Running {label.lower()}: {command}")
        code, output = await run_shell(command, cwd, stop_event)
        if code is None:
            return VerificationResult(
                passed=False,
                report=f"=== {label} RESULTS ===\nInterrupted\nSTATUS: INTERRUPTED",
                interrupted=True,
            )
        status = "PASSED" if code == 0 else "FAILED"
        passed = passed and code == 0
        # Keep the tail; failures are reported at the end of most tool output
        tail = "\n".join(output.splitlines()[-200:])
        sections.append(f"=== {label} RESULTS ===\n{tail}\nSTATUS: {status}")
    return VerificationResult(passed=passed, report="\n\n".join(sections))


class GitWorkspace:
    """Git operations on the checkout the agent works in."""

    def __init__(self, root: Path, base_branch: str) -> None:
        self.root = root
        self.base_branch = base_branch

    async def _git(self, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(self.root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise WorkspaceError("git executable not found") from e
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise WorkspaceError(
                f"git {' '.join(args)} failed: {stderr.decode().strip()}",
                error_code="WORKSPACE-GitFailed",
            )
        return stdout.decode(errors="replace")

    async def prepare_branch(self, branch: str) -> None:
        """Create (or reset) a task branch from the latest base branch."""
        await self._git("fetch", "origin", self.base_branch)
        await self._git("checkout", "-B", branch, f"origin/{self.base_branch}")
        logger.info(f"Checked out {branch} from origin/{self.base_branch}")

    async def checkout_base(self) -> None:
        await self._git("checkout", self.base_branch)

    async def rollback(self) -> None:
        """Discard the task branch's work and return to the base branch."""
        await self._git("reset", "--hard", f"origin/{self.base_branch}")
        await self._git("checkout", self.base_branch)
        logger.info(f"Rolled back to {self.base_branch}")

    async def diff(self, stat_only: bool = True) -> str:
        args = ["diff"]
        if stat_only:
            args.append("--stat")
        args.append(f"{self.base_branch}...HEAD")
        try:
            return await self._git(*args)
        except WorkspaceError as e:
            logger.warning(f"Could not compute diff: {e}")
            return ""


@dataclass
class DriverResult:
    """A task outcome plus signals the control loop must act on."""

    outcome: TaskOutcome
    stop_session: bool = False
    interrupted: bool = False


class _Abort(Exception):
    """Unwinds the phase flow to a terminal outcome."""

    def __init__(
        self,
        status: str,
        reason: str,
        stop_session: bool = False,
        interrupted: bool = False,
    ) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason
        self.stop_session = stop_session
        self.interrupted = interrupted


class ExecutionDriver:
    """Drives one task at a time through the agent.

    Args:
        config: Runner configuration
        agent: Agent backend
        ledger: Budget ledger shared with the control loop
        gate: Approval gate
        tracker: Tracker, used for auto-merge
        notifier: Notification dispatcher
        workspace: Git checkout the agent works in
        stop_event: Set on interrupt; aborts waits on the agent
        console: Rich console for progress output
        hooks: Lifecycle hook runner
    """

    def __init__(
        self,
        config: RunnerConfig,
        agent: ClaudeAgent,
        ledger: BudgetLedger,
        gate: ApprovalGate,
        tracker: TaskTracker | None = None,
        notifier: Notifier | None = None,
        workspace: GitWorkspace | None = None,
        stop_event: asyncio.Event | None = None,
        console: Console | None = None,
        tracer: trace.Tracer | None = None,
        hooks: HookRunner | None = None,
    ) -> None:
        self.config = config
        self.agent = agent
        self.ledger = ledger
        self.gate = gate
        self.tracker = tracker
        self.notifier = notifier
        self.workspace = workspace
        self.stop_event = stop_event or asyncio.Event()
        self.console = console or Console()
        self.tracer = tracer or trace.get_tracer("backlog_runner")
        self.hooks = hooks
        self.attempts: Counter[int] = Counter()
        self.iterations = 0
        self.branch = ""
        self.prompt_template = self._load_prompt_template()
        self._budget_warning_pending = False

    def _load_prompt_template(self) -> str:
        path = self.config.iteration.prompt_template
        if path is None:
            return DEFAULT_PROMPT_TEMPLATE
        try:
            return Path(path).read_text()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read prompt template {path}: {e}",
                error_code="CONF-PromptTemplate",
            ) from e

    @property
    def cwd(self) -> Path | None:
        return self.workspace.root if self.workspace else None

    def template_values(self, task: Task, branch: str) -> dict[str, object]:
        it = self.config.iteration
        return {
            "ISSUE_NUMBER": task.id,
            "ISSUE_TITLE": task.title,
            "ISSUE_URL": task.url,
            "ISSUE_BODY": task.body or "(no description)",
            "BRANCH_NAME": branch,
            "BASE_BRANCH": self.config.branch.base,
            "REPO": self.config.github.repo or "",
            "READY_PROMISE": it.ready_promise,
            "COMPLETION_PROMISE": it.completion_promise,
            "TEST_COMMAND": it.test_command or "none configured",
            "BUILD_COMMAND": it.build_command or "none configured",
            "ISSUE_PREFIX": it.issue_prefix,
        }

    def hook_context(
        self,
        task: Task,
        branch: str,
        pr_reference: str | None = None,
        iteration: int | None = None,
    ) -> HookContext:
        return HookContext(
            task=task,
            branch=branch,
            base_branch=self.config.branch.base,
            repo=self.config.github.repo or "",
            pr_reference=pr_reference,
            task_cost=self.ledger.task_cost,
            session_cost=self.ledger.session_cost,
            iteration=self.iterations if iteration is None else iteration,
            max_iterations=self.config.iteration.max_iterations,
        )

    async def run(
        self, task: Task, priority: Priority = Priority.NORMAL, branch: str = ""
    ) -> DriverResult:
        """Execute a task and classify its outcome.

        Args:
            task: Selected task
            priority: Its priority class, recorded on the outcome
            branch: Branch the agent works on

        Returns:
            DriverResult with the outcome and any session-level signal. A
            successful result carries stop_session when the pull request
            phase used up the session budget.
        """
        self.ledger.start_task()
        self.attempts[task.id] += 1
        started = time.monotonic()
        started_at = _iso_now()
        self.iterations = 0
        self.branch = branch
        self._budget_warning_pending = False
        pr_reference: str | None = None
        auto_merged = False

        def finish(status: str, reason: str | None) -> TaskOutcome:
            return TaskOutcome(
                task_id=task.id,
                title=task.title,
                status=status,  # type: ignore[arg-type]
                elapsed_seconds=time.monotonic() - started,
                cost_usd=self.ledger.task_cost,
                pr_reference=pr_reference,
                reason=reason,
                priority=priority.value,
                iterations=self.iterations,
                auto_merged=auto_merged,
                started_at=started_at,
                finished_at=_iso_now(),
            )

        deadline = None
        if self.config.iteration.task_timeout and not self.config.dry_run:
            deadline = started + self.config.iteration.task_timeout * 60

        try:
            if self.config.dry_run:
                self.iterations = 1
                await self._dry_run(task, branch)
                return DriverResult(outcome=finish("success", "dry_run"))

            iteration = await self._implement(task, branch, deadline)
            await self._review(task, branch, deadline, iteration)
            if not await self._run_hook("pre_pr", task):
                raise _Abort("failed", "hook_aborted")
            await self._checkpoint("phase2", task, branch)
            pr_reference = await self._create_pull_request(task, branch, deadline)
            await self._run_hook("post_pr", task, pr_reference)
            if self.config.iteration.auto_merge:
                auto_merged = await self._auto_merge(task, pr_reference)
                if auto_merged:
                    await self._run_hook("post_merge", task, pr_reference)
            # The pull request exists; a spent session budget only ends the
            # session once this task is recorded.
            return DriverResult(
                outcome=finish("success", None),
                stop_session=self.ledger.session_exceeded(),
            )
        except _Abort as abort:
            return DriverResult(
                outcome=finish(abort.status, abort.reason),
                stop_session=abort.stop_session,
                interrupted=abort.interrupted,
            )
        except (AgentError, WorkspaceError) as e:
            logger.error(f"Task #{task.id} failed: {e}")
            return DriverResult(outcome=finish("failed", "agent_error"))

    async def _dry_run(self, task: Task, branch: str) -> None:
        prompt = render_template(
            DRY_RUN_PROMPT_TEMPLATE, self.template_values(task, branch)
        )
        self.console.print(f"[yellow]DRY RUN[/yellow] exploring task #{task.id}")
        result = await self._invoke(task, prompt, continue_session=False, deadline=None)
        if result.is_error:
            raise _Abort("failed", "agent_error")

    async def _implement(
        self,
        task: Task,
        branch: str,
        deadline: float | None,
        first_iteration: int = 1,
        feedback: str | None = None,
    ) -> int:
        """Phase 1. Raises _Abort when no iteration gets to a verified ready state.

        Args:
            first_iteration: Iteration to start counting from; later than 1
                when resuming after a review rejection
            feedback: Reviewer feedback, sent as the first prompt

        Returns:
            The iteration that reached a verified ready state
        """
        it = self.config.iteration
        values = self.template_values(task, branch)
        verification: VerificationResult | None = None

        for iteration in range(first_iteration, it.max_iterations + 1):
            self.iterations = iteration
            self.console.rule(
                f"PHASE 1: IMPLEMENTATION (iteration {iteration}/{it.max_iterations})"
            )
            if feedback is not None and iteration == first_iteration:
                prompt = self._feedback_prompt(iteration, feedback, values)
            elif verification is None:
                prompt = render_template(self.prompt_template, values)
            else:
                prompt = self._revision_prompt(iteration, verification, values)

            result = await self._invoke(
                task, prompt, continue_session=iteration > 1, deadline=deadline
            )
            self._apply_budget(self.ledger.evaluate(), task)

            if result.is_error:
                logger.warning(
                    f"Agent reported an error on iteration {iteration} "
                    f"(exit code {result.exit_code})"
                )

            ready = has_promise(result.output, it.ready_promise)
            verification = await run_verification(
                it.test_command, it.build_command, self.cwd, self.stop_event
            )
            if verification.interrupted:
                raise _Abort("skipped", "interrupted", interrupted=True)
            if ready and verification.passed:
                logger.info(f"Task #{task.id} ready for PR after {iteration} iteration(s)")
                return iteration
            if ready:
                logger.warning("Ready promise found but verification failed")
            else:
                logger.info("No ready promise yet")

        logger.error(f"Max iterations ({it.max_iterations}) reached without passing verification")
        raise _Abort("failed", "max_iterations")

    async def _review(
        self, task: Task, branch: str, deadline: float | None, iteration: int
    ) -> None:
        """post_implementation hook and the phase1 checkpoint.

        A rejection that carries feedback goes back to the agent as another
        implementation iteration while iterations remain; the reworked
        result is reviewed again.
        """
        max_iterations = self.config.iteration.max_iterations
        while True:
            await self._run_hook("post_implementation", task)
            decision = await self.gate.request("phase1", task, branch)
            if (
                decision.status is ApprovalStatus.REJECTED
                and decision.feedback
                and not decision.skip
                and not decision.interrupted
                and iteration < max_iterations
            ):
                logger.warning("Changes rejected, iterating with reviewer feedback")
                iteration = await self._implement(
                    task,
                    branch,
                    deadline,
                    first_iteration=iteration + 1,
                    feedback=decision.feedback,
                )
                continue
            abort = abort_for_decision(decision, self.config.interactive.on_reject)
            if abort is not None:
                raise abort
            return

    def _revision_prompt(
        self, iteration: int, verification: VerificationResult, values: dict[str, object]
    ) -> str:
        max_iterations = self.config.iteration.max_iterations
        guidance = PASSED_GUIDANCE if verification.passed else FAILED_GUIDANCE
        return render_template(
            REVISION_PROMPT_TEMPLATE,
            {
                **values,
                "ITERATION": iteration,
                "MAX_ITERATIONS": max_iterations,
                "REMAINING": max_iterations - iteration,
                "VERIFICATION_REPORT": verification.report,
                "GUIDANCE": render_template(guidance, values),
            },
        )

    def _feedback_prompt(
        self, iteration: int, feedback: str, values: dict[str, object]
    ) -> str:
        max_iterations = self.config.iteration.max_iterations
        return render_template(
            FEEDBACK_PROMPT_TEMPLATE,
            {
                **values,
                "ITERATION": iteration,
                "MAX_ITERATIONS": max_iterations,
                "REMAINING": max_iterations - iteration,
                "FEEDBACK": feedback,
            },
        )

    async def _create_pull_request(
        self, task: Task, branch: str, deadline: float | None
    ) -> str:
        """Phase 2. Budget limits are not enforced once the agent was asked to
        open the pull request; its cost is still recorded and warned about."""
        self.console.rule("PHASE 2: CREATING PULL REQUEST")
        prompt = render_template(PR_PROMPT_TEMPLATE, self.template_values(task, branch))
        result = await self._invoke(task, prompt, continue_session=True, deadline=deadline)

        if not has_promise(result.output, self.config.iteration.completion_promise):
            logger.warning("No completion promise after PR creation - check manually")
        if result.pr_reference is None:
            logger.error(f"No pull request URL found for task #{task.id}")
            raise _Abort("failed", "no_pull_request")
        self.console.print(f"[green]Pull request:[/green] {result.pr_reference}")
        return result.pr_reference

    async def _auto_merge(self, task: Task, pr_reference: str) -> bool:
        if self.tracker is None:
            return False
        try:
            merged = await self.tracker.merge_pull_request(
                pr_reference, self.config.iteration.merge_commit_prefix
            )
        except TrackerError as e:
            logger.error(f"Auto-merge of {pr_reference} failed: {e}")
            return False
        if merged:
            telemetry.record_merge()
            if self.notifier is not None:
                self.notifier.send(
                    "auto_merge",
                    {"task_id": task.id, "title": task.title, "pr_reference": pr_reference},
                )
        return merged

    async def _checkpoint(self, checkpoint: str, task: Task, branch: str) -> None:
        decision = await self.gate.request(checkpoint, task, branch)
        abort = abort_for_decision(decision, self.config.interactive.on_reject)
        if abort is not None:
            raise abort

    async def _run_hook(
        self, name: str, task: Task, pr_reference: str | None = None
    ) -> bool:
        if self.hooks is None:
            return True
        return await self.hooks.run(
            name, self.hook_context(task, self.branch, pr_reference)
        )

    def _apply_budget(self, decision: BudgetDecision, task: Task) -> None:
        if decision.action is BudgetAction.STOP_SESSION:
            raise _Abort("failed", "session_budget_exceeded", stop_session=True)
        if decision.action is BudgetAction.SKIP_TASK:
            raise _Abort("skipped", "task_budget_exceeded")
        if decision.action is BudgetAction.FAIL_TASK:
            raise _Abort("failed", "task_budget_exceeded")

    def _on_event(self, task: Task, event: AgentEvent) -> None:
        if event.kind == "text":
            self.console.print(event.text, markup=False, highlight=False)
        elif event.kind == "tool_use":
            if self.config.agent.show_tool_details:
                self.console.print(
                    f"[dim]{format_tool_call(event.tool_name, event.tool_input)}[/dim]"
                )
            else:
                self.console.print(f"[dim]-> {event.tool_name}[/dim]")
        elif event.kind == "result" and event.cost_delta > 0:
            self.ledger.add_cost(event.cost_delta)
            decision = self.ledger.evaluate()
            self.console.print(
                f"[dim]Cost: ${event.cost_delta:.4f} "
                f"(task ${self.ledger.task_cost:.2f}, session ${self.ledger.session_cost:.2f})[/dim]"
            )
            self._report_budget(task, decision)

    def _report_budget(self, task: Task, decision: BudgetDecision) -> None:
        """Warning and exceeded notifications for a fresh evaluation."""
        if decision.warnings:
            self._budget_warning_pending = True
        if self.notifier is None:
            return
        for scope in decision.warnings:
            counter = self.ledger.task if scope == "task" else self.ledger.session
            self.notifier.send(
                "budget_warning",
                {
                    "task_id": task.id,
                    "title": task.title,
                    "scope": scope,
                    "percentage": counter.percentage(),
                    "cost_usd": float(counter.cost),
                },
            )
        if decision.newly_exceeded and decision.exceeded_scope is not None:
            counter = (
                self.ledger.task
                if decision.exceeded_scope == "task"
                else self.ledger.session
            )
            self.notifier.send(
                "budget_exceeded",
                {
                    "task_id": task.id,
                    "title": task.title,
                    "scope": decision.exceeded_scope,
                    "cost_usd": float(counter.cost),
                    "limit_usd": float(counter.limit) if counter.limit else None,
                    "action": decision.action.value,
                },
            )

    async def _invoke(
        self,
        task: Task,
        prompt: str,
        continue_session: bool,
        deadline: float | None,
    ) -> AgentResult:
        """Run the agent, aborting on interrupt or task timeout."""
        if self.stop_event.is_set():
            raise _Abort("skipped", "interrupted", interrupted=True)

        with self.tracer.start_as_current_span("backlog_runner.agent") as span:
            span.set_attribute("task.id", task.id)
            span.set_attribute("agent.continue_session", continue_session)

            run = asyncio.ensure_future(
                self.agent.run(
                    prompt,
                    cwd=self.cwd,
                    continue_session=continue_session,
                    on_event=lambda event: self._on_event(task, event),
                )
            )
            stop_wait = asyncio.ensure_future(self.stop_event.wait())
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                await asyncio.wait(
                    {run, stop_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stop_wait.cancel()

            if not run.done():
                await self.agent.stop()
                try:
                    await run
                except AgentError:
                    pass  # process is gone either way
                if self.stop_event.is_set():
                    raise _Abort("skipped", "interrupted", interrupted=True)
                logger.error(
                    f"Task #{task.id} timed out after {self.config.iteration.task_timeout:.0f} minutes"
                )
                raise _Abort("failed", "timeout")

            result = run.result()
            span.set_attribute("agent.exit_code", result.exit_code)
            span.set_attribute("agent.cost_usd", result.cost_usd)

        if self._budget_warning_pending:
            self._budget_warning_pending = False
            await self._run_hook("on_budget_warning", task)
        return result


def abort_for_decision(decision: ApprovalDecision, on_reject: str) -> _Abort | None:
    """Map an approval decision to the abort it causes, if any."""
    if decision.proceed:
        return None
    if decision.interrupted:
        return _Abort("skipped", "interrupted", interrupted=True)
    if decision.skip:
        return _Abort("skipped", "approval_skipped")
    reason = (
        "approval_timed_out"
        if decision.status is ApprovalStatus.TIMED_OUT
        else "approval_rejected"
    )
    return _Abort("skipped" if on_reject == "skip" else "failed", reason)
