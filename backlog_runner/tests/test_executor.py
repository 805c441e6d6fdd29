"""Tests for the execution driver.

The agent is replaced by a scripted fake; approval is either a real gate with
interactive mode off or a mock returning a fixed decision.
"""

import asyncio
import io
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from backlog_runner.agent import extract_pr_reference
from backlog_runner.approval import ApprovalDecision, ApprovalGate, ApprovalStatus
from backlog_runner.budget import BudgetLedger
from backlog_runner.config import InteractiveConfig, RunnerConfig
from backlog_runner.errors import AgentError, ConfigurationError, WorkspaceError
from backlog_runner.executor import (
    ExecutionDriver,
    GitWorkspace,
    abort_for_decision,
    branch_name,
    has_promise,
    render_template,
    run_shell,
    run_verification,
    slugify,
)
from backlog_runner.models import AgentEvent, AgentResult, Priority, Task

TASK = Task(id=42, title="Add login page", body="Users need to log in.", url="https://x/42")
READY = "Implemented.\n<promise>READY_FOR_PR</promise>"
PR_DONE = "https://github.com/acme/app/pull/7\n<promise>COMPLETE</promise>"


def agent_result(output: str = "", cost: float = 0.0, is_error: bool = False) -> AgentResult:
    return AgentResult(
        exit_code=1 if is_error else 0,
        cost_usd=cost,
        output=output,
        is_error=is_error,
        pr_reference=extract_pr_reference(output),
    )


class FakeAgent:
    """Scripted agent. With hang=True, run() blocks until stop()."""

    def __init__(self, results: list | None = None, hang: bool = False) -> None:
        self.results = list(results or [])
        self.hang = hang
        self.calls: list[tuple[str, bool]] = []
        self.stopped = False
        self._release = asyncio.Event()

    async def run(self, prompt, cwd=None, continue_session=False, on_event=None):
        self.calls.append((prompt, continue_session))
        if self.hang:
            await self._release.wait()
            return AgentResult(exit_code=130, cost_usd=0.0, output="", is_error=True)
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        if on_event is not None:
            on_event(AgentEvent(kind="text", text=result.output))
            if result.cost_usd:
                on_event(AgentEvent(kind="result", cost_delta=result.cost_usd))
        return result

    async def stop(self) -> None:
        self.stopped = True
        self._release.set()


def make_config(**overrides) -> RunnerConfig:
    data: dict = {"github": {"repo": "acme/app", "project_number": 1}}
    data.update(overrides)
    return RunnerConfig.from_dict(data)


def make_driver(
    config: RunnerConfig,
    agent: FakeAgent,
    gate=None,
    tracker=None,
    notifier=None,
    stop_event: asyncio.Event | None = None,
    tmp_path: Path | None = None,
    hooks=None,
) -> ExecutionDriver:
    ledger = BudgetLedger(config.budget, dry_run=config.dry_run)
    if gate is None:
        gate = ApprovalGate(InteractiveConfig(), tmp_path or Path("."))
    return ExecutionDriver(
        config,
        agent,  # type: ignore[arg-type]
        ledger,
        gate,
        tracker=tracker,
        notifier=notifier,
        stop_event=stop_event,
        console=Console(file=io.StringIO()),
        hooks=hooks,
    )


def rejecting_gate(status=ApprovalStatus.REJECTED, skip: bool = False) -> MagicMock:
    gate = MagicMock()
    gate.request = AsyncMock(
        return_value=ApprovalDecision("phase1", status, proceed=False, skip=skip)
    )
    return gate


def scripted_gate(*decisions: ApprovalDecision) -> MagicMock:
    gate = MagicMock()
    gate.request = AsyncMock(side_effect=list(decisions))
    return gate


def approved(checkpoint: str) -> ApprovalDecision:
    return ApprovalDecision(checkpoint, ApprovalStatus.APPROVED, proceed=True)


def recording_hooks(failing: str | None = None) -> MagicMock:
    """Hook runner mock; the hook named by failing aborts."""
    hooks = MagicMock()
    hooks.run = AsyncMock(side_effect=lambda name, context: name != failing)
    return hooks


class TestHelpers:
    """Tests for prompt rendering and naming helpers."""

    def test_render_template_leaves_unknown_placeholders(self) -> None:
        assert render_template("#{{A}} {{B}}", {"A": 1}) == "#1 {{B}}"

    def test_branch_name(self) -> None:
        assert branch_name("feature/issue-", TASK) == "feature/issue-42-add-login-page"

    def test_slugify(self) -> None:
        assert slugify("Fix: crash on *empty* input!") == "fix-crash-on-empty-input"
        assert slugify("!!!") == "task"
        assert len(slugify("word " * 30)) <= 40

    def test_has_promise(self) -> None:
        assert has_promise(READY, "READY_FOR_PR")
        assert not has_promise("READY_FOR_PR", "READY_FOR_PR")


class TestRunVerification:
    """Tests for run_verification()."""

    @pytest.mark.asyncio
    async def test_nothing_configured_passes(self) -> None:
        result = await run_verification(None, None)

        assert result.passed is True
        assert result.skipped is True

    @pytest.mark.asyncio
    async def test_passing_and_failing_commands(self) -> None:
        result = await run_verification("echo tests ok", "exit 3")

        assert result.passed is False
        assert "tests ok" in result.report
        assert "STATUS: PASSED" in result.report
        assert "STATUS: FAILED" in result.report

    @pytest.mark.asyncio
    async def test_stop_kills_running_command(self) -> None:
        stop_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop_event.set)

        code, _ = await asyncio.wait_for(
            run_shell("sleep 30", stop_event=stop_event), timeout=5
        )

        assert code is None

    @pytest.mark.asyncio
    async def test_command_finishing_before_stop(self) -> None:
        code, output = await run_shell("echo done", stop_event=asyncio.Event())

        assert code == 0
        assert output.strip() == "done"

    @pytest.mark.asyncio
    async def test_interrupted_verification(self) -> None:
        stop_event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop_event.set)

        result = await asyncio.wait_for(
            run_verification("sleep 30", "echo build", stop_event=stop_event), timeout=5
        )

        assert result.interrupted is True
        assert result.passed is False
        assert "STATUS: INTERRUPTED" in result.report


class TestGitWorkspace:
    """Tests for GitWorkspace."""

    @pytest.mark.asyncio
    async def test_prepare_branch(self, tmp_path: Path) -> None:
        workspace = GitWorkspace(tmp_path, "main")
        with patch.object(workspace, "_git", AsyncMock(return_value="")) as git:
            await workspace.prepare_branch("feature/issue-1-x")

        assert git.call_args_list[0][0] == ("fetch", "origin", "main")
        assert git.call_args_list[1][0] == ("checkout", "-B", "feature/issue-1-x", "origin/main")

    @pytest.mark.asyncio
    async def test_git_failure_raises(self, tmp_path: Path) -> None:
        process = MagicMock()
        process.communicate = AsyncMock(return_value=(b"", b"fatal: not a git repository"))
        process.returncode = 128
        workspace = GitWorkspace(tmp_path, "main")

        with patch(
            "backlog_runner.executor.asyncio.create_subprocess_exec",
            AsyncMock(return_value=process),
        ):
            with pytest.raises(WorkspaceError):
                await workspace.prepare_branch("b")

    @pytest.mark.asyncio
    async def test_diff_failure_returns_empty(self, tmp_path: Path) -> None:
        workspace = GitWorkspace(tmp_path, "main")
        with patch.object(workspace, "_git", AsyncMock(side_effect=WorkspaceError("x"))):
            assert await workspace.diff() == ""

    @pytest.mark.asyncio
    async def test_rollback(self, tmp_path: Path) -> None:
        workspace = GitWorkspace(tmp_path, "main")
        with patch.object(workspace, "_git", AsyncMock(return_value="")) as git:
            await workspace.rollback()

        assert [c[0] for c in git.call_args_list] == [
            ("reset", "--hard", "origin/main"),
            ("checkout", "main"),
        ]


class TestAbortForDecision:
    """Tests for abort_for_decision()."""

    def test_approved_proceeds(self) -> None:
        decision = ApprovalDecision("phase1", ApprovalStatus.APPROVED, proceed=True)

        assert abort_for_decision(decision, "skip") is None

    def test_rejection_follows_on_reject(self) -> None:
        decision = ApprovalDecision("phase1", ApprovalStatus.REJECTED, proceed=False)

        assert abort_for_decision(decision, "skip").status == "skipped"
        assert abort_for_decision(decision, "fail").status == "failed"

    def test_skip_always_skips(self) -> None:
        decision = ApprovalDecision("phase1", ApprovalStatus.REJECTED, proceed=False, skip=True)

        abort = abort_for_decision(decision, "fail")

        assert (abort.status, abort.reason) == ("skipped", "approval_skipped")

    def test_interrupted(self) -> None:
        decision = ApprovalDecision(
            "phase1", ApprovalStatus.PENDING, proceed=False, interrupted=True
        )

        abort = abort_for_decision(decision, "fail")

        assert abort.interrupted is True
        assert abort.reason == "interrupted"


class TestExecutionDriver:
    """Tests for ExecutionDriver.run()."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 0.5), agent_result(PR_DONE, 0.25)])
        driver = make_driver(make_config(), agent, tmp_path=tmp_path)

        result = await driver.run(TASK, Priority.HIGH, "feature/issue-42-add-login-page")

        outcome = result.outcome
        assert outcome.status == "success"
        assert outcome.pr_reference == "https://github.com/acme/app/pull/7"
        assert outcome.cost_usd == 0.75
        assert outcome.iterations == 1
        assert outcome.priority == "high"
        assert result.stop_session is False
        # Phase 2 continues the implementation conversation
        assert [c[1] for c in agent.calls] == [False, True]
        assert "#42" in agent.calls[0][0]
        assert driver.attempts[42] == 1

    @pytest.mark.asyncio
    async def test_max_iterations(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result("working"), agent_result("still working")])
        config = make_config(iteration={"max_iterations": 2})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "max_iterations"
        assert result.outcome.iterations == 2
        assert len(agent.calls) == 2
        assert "Iteration Status: 2 of 2" in agent.calls[1][0]

    @pytest.mark.asyncio
    async def test_failed_verification_feeds_back(self, tmp_path: Path) -> None:
        """A ready promise is not enough when the tests fail."""
        agent = FakeAgent([agent_result(READY), agent_result(READY)])
        config = make_config(iteration={"max_iterations": 2, "test_command": "exit 1"})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.reason == "max_iterations"
        assert "VERIFICATION FAILED" in agent.calls[1][0]

    @pytest.mark.asyncio
    async def test_task_budget_fail_scenario(self, tmp_path: Path) -> None:
        """Costs 1.0, 0.6, 0.5 against 2.00: one warning, then the task fails."""
        agent = FakeAgent(
            [agent_result("a", 1.0), agent_result("b", 0.6), agent_result("c", 0.5)]
        )
        notifier = MagicMock()
        config = make_config(budget={"per_task_limit": 2.0, "on_task_budget_exceeded": "fail"})

        result = await make_driver(
            config, agent, notifier=notifier, tmp_path=tmp_path
        ).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "task_budget_exceeded"
        assert result.outcome.cost_usd == pytest.approx(2.1)
        warnings = [c for c in notifier.send.call_args_list if c[0][0] == "budget_warning"]
        assert len(warnings) == 1
        assert warnings[0][0][1]["percentage"] == 80

    @pytest.mark.asyncio
    async def test_task_budget_skip(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result("a", 3.0)])
        config = make_config(budget={"per_task_limit": 2.0})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "task_budget_exceeded"

    @pytest.mark.asyncio
    async def test_session_budget_stops(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 1.0)])
        config = make_config(budget={"per_session_limit": 0.5})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "session_budget_exceeded"
        assert result.stop_session is True

    @pytest.mark.asyncio
    async def test_phase1_rejection_skips(self) -> None:
        agent = FakeAgent([agent_result(READY)])

        result = await make_driver(make_config(), agent, gate=rejecting_gate()).run(TASK)

        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "approval_rejected"
        assert len(agent.calls) == 1

    @pytest.mark.asyncio
    async def test_rejection_can_fail(self) -> None:
        agent = FakeAgent([agent_result(READY)])
        config = make_config(interactive={"on_reject": "fail"})

        result = await make_driver(
            config, agent, gate=rejecting_gate(ApprovalStatus.TIMED_OUT)
        ).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "approval_timed_out"

    @pytest.mark.asyncio
    async def test_approval_skip(self) -> None:
        agent = FakeAgent([agent_result(READY)])
        config = make_config(interactive={"on_reject": "fail"})

        result = await make_driver(config, agent, gate=rejecting_gate(skip=True)).run(TASK)

        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "approval_skipped"

    @pytest.mark.asyncio
    async def test_no_pull_request(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY), agent_result("<promise>COMPLETE</promise>")])

        result = await make_driver(make_config(), agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "no_pull_request"

    @pytest.mark.asyncio
    async def test_auto_merge(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY), agent_result(PR_DONE)])
        tracker = MagicMock()
        tracker.merge_pull_request = AsyncMock(return_value=True)
        notifier = MagicMock()
        config = make_config(iteration={"auto_merge": True})

        result = await make_driver(
            config, agent, tracker=tracker, notifier=notifier, tmp_path=tmp_path
        ).run(TASK)

        assert result.outcome.status == "success"
        assert result.outcome.auto_merged is True
        tracker.merge_pull_request.assert_awaited_once_with(
            "https://github.com/acme/app/pull/7", "[AUTO-MERGE]"
        )
        assert notifier.send.call_args[0][0] == "auto_merge"

    @pytest.mark.asyncio
    async def test_agent_error_fails_task(self, tmp_path: Path) -> None:
        agent = FakeAgent([AgentError("claude not found")])

        result = await make_driver(make_config(), agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "agent_error"

    @pytest.mark.asyncio
    async def test_interrupt_stops_agent(self, tmp_path: Path) -> None:
        agent = FakeAgent(hang=True)
        stop_event = asyncio.Event()
        driver = make_driver(make_config(), agent, stop_event=stop_event, tmp_path=tmp_path)
        asyncio.get_running_loop().call_later(0.05, stop_event.set)

        result = await asyncio.wait_for(driver.run(TASK), timeout=2)

        assert agent.stopped is True
        assert result.interrupted is True
        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "interrupted"

    @pytest.mark.asyncio
    async def test_task_timeout(self, tmp_path: Path) -> None:
        agent = FakeAgent(hang=True)
        config = make_config(iteration={"task_timeout": 0.001})

        result = await asyncio.wait_for(
            make_driver(config, agent, tmp_path=tmp_path).run(TASK), timeout=2
        )

        assert agent.stopped is True
        assert result.outcome.status == "failed"
        assert result.outcome.reason == "timeout"

    @pytest.mark.asyncio
    async def test_dry_run_single_invocation(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result("I would edit app.py", 5.0)])
        config = make_config(dry_run=True, budget={"per_task_limit": 1.0})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "success"
        assert result.outcome.reason == "dry_run"
        assert result.outcome.pr_reference is None
        assert len(agent.calls) == 1
        assert "DRY RUN" in agent.calls[0][0]

    @pytest.mark.asyncio
    async def test_custom_prompt_template(self, tmp_path: Path) -> None:
        template = tmp_path / "prompt.md"
        template.write_text("Do #{{ISSUE_NUMBER}} on {{BRANCH_NAME}} {{UNKNOWN}}")
        agent = FakeAgent([agent_result(READY), agent_result(PR_DONE)])
        config = make_config(iteration={"prompt_template": str(template)})

        await make_driver(config, agent, tmp_path=tmp_path).run(TASK, branch="b-42")

        assert agent.calls[0][0] == "Do #42 on b-42 {{UNKNOWN}}"

    def test_missing_prompt_template(self, tmp_path: Path) -> None:
        config = make_config(iteration={"prompt_template": str(tmp_path / "absent.md")})

        with pytest.raises(ConfigurationError):
            make_driver(config, FakeAgent(), tmp_path=tmp_path)


class TestPullRequestPhaseBudget:
    """Tests for spend during pull request creation."""

    @pytest.mark.asyncio
    async def test_task_limit_crossed_keeps_pull_request(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 0.5), agent_result(PR_DONE, 0.6)])
        notifier = MagicMock()
        config = make_config(budget={"per_task_limit": 1.0})

        result = await make_driver(
            config, agent, notifier=notifier, tmp_path=tmp_path
        ).run(TASK)

        assert result.outcome.status == "success"
        assert result.outcome.pr_reference == "https://github.com/acme/app/pull/7"
        assert result.outcome.cost_usd == pytest.approx(1.1)
        assert result.stop_session is False

    @pytest.mark.asyncio
    async def test_session_limit_crossed_stops_after_success(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 0.5), agent_result(PR_DONE, 0.6)])
        config = make_config(budget={"per_session_limit": 1.0})

        result = await make_driver(config, agent, tmp_path=tmp_path).run(TASK)

        assert result.outcome.status == "success"
        assert result.outcome.pr_reference is not None
        assert result.stop_session is True

    @pytest.mark.asyncio
    async def test_budget_exceeded_notified_once(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 0.5), agent_result(PR_DONE, 0.6)])
        notifier = MagicMock()
        config = make_config(budget={"per_task_limit": 1.0})

        await make_driver(config, agent, notifier=notifier, tmp_path=tmp_path).run(TASK)

        exceeded = [c[0][1] for c in notifier.send.call_args_list if c[0][0] == "budget_exceeded"]
        assert len(exceeded) == 1
        assert exceeded[0]["scope"] == "task"
        assert exceeded[0]["limit_usd"] == 1.0
        assert exceeded[0]["action"] == "skip_task"


class TestReviewFeedback:
    """Tests for phase 1 rejections that carry reviewer feedback."""

    @pytest.mark.asyncio
    async def test_feedback_sent_back_to_agent(self) -> None:
        agent = FakeAgent(
            [agent_result(READY), agent_result(READY), agent_result(PR_DONE)]
        )
        gate = scripted_gate(
            ApprovalDecision(
                "phase1",
                ApprovalStatus.REJECTED,
                proceed=False,
                feedback="Add a logout button too",
            ),
            approved("phase1"),
            approved("phase2"),
        )

        result = await make_driver(make_config(), agent, gate=gate).run(TASK)

        assert result.outcome.status == "success"
        assert result.outcome.iterations == 2
        prompt, continued = agent.calls[1]
        assert continued is True
        assert "HUMAN REVIEW FEEDBACK" in prompt
        assert "Add a logout button too" in prompt
        assert "Iteration Status: 2 of 5" in prompt
        assert [c[0][0] for c in gate.request.call_args_list] == ["phase1", "phase1", "phase2"]

    @pytest.mark.asyncio
    async def test_feedback_without_iterations_left_follows_on_reject(self) -> None:
        agent = FakeAgent([agent_result(READY)])
        gate = scripted_gate(
            ApprovalDecision(
                "phase1", ApprovalStatus.REJECTED, proceed=False, feedback="Not like this"
            )
        )
        config = make_config(iteration={"max_iterations": 1})

        result = await make_driver(config, agent, gate=gate).run(TASK)

        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "approval_rejected"
        assert len(agent.calls) == 1


class TestDriverHooks:
    """Tests for the hooks run by the driver."""

    @pytest.mark.asyncio
    async def test_hook_order(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY), agent_result(PR_DONE)])
        tracker = MagicMock()
        tracker.merge_pull_request = AsyncMock(return_value=True)
        hooks = recording_hooks()
        config = make_config(iteration={"auto_merge": True})

        await make_driver(
            config, agent, tracker=tracker, tmp_path=tmp_path, hooks=hooks
        ).run(TASK, branch="b-42")

        names = [c[0][0] for c in hooks.run.call_args_list]
        assert names == ["post_implementation", "pre_pr", "post_pr", "post_merge"]
        post_pr_context = hooks.run.call_args_list[2][0][1]
        assert post_pr_context.pr_reference == "https://github.com/acme/app/pull/7"
        assert post_pr_context.branch == "b-42"

    @pytest.mark.asyncio
    async def test_pre_pr_abort_fails_task(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY), agent_result(PR_DONE)])
        hooks = recording_hooks(failing="pre_pr")

        result = await make_driver(
            make_config(), agent, tmp_path=tmp_path, hooks=hooks
        ).run(TASK)

        assert result.outcome.status == "failed"
        assert result.outcome.reason == "hook_aborted"
        assert len(agent.calls) == 1

    @pytest.mark.asyncio
    async def test_budget_warning_hook(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY, 0.9), agent_result(PR_DONE)])
        hooks = recording_hooks()
        config = make_config(budget={"per_task_limit": 1.0})

        await make_driver(config, agent, tmp_path=tmp_path, hooks=hooks).run(TASK)

        names = [c[0][0] for c in hooks.run.call_args_list]
        assert names.count("on_budget_warning") == 1
        assert names[0] == "on_budget_warning"
        assert hooks.run.call_args_list[0][0][1].task_cost == pytest.approx(0.9)


class TestInterruptedVerification:
    """Tests for a stop request while tests are running."""

    @pytest.mark.asyncio
    async def test_stop_during_tests_skips_task(self, tmp_path: Path) -> None:
        agent = FakeAgent([agent_result(READY)])
        stop_event = asyncio.Event()
        config = make_config(iteration={"test_command": "sleep 30"})
        driver = make_driver(config, agent, stop_event=stop_event, tmp_path=tmp_path)
        asyncio.get_running_loop().call_later(0.2, stop_event.set)

        result = await asyncio.wait_for(driver.run(TASK), timeout=5)

        assert result.interrupted is True
        assert result.outcome.status == "skipped"
        assert result.outcome.reason == "interrupted"
