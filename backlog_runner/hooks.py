"""Lifecycle hook scripts.

Users can attach an executable to named points of a task's life (pre_task,
post_implementation, pre_pr, post_pr, post_merge, on_failure,
on_budget_warning). Each script runs with the task context in
BACKLOG_RUNNER_* environment variables and is killed after its timeout.

A hook never fails the runner. A missing script, a non-zero exit or a
timeout is logged; only a hook configured with can_abort turns a failure
into an abort of the phase it guards.
"""

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path

from backlog_runner.config import HookConfig, HooksConfig
from backlog_runner.models import Task

logger = logging.getLogger(__name__)

ENV_PREFIX = "BACKLOG_RUNNER_"


@dataclass
class HookContext:
    """What a hook script is told about the task in flight."""

    task: Task | None = None
    branch: str = ""
    base_branch: str = ""
    repo: str = ""
    pr_reference: str | None = None
    task_cost: float = 0.0
    session_cost: float = 0.0
    iteration: int = 0
    max_iterations: int = 0

    def environment(self, hook_name: str) -> dict[str, str]:
        task = self.task
        values = {
            "HOOK_NAME": hook_name,
            "PHASE": hook_name,
            "ISSUE_NUMBER": str(task.id) if task else "",
            "ISSUE_TITLE": task.title if task else "",
            "ISSUE_URL": task.url if task else "",
            "BRANCH": self.branch,
            "BASE_BRANCH": self.base_branch,
            "REPO": self.repo,
            "PR_URL": self.pr_reference or "",
            "COST": f"{self.task_cost:.4f}",
            "SESSION_COST": f"{self.session_cost:.4f}",
            "ITERATION": str(self.iteration),
            "MAX_ITERATIONS": str(self.max_iterations),
        }
        return {f"{ENV_PREFIX}{key}": value for key, value in values.items()}


@dataclass
class HookResult:
    """Outcome of one hook execution.

    Attributes:
        name: Hook name
        exit_code: Script exit status, None when it was killed on timeout
        output: Combined stdout and stderr
        duration_seconds: Wall time of the run
        timed_out: The script exceeded its timeout
        aborted: The failure aborts the guarded phase (can_abort was set)
    """

    name: str
    exit_code: int | None
    output: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    aborted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class HookRunner:
    """Runs configured lifecycle hooks.

    Args:
        config: Hooks section of the runner configuration
        base_dir: Directory relative script paths are resolved against
            (the state directory)
        cwd: Working directory for the scripts (the repository checkout)
    """

    def __init__(
        self, config: HooksConfig, base_dir: Path, cwd: Path | None = None
    ) -> None:
        self.config = config
        self.base_dir = base_dir
        self.cwd = cwd

    def resolve(self, script: str) -> Path:
        path = Path(script).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    async def run(self, name: str, context: HookContext) -> bool:
        """Run a hook if it is configured.

        Returns:
            False only when the hook failed and may abort (can_abort);
            True otherwise, including when nothing is configured
        """
        result = await self.execute(name, context)
        return result is None or not result.aborted

    async def execute(self, name: str, context: HookContext) -> HookResult | None:
        """Run a hook and report what happened.

        Returns:
            HookResult, or None when the hook is not configured, disabled,
            missing or not executable
        """
        hook = self.config.get(name)
        if hook is None:
            return None
        if not hook.enabled:
            logger.debug(f"Hook {name}: disabled")
            return None

        script = self.resolve(hook.script)
        if not script.is_file():
            logger.warning(f"Hook {name}: script not found: {script}")
            return None
        if not os.access(script, os.X_OK):
            logger.warning(f"Hook {name}: script not executable: {script} (chmod +x)")
            return None

        logger.info(f"Running hook: {name}")
        result = await self._run_script(name, hook, script, context)

        if result.succeeded:
            logger.info(f"Hook {name} completed ({result.duration_seconds:.1f}s)")
            if result.output:
                logger.debug(f"Hook {name} output: {result.output[:1000]}")
            return result

        if result.timed_out:
            logger.warning(f"Hook {name} timed out after {hook.timeout:.0f}s")
        else:
            logger.warning(
                f"Hook {name} failed with exit code {result.exit_code} "
                f"({result.duration_seconds:.1f}s): {result.output.strip()[:1000]}"
            )
        if hook.can_abort:
            logger.error(f"Hook {name}: aborting (can_abort=true)")
            result.aborted = True
        else:
            logger.info("Continuing despite hook failure (can_abort=false)")
        return result

    async def _run_script(
        self, name: str, hook: HookConfig, script: Path, context: HookContext
    ) -> HookResult:
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                str(script),
                cwd=str(self.cwd) if self.cwd else None,
                env={**os.environ, **context.environment(name)},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            return HookResult(name=name, exit_code=None, output=str(e))

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=hook.timeout)
        except asyncio.TimeoutError:
            kill_process_group(process)
            await process.wait()
            return HookResult(
                name=name,
                exit_code=None,
                duration_seconds=time.monotonic() - started,
                timed_out=True,
            )
        return HookResult(
            name=name,
            exit_code=process.returncode,
            output=stdout.decode(errors="replace"),
            duration_seconds=time.monotonic() - started,
        )


def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """SIGKILL a process started with start_new_session and its children."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # already exited
