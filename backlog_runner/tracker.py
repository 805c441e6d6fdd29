"""Issue tracker boundary.

TaskTracker is the interface the control loop consumes. GitHubTracker backs
it with the `gh` CLI and a GitHub Projects board: tasks are issues in the
Ready column, and moves update the board's Status field.
"""

import asyncio
import json
import logging
import re
from typing import Any, Iterable, Protocol, Sequence

from backlog_runner.config import GitHubConfig
from backlog_runner.errors import TrackerError
from backlog_runner.models import Task

logger = logging.getLogger(__name__)

# Read queries are retried; mutations are not
READ_ATTEMPTS = 3
RETRY_BASE_DELAY = 1.0


class TaskTracker(Protocol):
    """What the runner needs from an issue tracker."""

    async def list_ready_tasks(self) -> Sequence[Task]: ...

    async def is_task_closed(self, task_id: int) -> bool: ...

    async def get_linked_blocking_ids(self, task_id: int) -> Iterable[int]: ...

    async def move_task(self, task: Task, column: str) -> None: ...

    async def set_labels(self, task_id: int, labels: Iterable[str]) -> None: ...

    async def merge_pull_request(self, pr_reference: str, subject_prefix: str) -> bool: ...


def pr_number(pr_reference: str) -> int | None:
    match = re.search(r"/pull/(\d+)", pr_reference) or re.fullmatch(
        r"#?(\d+)", pr_reference.strip()
    )
    return int(match.group(1)) if match else None


class GitHubTracker:
    """TaskTracker over the GitHub CLI.

    Args:
        config: Repository, project number and column names
        gh_command: Path or name of the gh executable
    """

    def __init__(self, config: GitHubConfig, gh_command: str = "gh") -> None:
        if not config.repo or config.project_number is None:
            raise TrackerError(
                "github.repo and github.project_number must be configured",
                error_code="TRACKER-NotConfigured",
            )
        self.config = config
        self.repo = config.repo
        self.owner = config.repo.split("/", 1)[0]
        self.gh_command = gh_command
        self._project_id: str | None = None
        self._status_field_id: str | None = None
        self._status_options: dict[str, str] = {}
        self._done_cache: set[int] | None = None

    async def _gh(self, *args: str) -> str:
        """Run gh once and return stdout.

        Raises:
            TrackerError: If gh is missing or exits non-zero
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.gh_command,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TrackerError(
                f"GitHub CLI not found: {self.gh_command}",
                error_code="TRACKER-CliMissing",
            ) from e
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise TrackerError(
                f"gh {' '.join(args[:3])} failed: {stderr.decode().strip()}",
                error_code="TRACKER-CommandFailed",
                details={"args": list(args), "returncode": process.returncode},
            )
        return stdout.decode()

    async def _query(self, *args: str) -> Any:
        """Run a read-only gh command returning JSON, with retries."""
        delay = RETRY_BASE_DELAY
        for attempt in range(1, READ_ATTEMPTS + 1):
            try:
                output = await self._gh(*args)
                return json.loads(output) if output.strip() else None
            except (TrackerError, json.JSONDecodeError) as e:
                if attempt == READ_ATTEMPTS:
                    if isinstance(e, TrackerError):
                        raise
                    raise TrackerError(
                        f"Unparseable gh output: {e}", error_code="TRACKER-BadOutput"
                    ) from e
                logger.warning(
                    f"Tracker query failed (attempt {attempt}/{READ_ATTEMPTS}): {e}"
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    async def _project_items(self) -> list[dict[str, Any]]:
        data = await self._query(
            "project",
            "item-list",
            str(self.config.project_number),
            "--owner",
            self.owner,
            "--format",
            "json",
            "--limit",
            "200",
        )
        return list((data or {}).get("items", []))

    async def list_ready_tasks(self) -> list[Task]:
        """Issues in the Ready column, in board order."""
        items = await self._project_items()
        self._done_cache = {
            item["content"]["number"]
            for item in items
            if item.get("status") == self.config.done_column
            and item.get("content", {}).get("type") == "Issue"
        }
        tasks = []
        for item in items:
            content = item.get("content", {})
            if item.get("status") != self.config.ready_column:
                continue
            if content.get("type") != "Issue":
                continue
            tasks.append(
                Task(
                    id=int(content["number"]),
                    title=content.get("title", ""),
                    body=content.get("body", "") or "",
                    labels=frozenset(item.get("labels", []) or []),
                    column=self.config.ready_column,
                    url=content.get("url", ""),
                    item_id=item.get("id"),
                )
            )
        return tasks

    async def is_task_closed(self, task_id: int) -> bool:
        """Closed issues and issues in the Done column count as complete."""
        data = await self._query(
            "issue", "view", str(task_id), "--repo", self.repo, "--json", "state"
        )
        if (data or {}).get("state") == "CLOSED":
            return True
        return self._done_cache is not None and task_id in self._done_cache

    async def get_linked_blocking_ids(self, task_id: int) -> list[int]:
        """Issues cross-referenced from this issue's timeline."""
        data = await self._query(
            "api", f"repos/{self.repo}/issues/{task_id}/timeline", "--paginate"
        )
        linked = set()
        for event in data or []:
            if event.get("event") != "cross-referenced":
                continue
            number = event.get("source", {}).get("issue", {}).get("number")
            if number is not None:
                linked.add(int(number))
        return sorted(linked)

    async def _load_board_fields(self) -> None:
        if self._project_id is not None:
            return
        project = await self._query(
            "project",
            "view",
            str(self.config.project_number),
            "--owner",
            self.owner,
            "--format",
            "json",
        )
        fields = await self._query(
            "project",
            "field-list",
            str(self.config.project_number),
            "--owner",
            self.owner,
            "--format",
            "json",
        )
        status = next(
            (f for f in (fields or {}).get("fields", []) if f.get("name") == "Status"),
            None,
        )
        if not project or status is None:
            raise TrackerError(
                "Project board has no Status field", error_code="TRACKER-NoStatusField"
            )
        self._project_id = project["id"]
        self._status_field_id = status["id"]
        self._status_options = {o["name"]: o["id"] for o in status.get("options", [])}

    async def move_task(self, task: Task, column: str) -> None:
        """Set the board Status of a task's project item."""
        if not task.item_id:
            raise TrackerError(
                f"Task #{task.id} has no project item id",
                error_code="TRACKER-NoItem",
            )
        await self._load_board_fields()
        option_id = self._status_options.get(column)
        if option_id is None:
            raise TrackerError(
                f"Column '{column}' not found in project",
                error_code="TRACKER-UnknownColumn",
            )
        assert self._project_id is not None and self._status_field_id is not None
        await self._gh(
            "project",
            "item-edit",
            "--project-id",
            self._project_id,
            "--id",
            task.item_id,
            "--field-id",
            self._status_field_id,
            "--single-select-option-id",
            option_id,
        )
        logger.info(f"Moved task #{task.id} to '{column}'")

    async def set_labels(self, task_id: int, labels: Iterable[str]) -> None:
        """Make the issue's labels exactly `labels`."""
        data = await self._query(
            "issue", "view", str(task_id), "--repo", self.repo, "--json", "labels"
        )
        current = {label["name"] for label in (data or {}).get("labels", [])}
        wanted = set(labels)
        args = ["issue", "edit", str(task_id), "--repo", self.repo]
        for name in sorted(wanted - current):
            args += ["--add-label", name]
        for name in sorted(current - wanted):
            args += ["--remove-label", name]
        if len(args) > 5:
            await self._gh(*args)

    async def merge_pull_request(self, pr_reference: str, subject_prefix: str) -> bool:
        """Squash-merge a PR, falling back to a merge commit.

        Returns:
            True if the PR was merged
        """
        number = pr_number(pr_reference)
        if number is None:
            logger.warning(f"Cannot merge, no PR number in {pr_reference!r}")
            return False

        pr = await self._query(
            "pr", "view", str(number), "--repo", self.repo, "--json", "title"
        )
        subject = f"{subject_prefix} {(pr or {}).get('title', '')}".strip()
        try:
            await self._gh(
                "pr", "merge", str(number), "--repo", self.repo,
                "--squash", "--delete-branch", "--subject", subject,
            )
        except TrackerError as e:
            logger.warning(f"Squash merge of PR #{number} failed ({e}), trying merge commit")
            try:
                await self._gh(
                    "pr", "merge", str(number), "--repo", self.repo,
                    "--merge", "--delete-branch",
                )
            except TrackerError as e2:
                logger.error(f"Failed to merge PR #{number}: {e2}")
                return False
        logger.info(f"Merged PR #{number}")
        return True
