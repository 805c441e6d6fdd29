"""Tests for the GitHub tracker.

All gh invocations are mocked at the _gh boundary.
"""

import json
from unittest.mock import AsyncMock, patch

import pytest

from backlog_runner.config import GitHubConfig
from backlog_runner.errors import TrackerError
from backlog_runner.models import Task
from backlog_runner.tracker import GitHubTracker, pr_number

CONFIG = GitHubConfig(repo="acme/app", project_number=3)

ITEMS = {
    "items": [
        {
            "id": "PVTI_1",
            "status": "Ready",
            "labels": ["P1"],
            "content": {"type": "Issue", "number": 10, "title": "First", "body": "b", "url": "u10"},
        },
        {
            "id": "PVTI_2",
            "status": "Done",
            "content": {"type": "Issue", "number": 11, "title": "Finished"},
        },
        {
            "id": "PVTI_3",
            "status": "Ready",
            "content": {"type": "DraftIssue", "title": "Draft"},
        },
        {
            "id": "PVTI_4",
            "status": "Ready",
            "content": {"type": "Issue", "number": 12, "title": "Second", "body": None},
        },
    ]
}


def make_tracker() -> GitHubTracker:
    return GitHubTracker(CONFIG)


class TestPrNumber:
    """Tests for pr_number()."""

    def test_from_url(self) -> None:
        assert pr_number("https://github.com/acme/app/pull/17") == 17

    def test_from_number(self) -> None:
        assert pr_number("#5") == 5
        assert pr_number("5") == 5

    def test_unparseable(self) -> None:
        assert pr_number("main") is None


class TestGitHubTracker:
    """Tests for GitHubTracker."""

    def test_requires_repo_and_project(self) -> None:
        with pytest.raises(TrackerError):
            GitHubTracker(GitHubConfig())

    @pytest.mark.asyncio
    async def test_list_ready_tasks(self) -> None:
        """Only issues in the Ready column are returned, in board order."""
        tracker = make_tracker()
        with patch.object(tracker, "_gh", AsyncMock(return_value=json.dumps(ITEMS))):
            tasks = await tracker.list_ready_tasks()

        assert [t.id for t in tasks] == [10, 12]
        assert tasks[0].labels == frozenset({"P1"})
        assert tasks[0].item_id == "PVTI_1"
        assert tasks[1].body == ""

    @pytest.mark.asyncio
    async def test_done_column_counts_as_closed(self) -> None:
        tracker = make_tracker()
        gh = AsyncMock(
            side_effect=[json.dumps(ITEMS), json.dumps({"state": "OPEN"})]
        )
        with patch.object(tracker, "_gh", gh):
            await tracker.list_ready_tasks()
            assert await tracker.is_task_closed(11) is True

    @pytest.mark.asyncio
    async def test_closed_issue(self) -> None:
        tracker = make_tracker()
        with patch.object(tracker, "_gh", AsyncMock(return_value='{"state": "CLOSED"}')):
            assert await tracker.is_task_closed(4) is True

    @pytest.mark.asyncio
    async def test_query_retries_then_succeeds(self) -> None:
        tracker = make_tracker()
        gh = AsyncMock(
            side_effect=[TrackerError("flaky"), json.dumps({"state": "OPEN"})]
        )
        with patch.object(tracker, "_gh", gh), patch(
            "backlog_runner.tracker.asyncio.sleep", AsyncMock()
        ):
            assert await tracker.is_task_closed(4) is False

        assert gh.await_count == 2

    @pytest.mark.asyncio
    async def test_query_gives_up_after_three_attempts(self) -> None:
        tracker = make_tracker()
        gh = AsyncMock(side_effect=TrackerError("down"))
        with patch.object(tracker, "_gh", gh), patch(
            "backlog_runner.tracker.asyncio.sleep", AsyncMock()
        ):
            with pytest.raises(TrackerError):
                await tracker.list_ready_tasks()

        assert gh.await_count == 3

    @pytest.mark.asyncio
    async def test_linked_blocking_ids(self) -> None:
        timeline = [
            {"event": "cross-referenced", "source": {"issue": {"number": 8}}},
            {"event": "labeled"},
            {"event": "cross-referenced", "source": {"issue": {"number": 3}}},
        ]
        tracker = make_tracker()
        with patch.object(tracker, "_gh", AsyncMock(return_value=json.dumps(timeline))):
            assert await tracker.get_linked_blocking_ids(10) == [3, 8]

    @pytest.mark.asyncio
    async def test_move_task(self) -> None:
        tracker = make_tracker()
        fields = {
            "fields": [
                {
                    "id": "FIELD_1",
                    "name": "Status",
                    "options": [{"id": "OPT_R", "name": "Ready"}, {"id": "OPT_P", "name": "In Progress"}],
                }
            ]
        }
        gh = AsyncMock(side_effect=[json.dumps({"id": "PROJ_1"}), json.dumps(fields), ""])
        task = Task(id=10, title="First", item_id="PVTI_1")

        with patch.object(tracker, "_gh", gh):
            await tracker.move_task(task, "In Progress")

        edit_args = gh.call_args_list[-1][0]
        assert edit_args[:2] == ("project", "item-edit")
        assert "OPT_P" in edit_args
        assert "PVTI_1" in edit_args

    @pytest.mark.asyncio
    async def test_move_task_unknown_column(self) -> None:
        tracker = make_tracker()
        fields = {"fields": [{"id": "F", "name": "Status", "options": []}]}
        gh = AsyncMock(side_effect=[json.dumps({"id": "PROJ_1"}), json.dumps(fields)])

        with patch.object(tracker, "_gh", gh):
            with pytest.raises(TrackerError):
                await tracker.move_task(Task(id=1, title="t", item_id="X"), "Nowhere")

    @pytest.mark.asyncio
    async def test_set_labels_diffs_current(self) -> None:
        tracker = make_tracker()
        current = {"labels": [{"name": "bug"}, {"name": "stale"}]}
        gh = AsyncMock(side_effect=[json.dumps(current), ""])

        with patch.object(tracker, "_gh", gh):
            await tracker.set_labels(10, ["bug", "needs-attention"])

        edit_args = gh.call_args_list[-1][0]
        assert "--add-label" in edit_args
        assert edit_args[edit_args.index("--add-label") + 1] == "needs-attention"
        assert edit_args[edit_args.index("--remove-label") + 1] == "stale"

    @pytest.mark.asyncio
    async def test_merge_falls_back_to_merge_commit(self) -> None:
        tracker = make_tracker()
        gh = AsyncMock(
            side_effect=[json.dumps({"title": "Fix"}), TrackerError("squash disabled"), ""]
        )

        with patch.object(tracker, "_gh", gh):
            merged = await tracker.merge_pull_request(
                "https://github.com/acme/app/pull/9", "[AUTO-MERGE]"
            )

        assert merged is True
        squash_args = gh.call_args_list[1][0]
        assert "--squash" in squash_args
        assert "[AUTO-MERGE] Fix" in squash_args
        assert "--merge" in gh.call_args_list[2][0]

    @pytest.mark.asyncio
    async def test_merge_failure_returns_false(self) -> None:
        tracker = make_tracker()
        gh = AsyncMock(
            side_effect=[json.dumps({"title": "Fix"}), TrackerError("no"), TrackerError("no")]
        )

        with patch.object(tracker, "_gh", gh):
            assert await tracker.merge_pull_request("#9", "[AUTO-MERGE]") is False
