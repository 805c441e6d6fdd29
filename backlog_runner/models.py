"""Data models for the backlog runner.

Defines dataclasses for tracker tasks, agent stream events, agent results,
and task outcomes. Outcomes are JSON serializable via dataclasses.asdict()
for the session and metrics stores.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

OutcomeStatus = Literal["success", "skipped", "failed"]


class Priority(str, Enum):
    """Priority class derived from a task's labels."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


@dataclass(frozen=True)
class Task:
    """A backlog item read from the issue tracker.

    The runner never mutates a Task; column and label transitions are
    performed through the tracker.
    """

    id: int
    title: str
    body: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)
    column: str = ""
    url: str = ""
    # Tracker-side handle for board moves (project item id)
    item_id: str | None = None


@dataclass
class AgentEvent:
    """One event parsed from the agent's stream-json output.

    kind values:
        text: Assistant text output
        tool_use: Assistant invoked a tool (tool_name/tool_input set)
        result: Terminal result event (cost_delta set)
    """

    kind: Literal["text", "tool_use", "result"]
    text: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    cost_delta: float = 0.0


@dataclass
class AgentResult:
    """Terminal result of one agent invocation."""

    exit_code: int
    cost_usd: float
    output: str
    is_error: bool = False
    session_id: str = ""
    pr_reference: str | None = None
    interrupted: bool = False


@dataclass
class TaskOutcome:
    """Outcome of running one task.

    Status values:
        success: Agent completed and (outside dry-run) produced a PR
        skipped: Task was passed over by budget, approval, or interrupt
        failed: Task ran but did not complete
    """

    task_id: int
    title: str
    status: OutcomeStatus
    elapsed_seconds: float
    cost_usd: float
    pr_reference: str | None = None
    reason: str | None = None
    priority: str = Priority.NORMAL.value
    iterations: int = 0
    auto_merged: bool = False
    started_at: str | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the metrics and session stores."""
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "cost_usd": round(self.cost_usd, 6),
            "pr_reference": self.pr_reference,
            "reason": self.reason,
            "priority": self.priority,
            "iterations": self.iterations,
            "auto_merged": self.auto_merged,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskOutcome":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
