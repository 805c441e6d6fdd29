"""Session recording and persistence.

A session is one process run. The recorder keeps the ordered task outcomes in
memory, appends each outcome to the task-metrics store as it happens, and
persists the session record into the session-stats store. Both stores are
JSON files in the state directory and are the only data source for reports.

Session stats:  list of session records, one per run, keyed by session_id.
Task metrics:   {"version", "last_updated", "retention_days", "tasks": [...]}
"""

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from backlog_runner.errors import PersistenceError
from backlog_runner.models import TaskOutcome

logger = logging.getLogger(__name__)

SESSION_STATS_FILE = "session-stats.json"
TASK_METRICS_FILE = "task-metrics.json"
METRICS_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    with open(path) as f:
        return json.load(f)


@dataclass
class SessionSummary:
    """Aggregates over a session's task outcomes."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total_cost_usd: float = 0.0
    average_cost_usd: float = 0.0
    total_elapsed_seconds: float = 0.0
    average_elapsed_seconds: float = 0.0
    auto_merges: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: list[TaskOutcome]) -> "SessionSummary":
        total = len(outcomes)
        cost = sum(o.cost_usd for o in outcomes)
        elapsed = sum(o.elapsed_seconds for o in outcomes)
        return cls(
            total=total,
            succeeded=sum(1 for o in outcomes if o.status == "success"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
            skipped=sum(1 for o in outcomes if o.status == "skipped"),
            total_cost_usd=round(cost, 6),
            average_cost_usd=round(cost / total, 6) if total else 0.0,
            total_elapsed_seconds=round(elapsed, 3),
            average_elapsed_seconds=round(elapsed / total, 3) if total else 0.0,
            auto_merges=sum(1 for o in outcomes if o.auto_merged),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    """Persisted form of one run, read back by load_sessions()."""

    session_id: str
    started_at: str
    ended_at: str | None
    exit_reason: str | None
    dry_run: bool
    summary: SessionSummary
    tasks: list[TaskOutcome] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            started_at=data["started_at"],
            ended_at=data.get("ended_at"),
            exit_reason=data.get("exit_reason"),
            dry_run=data.get("dry_run", False),
            summary=SessionSummary(**data.get("summary", {})),
            tasks=[TaskOutcome.from_dict(t) for t in data.get("tasks", [])],
        )


class SessionRecorder:
    """Accumulates task outcomes for one run and persists them.

    Write failures are logged and counted; after max_failures consecutive
    failures a PersistenceError is raised so the caller can stop.

    Args:
        state_dir: Directory holding the stores
        retention_days: Task metrics older than this are pruned (0 keeps all)
        max_failures: Consecutive write failures tolerated
        dry_run: Marks the persisted record as a dry run
    """

    def __init__(
        self,
        state_dir: Path,
        retention_days: int = 30,
        max_failures: int = 3,
        dry_run: bool = False,
        session_id: str | None = None,
    ) -> None:
        self.state_dir = state_dir
        self.retention_days = retention_days
        self.max_failures = max_failures
        self.dry_run = dry_run
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.started_at = _utcnow()
        self.outcomes: list[TaskOutcome] = []
        self.exit_reason: str | None = None
        self.consecutive_failures = 0

    @property
    def stats_path(self) -> Path:
        return self.state_dir / SESSION_STATS_FILE

    @property
    def metrics_path(self) -> Path:
        return self.state_dir / TASK_METRICS_FILE

    def record_task(self, outcome: TaskOutcome) -> None:
        """Add an outcome to the session and append it to the metrics store."""
        self.outcomes.append(outcome)
        self._guarded("task metrics", lambda: self._append_metrics(outcome))

    def summarize(self) -> SessionSummary:
        return SessionSummary.from_outcomes(self.outcomes)

    def persist(self, exit_reason: str | None = None) -> bool:
        """Write this run's record, replacing any earlier write of the same run.

        Safe to call repeatedly. Earlier runs are never touched.

        Returns:
            True if the write succeeded
        """
        if exit_reason is not None:
            self.exit_reason = exit_reason
        return self._guarded("session stats", self._write_session)

    def to_record(self) -> SessionRecord:
        return SessionRecord(
            session_id=self.session_id,
            started_at=self.started_at.isoformat(),
            ended_at=_utcnow().isoformat(),
            exit_reason=self.exit_reason,
            dry_run=self.dry_run,
            summary=self.summarize(),
            tasks=list(self.outcomes),
        )

    def _guarded(self, what: str, write) -> bool:
        try:
            write()
        except (OSError, ValueError, TypeError) as e:
            self.consecutive_failures += 1
            logger.error(
                f"Failed to write {what} ({self.consecutive_failures}/"
                f"{self.max_failures} consecutive failures): {e}"
            )
            if self.consecutive_failures >= self.max_failures:
                raise PersistenceError(
                    f"Persistence unrecoverable after {self.consecutive_failures} "
                    f"consecutive failures: {e}",
                    error_code="PERSIST-Unrecoverable",
                    details={"state_dir": str(self.state_dir)},
                ) from e
            return False
        self.consecutive_failures = 0
        return True

    def _write_session(self) -> None:
        sessions = _read_json(self.stats_path, [])
        if not isinstance(sessions, list):
            raise ValueError(f"{self.stats_path} is not a list of sessions")

        record = self.to_record()
        data = {
            "session_id": record.session_id,
            "started_at": record.started_at,
            "ended_at": record.ended_at,
            "exit_reason": record.exit_reason,
            "dry_run": record.dry_run,
            "summary": record.summary.to_dict(),
            "tasks": [o.to_dict() for o in record.tasks],
        }
        sessions = [s for s in sessions if s.get("session_id") != self.session_id]
        sessions.append(data)
        _write_json(self.stats_path, sessions)

    def _append_metrics(self, outcome: TaskOutcome) -> None:
        store = _read_json(self.metrics_path, None)
        if store is None:
            store = {"version": METRICS_VERSION, "tasks": []}
        if not isinstance(store, dict) or not isinstance(store.get("tasks"), list):
            raise ValueError(f"{self.metrics_path} is not a task metrics store")

        entry = outcome.to_dict()
        entry["session_id"] = self.session_id
        entry["recorded_at"] = _utcnow().isoformat()
        store["tasks"] = prune_metrics(store["tasks"], self.retention_days) + [entry]
        store["version"] = METRICS_VERSION
        store["retention_days"] = self.retention_days
        store["last_updated"] = entry["recorded_at"]
        _write_json(self.metrics_path, store)


def prune_metrics(
    tasks: list[dict[str, Any]], retention_days: int, now: datetime | None = None
) -> list[dict[str, Any]]:
    """Drop metric entries recorded more than retention_days ago."""
    if retention_days <= 0:
        return list(tasks)
    cutoff = (now or _utcnow()) - timedelta(days=retention_days)
    kept = []
    for entry in tasks:
        recorded = entry.get("recorded_at")
        try:
            if recorded and datetime.fromisoformat(recorded) < cutoff:
                continue
        except ValueError:
            pass  # keep entries with unparseable timestamps
        kept.append(entry)
    return kept


def load_sessions(state_dir: Path) -> list[SessionRecord]:
    """All persisted sessions, oldest first."""
    data = _read_json(state_dir / SESSION_STATS_FILE, [])
    return [SessionRecord.from_dict(s) for s in data]


def load_task_metrics(state_dir: Path) -> list[dict[str, Any]]:
    data = _read_json(state_dir / TASK_METRICS_FILE, {"tasks": []})
    return list(data.get("tasks", []))
