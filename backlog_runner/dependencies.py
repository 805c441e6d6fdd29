"""Dependency resolution for backlog tasks.

Parses "depends on #12, #34 and #56" style references out of a task body and
answers whether a task is currently blocked by any unfinished dependency.
Parsing is pure; completion lookups go through an injected predicate.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from backlog_runner.models import Task

logger = logging.getLogger(__name__)

DEFAULT_PATTERNS = ("depends on", "blocked by", "requires")

CompletionPredicate = Callable[[int], Awaitable[bool]]
LinkedIssuesLookup = Callable[[int], Awaitable[Iterable[int]]]


def _build_pattern(patterns: Iterable[str]) -> re.Pattern[str]:
    triggers = "|".join(re.escape(p) for p in patterns)
    # trigger, optional separators, then one or more #N joined by commas or "and"
    return re.compile(
        rf"(?:{triggers})[\s:]*(#\d+(?:\s*,\s*(?:and\s+)?#\d+|\s+and\s+#\d+)*)",
        re.IGNORECASE,
    )


def extract_dependency_ids(
    body: str | None, patterns: Iterable[str] = DEFAULT_PATTERNS
) -> list[int]:
    """Extract referenced task ids from free text.

    Matching is textual only; referenced ids are not validated.

    Args:
        body: Task body text
        patterns: Trigger phrases, matched case-insensitively

    Returns:
        Sorted, de-duplicated list of task ids (empty if none found)
    """
    patterns = [p for p in patterns if p]
    if not body or not patterns:
        return []

    ids: set[int] = set()
    for match in _build_pattern(patterns).finditer(body):
        ids.update(int(n) for n in re.findall(r"#(\d+)", match.group(1)))
    return sorted(ids)


@dataclass
class CacheEntry:
    dependency_ids: list[int]
    blocking_ids: list[int]
    created_at: float


@dataclass
class DependencyCache:
    """TTL cache of blocking checks, keyed by task id.

    Entries older than the timeout are treated as absent.
    """

    timeout_seconds: float = 300.0
    clock: Callable[[], float] = time.monotonic
    _entries: dict[int, CacheEntry] = field(default_factory=dict)

    def get(self, task_id: int) -> CacheEntry | None:
        entry = self._entries.get(task_id)
        if entry is None:
            return None
        if self.clock() - entry.created_at >= self.timeout_seconds:
            del self._entries[task_id]
            return None
        return entry

    def put(
        self, task_id: int, dependency_ids: list[int], blocking_ids: list[int]
    ) -> None:
        self._entries[task_id] = CacheEntry(
            dependency_ids=dependency_ids,
            blocking_ids=blocking_ids,
            created_at=self.clock(),
        )

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class BlockCheck:
    """Result of a blocking check."""

    task_id: int
    blocked: bool
    dependency_ids: list[int] = field(default_factory=list)
    blocking_ids: list[int] = field(default_factory=list)


class DependencyResolver:
    """Answers whether a task is blocked by unfinished dependencies.

    Args:
        is_completed: Async predicate answering "is this task closed/merged"
        patterns: Trigger phrases for body parsing
        cache: TTL cache for blocking checks
        enabled: Global dependency-checking switch
        linked_issues: Optional async lookup of tracker-linked blocking ids,
            used when linked-issue checking is enabled
    """

    def __init__(
        self,
        is_completed: CompletionPredicate,
        patterns: Iterable[str] = DEFAULT_PATTERNS,
        cache: DependencyCache | None = None,
        enabled: bool = True,
        linked_issues: LinkedIssuesLookup | None = None,
    ) -> None:
        self.is_completed = is_completed
        self.patterns = list(patterns)
        self.cache = cache if cache is not None else DependencyCache()
        self.enabled = enabled
        self.linked_issues = linked_issues

    async def check(self, task: Task, ignore_dependencies: bool = False) -> BlockCheck:
        """Check whether a task is blocked.

        Args:
            task: Task to check
            ignore_dependencies: Per-invocation override that skips checking

        Returns:
            BlockCheck with blocked flag and the ids still open
        """
        if not self.enabled or ignore_dependencies:
            return BlockCheck(task_id=task.id, blocked=False)

        cached = self.cache.get(task.id)
        if cached is not None:
            return BlockCheck(
                task_id=task.id,
                blocked=bool(cached.blocking_ids),
                dependency_ids=list(cached.dependency_ids),
                blocking_ids=list(cached.blocking_ids),
            )

        dependency_ids = set(extract_dependency_ids(task.body, self.patterns))
        if self.linked_issues is not None:
            dependency_ids.update(await self.linked_issues(task.id))
        dependency_ids.discard(task.id)

        blocking_ids = []
        for dep_id in sorted(dependency_ids):
            if not await self.is_completed(dep_id):
                blocking_ids.append(dep_id)

        self.cache.put(task.id, sorted(dependency_ids), blocking_ids)
        if blocking_ids:
            logger.info(
                f"Task #{task.id} blocked by "
                + ", ".join(f"#{i}" for i in blocking_ids)
            )
        return BlockCheck(
            task_id=task.id,
            blocked=bool(blocking_ids),
            dependency_ids=sorted(dependency_ids),
            blocking_ids=blocking_ids,
        )

    async def is_blocked(self, task: Task, ignore_dependencies: bool = False) -> bool:
        return (await self.check(task, ignore_dependencies)).blocked
