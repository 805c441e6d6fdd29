"""Task selection: priority ordering plus dependency filtering."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

from backlog_runner.dependencies import BlockCheck, DependencyResolver
from backlog_runner.models import Priority, Task
from backlog_runner.priority import classify, priority_ordinal

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    """Outcome of one selection pass.

    Attributes:
        task: The task to run next, or None when nothing is runnable
        priority: Priority class of the selected task
        skipped: Blocked tasks passed over, in the order they were checked
        candidate_count: Number of candidates considered
    """

    task: Task | None
    priority: Priority = Priority.NORMAL
    skipped: list[BlockCheck] = field(default_factory=list)
    candidate_count: int = 0

    @property
    def empty(self) -> bool:
        return self.task is None


class TaskSelector:
    """Picks the next runnable task from tracker candidates."""

    def __init__(
        self,
        resolver: DependencyResolver,
        label_sets: Mapping[Priority, Iterable[str]],
        priority_enabled: bool = True,
    ) -> None:
        self.resolver = resolver
        self.label_sets = label_sets
        self.priority_enabled = priority_enabled

    def order(self, candidates: Sequence[Task]) -> list[tuple[Task, Priority]]:
        """Order candidates by ascending priority ordinal.

        sorted() is stable, so tracker order is kept among equal priorities.
        With priority ordering disabled, tracker order is kept as-is.
        """
        classified = [(t, classify(t.labels, self.label_sets)) for t in candidates]
        if not self.priority_enabled:
            return classified
        return sorted(classified, key=lambda pair: priority_ordinal(pair[1]))

    async def select_next(
        self, candidates: Sequence[Task], ignore_dependencies: bool = False
    ) -> SelectionResult:
        """Return the first unblocked task in priority order.

        Args:
            candidates: Tasks in tracker order
            ignore_dependencies: Skip dependency checks for this pass

        Returns:
            SelectionResult; task is None if there are no candidates or
            every candidate is blocked
        """
        result = SelectionResult(task=None, candidate_count=len(candidates))

        for task, priority in self.order(candidates):
            check = await self.resolver.check(task, ignore_dependencies)
            if check.blocked:
                result.skipped.append(check)
                continue
            result.task = task
            result.priority = priority
            break

        if result.task is None and result.skipped:
            logger.info(
                f"All {len(result.skipped)} candidate task(s) are blocked by dependencies"
            )
        return result
