"""Budget tracking for task and session spend.

The ledger owns two counters: the task counter is reset at the start of every
task, the session counter only ever grows. Each counter fires its warning at
most once per scope and, once exceeded, stays exceeded until reset.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from backlog_runner import telemetry
from backlog_runner.config import BudgetConfig

logger = logging.getLogger(__name__)


def _to_decimal(value: float | int | str | Decimal) -> Decimal:
    # str() first so 0.6 stays 0.6 and sums compare exactly against limits
    return value if isinstance(value, Decimal) else Decimal(str(value))


class BudgetCounter:
    """Cost counter for one budget scope.

    A limit of None or 0 means unlimited: percentage() is 0 and the warning
    and exceeded checks never fire.
    """

    def __init__(
        self,
        scope: str,
        limit: float | None = None,
        warning_threshold: int = 80,
    ) -> None:
        self.scope = scope
        self.limit = _to_decimal(limit) if limit else None
        self.warning_threshold = warning_threshold
        self.cost = Decimal("0")
        self.warned = False
        self.exceeded = False

    @property
    def unlimited(self) -> bool:
        return self.limit is None or self.limit <= 0

    def add_cost(self, amount: float | Decimal) -> None:
        delta = _to_decimal(amount)
        if delta < 0:
            raise ValueError(f"Cost delta must be non-negative, got {amount}")
        self.cost += delta

    def percentage(self) -> int:
        """Percentage of the limit spent, rounded down."""
        limit = self.limit
        if limit is None or limit <= 0:
            return 0
        return int((self.cost * 100) // limit)

    def check_warning(self) -> bool:
        """True exactly once, when spend first sits in [threshold, 100) percent."""
        if self.unlimited or self.warned:
            return False
        pct = self.percentage()
        if self.warning_threshold <= pct < 100:
            self.warned = True
            return True
        return False

    def check_exceeded(self) -> bool:
        """True once spend reaches the limit; never reverts before reset()."""
        if self.exceeded:
            return True
        limit = self.limit
        if limit is None or limit <= 0:
            return False
        if self.cost >= limit:
            self.exceeded = True
        return self.exceeded

    def reset(self) -> None:
        self.cost = Decimal("0")
        self.warned = False
        self.exceeded = False

    def describe(self) -> str:
        if self.unlimited:
            return f"{self.scope}: ${self.cost:.2f} (unlimited)"
        return (
            f"{self.scope}: ${self.cost:.2f} / ${self.limit:.2f} "
            f"({self.percentage()}%)"
        )


class BudgetAction(str, Enum):
    CONTINUE = "continue"
    SKIP_TASK = "skip_task"
    FAIL_TASK = "fail_task"
    STOP_SESSION = "stop_session"


@dataclass
class BudgetDecision:
    """Result of evaluating the ledger after a cost update.

    Attributes:
        action: What the caller must do next
        warnings: Scopes whose warning fired during this evaluation
        exceeded_scope: "task" or "session" when a limit was hit
        newly_exceeded: The limit was first hit during this evaluation
    """

    action: BudgetAction = BudgetAction.CONTINUE
    warnings: list[str] = field(default_factory=list)
    exceeded_scope: str | None = None
    newly_exceeded: bool = False

    @property
    def aborts_task(self) -> bool:
        return self.action is not BudgetAction.CONTINUE


_TASK_ACTIONS = {
    "skip": BudgetAction.SKIP_TASK,
    "fail": BudgetAction.FAIL_TASK,
    "warn": BudgetAction.CONTINUE,
}


class BudgetLedger:
    """Task and session budget state, owned by the control loop.

    All checks are bypassed when dry_run is set.
    """

    def __init__(self, config: BudgetConfig, dry_run: bool = False) -> None:
        self.config = config
        self.dry_run = dry_run
        self.task = BudgetCounter(
            "task", config.per_task_limit, config.warning_threshold
        )
        self.session = BudgetCounter(
            "session", config.per_session_limit, config.warning_threshold
        )
        self._task_exceed_reported = False
        self._session_exceed_reported = False

    def start_task(self) -> None:
        """Reset the task scope. Called exactly once per task start."""
        self.task.reset()
        self._task_exceed_reported = False

    def add_cost(self, amount: float) -> None:
        self.task.add_cost(amount)
        self.session.add_cost(amount)

    @property
    def task_cost(self) -> float:
        return float(self.task.cost)

    @property
    def session_cost(self) -> float:
        return float(self.session.cost)

    def session_exceeded(self) -> bool:
        """Whether the session limit has been reached (False in dry-run)."""
        if self.dry_run:
            return False
        exceeded = self.session.check_exceeded()
        if exceeded:
            logger.error(f"Session budget exceeded: {self.session.describe()}")
        return exceeded

    def evaluate(self) -> BudgetDecision:
        """Evaluate both scopes and decide the governing action.

        The session scope is checked first; its only action is stop.
        """
        decision = BudgetDecision()
        if self.dry_run:
            return decision

        for counter in (self.session, self.task):
            if counter.check_warning():
                decision.warnings.append(counter.scope)
                logger.warning(
                    f"Budget warning ({counter.percentage()}% used) - "
                    f"{counter.describe()}"
                )
                telemetry.record_budget_event("warning", counter.scope)

        if self.session.check_exceeded():
            decision.action = BudgetAction.STOP_SESSION
            decision.exceeded_scope = "session"
            if not self._session_exceed_reported:
                self._session_exceed_reported = True
                decision.newly_exceeded = True
                logger.error(f"Session budget exceeded - {self.session.describe()}")
                telemetry.record_budget_event("exceeded", "session")
            return decision

        if self.task.check_exceeded():
            action = self.config.on_task_budget_exceeded
            decision.exceeded_scope = "task"
            decision.action = _TASK_ACTIONS[action]
            if not self._task_exceed_reported:
                self._task_exceed_reported = True
                decision.newly_exceeded = True
                telemetry.record_budget_event("exceeded", "task")
                if action == "warn":
                    logger.warning(
                        f"Task budget exceeded, continuing (action=warn) - "
                        f"{self.task.describe()}"
                    )
                else:
                    logger.error(
                        f"Task budget exceeded (action={action}) - "
                        f"{self.task.describe()}"
                    )
        return decision
