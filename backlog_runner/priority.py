"""Priority classification from task labels."""

from typing import Iterable, Mapping

from backlog_runner.models import Priority

# Lower sorts first; independent of configuration
PRIORITY_ORDER: dict[Priority, int] = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}

# Explicit normal labels need no check: normal is the fallback
_PRECEDENCE = (Priority.CRITICAL, Priority.HIGH, Priority.LOW)


def classify(
    labels: Iterable[str], label_sets: Mapping[Priority, Iterable[str]]
) -> Priority:
    """Map a task's labels to a priority class.

    Label sets are checked in the order critical, high, low; the first class
    whose set intersects the labels wins. Comparison is case-insensitive.
    No match yields normal.

    Args:
        labels: Labels on the task
        label_sets: Labels configured for each priority class

    Returns:
        The task's Priority
    """
    normalized = {label.lower() for label in labels}
    if not normalized:
        return Priority.NORMAL

    for priority in _PRECEDENCE:
        configured = {label.lower() for label in label_sets.get(priority, ())}
        if normalized & configured:
            return priority
    return Priority.NORMAL


def priority_ordinal(priority: Priority | str) -> int:
    """Sort key for a priority class."""
    return PRIORITY_ORDER[Priority(priority)]
