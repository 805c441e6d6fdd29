"""Pause lock for a running session.

`backlog-runner pause` writes pause.lock to the state directory. The control
loop checks for it before selecting each task: the task in flight always
finishes first, then the loop waits until the lock is removed by
`backlog-runner resume` or its optional resume_at time passes.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

from backlog_runner.approval import SignalResult, wait_for_signal

logger = logging.getLogger(__name__)

PAUSE_LOCK_FILE = "pause.lock"
PAUSE_POLL_SECONDS = 5.0

_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?$")


def _format_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_duration(text: str) -> timedelta | None:
    """Parse "30m", "2h" or "1h30m". Returns None for anything else or zero."""
    match = _DURATION_PATTERN.match(text.strip().lower())
    if match is None:
        return None
    hours, minutes = (int(group) if group else 0 for group in match.groups())
    duration = timedelta(hours=hours, minutes=minutes)
    return duration if duration > timedelta(0) else None


@dataclass
class PauseState:
    """Contents of the pause lock."""

    paused_at: str
    reason: str | None = None
    resume_at: str | None = None

    def resume_due(self, now: datetime | None = None) -> bool:
        """Whether the scheduled auto-resume time has passed."""
        if not self.resume_at:
            return False
        resume_at = _parse_time(self.resume_at)
        if resume_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= resume_at

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class PauseLock:
    """The pause lock file of one state directory."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / PAUSE_LOCK_FILE

    def read(self) -> PauseState | None:
        """Current pause, or None when not paused.

        An unreadable lock still counts as a pause with no reason.
        """
        try:
            with open(self.path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable pause lock {self.path}: {e}")
            return PauseState(paused_at="")
        if not isinstance(data, dict):
            return PauseState(paused_at="")
        return PauseState(
            paused_at=str(data.get("paused_at", "")),
            reason=data.get("reason"),
            resume_at=data.get("resume_at"),
        )

    def pause(
        self,
        reason: str | None = None,
        duration: timedelta | None = None,
        now: datetime | None = None,
    ) -> tuple[PauseState, bool]:
        """Create the lock unless one exists.

        Returns:
            Tuple of (pause state, created). created is False when the
            session was already paused; the existing state is returned.
        """
        existing = self.read()
        if existing is not None:
            return existing, False

        now = now or datetime.now(timezone.utc)
        state = PauseState(
            paused_at=_format_time(now),
            reason=reason or None,
            resume_at=_format_time(now + duration) if duration else None,
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(tmp, self.path)
        logger.info(f"Pause lock created at {self.path}")
        return state, True

    def resume(self) -> PauseState | None:
        """Remove the lock. Returns the pause it ended, or None if not paused."""
        state = self.read()
        if state is None:
            return None
        self.path.unlink(missing_ok=True)
        logger.info("Pause lock removed")
        return state

    async def wait_until_resumed(
        self,
        stop_event: asyncio.Event | None = None,
        poll_interval: float = PAUSE_POLL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> bool:
        """Block while paused.

        Returns when the lock is gone, when its resume_at passes (the lock
        is then removed), or when stop_event is set.

        Returns:
            True if the wait ended because of stop_event
        """
        clock = clock or (lambda: datetime.now(timezone.utc))

        def resumed() -> bool:
            state = self.read()
            if state is None:
                return True
            if state.resume_due(clock()):
                logger.info("Auto-resume time reached, removing pause lock")
                self.path.unlink(missing_ok=True)
                return True
            return False

        result = await wait_for_signal(resumed, poll_interval, None, stop_event)
        return result is SignalResult.STOPPED
