"""Webhook notifications for runner events.

Sends Discord embeds, Slack messages and generic JSON payloads. Sending is
fire-and-forget: failures are logged as warnings and never raised, so
notification problems cannot stop the control loop.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from backlog_runner.config import NotificationConfig, WebhookChannelConfig

logger = logging.getLogger(__name__)

# Color scheme for Discord embeds
COLORS = {
    "task_started": 0x3498DB,  # Blue
    "task_completed": 0x2ECC71,  # Green
    "task_failed": 0xE74C3C,  # Red
    "budget_warning": 0xF39C12,  # Orange
    "budget_exceeded": 0xE74C3C,  # Red
    "auto_merge": 0x9B59B6,  # Purple
    "session_ended": 0x95A5A6,  # Grey
}

TITLES = {
    "task_started": "🚀 Task Started",
    "task_completed": "✅ Task Completed",
    "task_failed": "❌ Task Failed",
    "budget_warning": "💸 Budget Warning",
    "budget_exceeded": "🛑 Budget Exceeded",
    "auto_merge": "🔀 Pull Request Auto-Merged",
    "session_ended": "🏁 Session Ended",
}

MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


def _truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "2m 30s" or "1h 15m"
    """
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s" if secs > 0 else f"{minutes}m"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"


def _describe(event: str, payload: dict[str, Any]) -> str:
    task = f"#{payload.get('task_id', '?')} {payload.get('title', '')}".strip()
    if event == "task_started":
        return f"Working on {task}"
    if event == "task_completed":
        pr = payload.get("pr_reference")
        return f"{task} completed" + (f"\n{pr}" if pr else "")
    if event == "task_failed":
        return f"{task} failed: {payload.get('reason') or 'unknown reason'}"
    if event == "budget_warning":
        return (
            f"{payload.get('scope', 'budget').capitalize()} budget at "
            f"{payload.get('percentage', 0)}% (${payload.get('cost_usd', 0.0):.2f})"
        )
    if event == "budget_exceeded":
        limit = payload.get("limit_usd")
        spent = f"${payload.get('cost_usd', 0.0):.2f}"
        if limit:
            spent += f" of ${limit:.2f}"
        return (
            f"{payload.get('scope', 'budget').capitalize()} budget exceeded ({spent}), "
            f"action: {payload.get('action', 'unknown')}"
        )
    if event == "auto_merge":
        return f"{payload.get('pr_reference', '')} merged for {task}"
    if event == "session_ended":
        return (
            f"{payload.get('succeeded', 0)} succeeded, {payload.get('failed', 0)} failed, "
            f"{payload.get('skipped', 0)} skipped"
        )
    return event


@dataclass
class DiscordEmbed:
    """Discord embed message structure.

    Attributes:
        title: Bold title text at the top of the embed
        description: Main body text of the embed (max 4096 chars)
        color: Integer color value
        fields: Optional list of field dicts with name, value, inline keys
        timestamp: Optional ISO format timestamp string
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        result: dict[str, Any] = {
            "title": self.title,
            "description": _truncate_text(self.description, MAX_DESCRIPTION_LENGTH),
            "color": self.color,
        }
        if self.fields is not None:
            result["fields"] = self.fields
        if self.timestamp is not None:
            result["timestamp"] = self.timestamp
        return result


def format_discord(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    fields = []
    if "cost_usd" in payload:
        fields.append(
            {"name": "Cost", "value": f"${payload['cost_usd']:.2f}", "inline": True}
        )
    if "elapsed_seconds" in payload:
        fields.append(
            {
                "name": "Duration",
                "value": format_duration(payload["elapsed_seconds"]),
                "inline": True,
            }
        )
    embed = DiscordEmbed(
        title=TITLES.get(event, event),
        description=_describe_safe(event, payload),
        color=COLORS.get(event, 0x95A5A6),
        fields=fields or None,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return {"embeds": [embed.to_dict()]}


def format_slack(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {"text": f"*{TITLES.get(event, event)}*\n{_describe_safe(event, payload)}"}


def format_generic(event: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": payload,
    }


_TASKLESS_EVENTS = ("budget_warning", "budget_exceeded", "session_ended")


def _describe_safe(event: str, payload: dict[str, Any]) -> str:
    if "task_id" not in payload and event not in _TASKLESS_EVENTS:
        return event
    return _describe(event, payload)


FORMATTERS = {
    "discord": format_discord,
    "slack": format_slack,
    "generic": format_generic,
}


class RateLimiter:
    """Minimum spacing between sends plus a cap per sliding window."""

    def __init__(
        self,
        min_interval: float,
        burst_limit: int,
        burst_window: float,
        clock=time.monotonic,
    ) -> None:
        self.min_interval = min_interval
        self.burst_limit = burst_limit
        self.burst_window = burst_window
        self.clock = clock
        self._sent: deque[float] = deque()

    def allow(self) -> bool:
        now = self.clock()
        while self._sent and now - self._sent[0] >= self.burst_window:
            self._sent.popleft()
        if self._sent and now - self._sent[-1] < self.min_interval:
            return False
        if len(self._sent) >= self.burst_limit:
            return False
        self._sent.append(now)
        return True


async def post_webhook(url: str, payload: dict[str, Any], channel: str) -> None:
    """POST a JSON payload. All errors are logged but not raised."""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"{channel} webhook returned {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning(f"{channel} webhook request timed out")
    except httpx.ConnectError:
        logger.warning(f"Failed to connect to {channel} webhook")
    except Exception as e:
        logger.warning(f"{channel} webhook error: {e}")


class Notifier:
    """Dispatches runner events to the configured webhook channels."""

    def __init__(self, config: NotificationConfig) -> None:
        self.config = config
        self.limiter = RateLimiter(
            config.rate_limit.min_interval,
            config.rate_limit.burst_limit,
            config.rate_limit.burst_window,
        )
        self._pending: set[asyncio.Task] = set()

    def _channels(self) -> dict[str, WebhookChannelConfig]:
        return {
            "discord": self.config.discord,
            "slack": self.config.slack,
            "generic": self.config.generic,
        }

    def send(self, event: str, payload: dict[str, Any]) -> None:
        """Queue an event for every channel that wants it. Never raises."""
        if not self.config.enabled:
            return
        try:
            targets = [
                (name, channel)
                for name, channel in self._channels().items()
                if channel.wants(event) and channel.webhook_url
            ]
            if not targets:
                return
            # Session end always goes out so the final summary is not lost
            if event != "session_ended" and not self.limiter.allow():
                logger.debug(f"Notification '{event}' dropped by rate limit")
                return
            loop = asyncio.get_running_loop()
            for name, channel in targets:
                body = FORMATTERS[name](event, payload)
                assert channel.webhook_url is not None
                pending = loop.create_task(post_webhook(channel.webhook_url, body, name))
                self._pending.add(pending)
                pending.add_done_callback(self._pending.discard)
        except Exception as e:
            logger.warning(f"Failed to dispatch notification '{event}': {e}")

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight notifications (used at shutdown)."""
        if not self._pending:
            return
        _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()
