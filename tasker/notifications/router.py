"""NotificationRouter — fans task outcome notifications out to registered channels."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from tasker.notifications.channels import NotificationChannel
    from tasker.scheduler.models import ScheduledTask

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """What the engine needs from notification delivery."""

    async def notify(self, task: ScheduledTask, outcome: str, payload: Any) -> None: ...


def format_outcome_message(task: ScheduledTask, outcome: str, payload: Any) -> str:
    """Human-readable summary of a run outcome."""
    if outcome == "success":
        return f"Task '{task.name}' completed successfully (run #{task.run_count})."
    return f"Task '{task.name}' failed: {payload}"


class NotificationRouter:
    """Routes outcome notifications to the channels a task asks for.

    Singleton accessed via ``NotificationRouter.get()``.
    """

    _instance: NotificationRouter | None = None

    def __init__(self) -> None:
        self._channels: dict[str, NotificationChannel] = {}

    @classmethod
    def get(cls) -> NotificationRouter:
        """Return the singleton instance, creating it if needed."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset singleton — for tests only."""
        cls._instance = None

    def register_channel(self, channel: NotificationChannel) -> None:
        """Register a notification channel. Raises ValueError on duplicate name."""
        if channel.name in self._channels:
            msg = f"Channel '{channel.name}' is already registered"
            raise ValueError(msg)
        self._channels[channel.name] = channel

    def get_channel(self, name: str) -> NotificationChannel | None:
        """Look up a channel by name."""
        return self._channels.get(name)

    def list_channels(self) -> list[str]:
        """Return names of all registered channels."""
        return list(self._channels.keys())

    async def notify(self, task: ScheduledTask, outcome: str, payload: Any) -> None:
        """Send the outcome to every channel in the task's notification policy.

        Unregistered channels are skipped with a warning; a channel that
        raises or reports failure does not stop delivery to the others.
        """
        channels = task.notification.channels if task.notification else []
        message = format_outcome_message(task, outcome, payload)
        data = {"task_id": task.id, "task_name": task.name, "outcome": outcome, "payload": payload}

        for name in channels:
            channel = self._channels.get(name)
            if channel is None:
                logger.warning("No channel registered for '%s' (task %s)", name, task.id)
                continue
            try:
                delivered = await channel.send(task.user_id, message, data=data)
            except Exception:
                logger.exception("Channel %s raised for task %s", name, task.id)
                continue
            if not delivered:
                logger.warning("Channel %s failed to deliver for task %s", name, task.id)
        logger.info(
            "Sent %s notification for task %s via %s", outcome, task.id, channels or "no channels"
        )
