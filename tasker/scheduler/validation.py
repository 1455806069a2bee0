"""Task validation, run before anything is persisted."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, NoReturn

from tasker.errors import InvalidTask
from tasker.scheduler import schedule
from tasker.scheduler.models import (
    ACTION_TYPES,
    CONDITION_OPERATORS,
    CONDITION_TYPES,
    NOTIFICATION_CHANNELS,
    TASK_TYPES,
    TRIGGER_TYPES,
    format_instant,
    parse_instant,
)

if TYPE_CHECKING:
    from tasker.scheduler.models import ScheduledTask


def _fail(message: str) -> NoReturn:
    raise InvalidTask(message)


def _validate_schedule(task: ScheduledTask) -> None:
    sched = task.schedule or {}
    if task.is_one_time:
        at = sched.get("at")
        if not at:
            _fail("one-time tasks require schedule.at")
        try:
            instant = parse_instant(at)
        except (TypeError, ValueError):
            _fail(f"Invalid schedule.at: {at!r}")
        if isinstance(at, datetime):
            task.schedule = {**sched, "at": format_instant(instant)}
    elif task.is_recurring:
        cron = sched.get("cron")
        if not cron:
            _fail("recurring tasks require schedule.cron")
        if not schedule.is_valid_cron(cron):
            _fail(f"Invalid cron expression: {cron!r}")
        try:
            schedule.resolve_timezone(sched.get("timezone"))
        except ValueError as exc:
            raise InvalidTask(str(exc)) from exc


def _validate_trigger(task: ScheduledTask) -> None:
    if not task.is_trigger:
        return
    if not task.trigger:
        _fail("trigger tasks require trigger configuration")
    if task.trigger_type not in TRIGGER_TYPES:
        _fail(f"Invalid trigger type: {task.trigger_type!r}")
    config = task.trigger.get("config") or {}
    if task.trigger_type == "event" and not config.get("event"):
        _fail("event triggers require config.event")


def validate_task(task: ScheduledTask) -> None:
    """Raise InvalidTask if *task* cannot be scheduled.

    A ``datetime`` in ``schedule.at`` is normalised to an ISO 8601 string
    in place.
    """
    if not task.name or not task.name.strip():
        _fail("Task name is required")
    if not task.user_id:
        _fail("Task user_id is required")
    if task.task_type not in TASK_TYPES:
        _fail(f"Invalid task type: {task.task_type!r}")

    _validate_schedule(task)
    _validate_trigger(task)

    if task.action_type not in ACTION_TYPES:
        _fail(f"Invalid action type: {task.action_type!r}")

    for condition in task.conditions:
        if condition.type not in CONDITION_TYPES:
            _fail(f"Invalid condition type: {condition.type!r}")
        if condition.operator not in CONDITION_OPERATORS:
            _fail(f"Invalid condition operator: {condition.operator!r}")
        if condition.type != "time" and not condition.key:
            _fail(f"{condition.type} conditions require a key")

    policy = task.retry_policy
    if policy is not None and (policy.max_retries < 0 or policy.backoff_ms < 0):
        _fail("Retry policy values must not be negative")

    if task.notification is not None:
        unknown = set(task.notification.channels) - set(NOTIFICATION_CHANNELS)
        if unknown:
            _fail(f"Unknown notification channel(s): {', '.join(sorted(unknown))}")
