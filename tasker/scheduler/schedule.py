"""Schedule calculator — pure next-fire-time arithmetic on top of APScheduler triggers.

Five-field expressions follow standard cron: day-of-week is numbered 0-7
with both 0 and 7 meaning Sunday, and when day-of-month and day-of-week are
both restricted a time matches if *either* field matches. A field that
starts with ``*`` (such as ``*/2``) does not count as restricted, so
``0 9 */2 * 1`` fires on odd-numbered days that are also Mondays. APScheduler's own
``CronTrigger`` numbers weekdays from Monday and ANDs the two day fields, so
expressions are translated before the trigger is built. Six-field
expressions carry seconds in the first position.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from tasker.config import settings

if TYPE_CHECKING:
    from apscheduler.triggers.base import BaseTrigger

    from tasker.scheduler.models import ScheduledTask

_DOW_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")
_UNRESTRICTED = ("*", "?")


def _is_restricted(field: str) -> bool:
    return not field.startswith(_UNRESTRICTED)


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for *name* (default timezone when empty). Raises ValueError."""
    tz_name = name or settings.default_timezone
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone: {tz_name!r}"
        raise ValueError(msg) from exc


def _translate_day_of_week(field: str) -> str:
    """Rewrite a numeric cron day-of-week field as APScheduler weekday names."""
    if field in _UNRESTRICTED or any(ch.isalpha() for ch in field):
        return field

    days: set[int] = set()
    for part in field.split(","):
        base, _, step_str = part.partition("/")
        step = int(step_str) if step_str else 1
        if base == "*":
            low, high = 0, 6
        elif "-" in base:
            low_str, high_str = base.split("-", 1)
            low, high = int(low_str), int(high_str)
        else:
            low = int(base)
            high = 7 if step_str else low
        if step < 1 or low < 0 or high > 7 or low > high:
            msg = f"Invalid day-of-week field: {field!r}"
            raise ValueError(msg)
        days.update(day % 7 for day in range(low, high + 1, step))
    return ",".join(_DOW_NAMES[day] for day in sorted(days))


def build_cron_trigger(expression: str, timezone: str | None = None) -> BaseTrigger:
    """Build an APScheduler trigger for a 5- or 6-field cron expression.

    Raises:
        ValueError: If the expression or the timezone is invalid.
    """
    tz = resolve_timezone(timezone)
    fields = expression.split()
    if len(fields) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = fields
    elif len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
    else:
        msg = f"Cron expression needs 5 or 6 fields, got {len(fields)}: {expression!r}"
        raise ValueError(msg)

    weekday = _translate_day_of_week(day_of_week)
    common = {"second": second, "minute": minute, "hour": hour, "month": month, "timezone": tz}

    if _is_restricted(day) and _is_restricted(day_of_week):
        return OrTrigger([
            CronTrigger(day=day, **common),
            CronTrigger(day_of_week=weekday, **common),
        ])
    return CronTrigger(
        day="*" if day in _UNRESTRICTED else day,
        day_of_week="*" if day_of_week in _UNRESTRICTED else weekday,
        **common,
    )


def build_date_trigger(run_at: datetime) -> DateTrigger:
    return DateTrigger(run_date=run_at, timezone=UTC)


def is_valid_cron(expression: str) -> bool:
    """Return True if *expression* is a well-formed 5- or 6-field cron expression."""
    try:
        build_cron_trigger(expression, "UTC")
    except ValueError:
        return False
    return True


def next_fire_after(expression: str, timezone: str | None, after: datetime) -> datetime | None:
    """First time strictly after *after* at which *expression* fires, in UTC."""
    trigger = build_cron_trigger(expression, timezone)
    fire_time = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    return fire_time.astimezone(UTC) if fire_time else None


def next_run(task: ScheduledTask, now: datetime) -> datetime | None:
    """Compute a task's next fire time.

    One-time tasks fire at their configured instant, recurring tasks at the
    next cron match after *now* in the task's timezone, and trigger tasks
    have no calculated schedule.
    """
    if task.is_one_time:
        return task.run_at
    if task.is_recurring and task.cron:
        return next_fire_after(task.cron, task.timezone, now)
    return None
