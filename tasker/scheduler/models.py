"""Task, execution and webhook binding data models."""

from __future__ import annotations

import dataclasses
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

ONE_TIME = "one-time"
RECURRING = "recurring"
TRIGGER = "trigger"
TASK_TYPES = (ONE_TIME, RECURRING, TRIGGER)

TRIGGER_TYPES = ("webhook", "email", "event")

ACTION_TYPES = (
    "ai-prompt",
    "send-email",
    "webhook",
    "run-code",
    "generate-report",
    "chain",
    "web-scrape",
    "file-operation",
    "external-service",
)

ACTIVE = "active"
PAUSED = "paused"
COMPLETED = "completed"
FAILED = "failed"
TASK_STATUSES = (ACTIVE, PAUSED, COMPLETED, FAILED)

RUNNING = "running"
EXECUTION_STATUSES = (RUNNING, COMPLETED, FAILED)

CONDITION_TYPES = ("time", "variable", "api-response")
CONDITION_OPERATORS = ("equals", "contains", "greater", "less", "exists")

NOTIFICATION_CHANNELS = ("email", "webhook", "push")


# -- Time helpers --------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_instant(value: str | datetime | None) -> datetime | None:
    """Parse an ISO 8601 string (or pass a datetime through) as an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_instant(value: datetime | None) -> str | None:
    """UTC ISO 8601 with fixed microsecond precision, so stored values sort as text."""
    if value is None:
        return None
    return parse_instant(value).isoformat(timespec="microseconds")


def _dumps(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


# -- Policies & conditions -----------------------------------------------------


@dataclass
class TaskCondition:
    """A precondition that must hold for a run to proceed.

    Attributes:
        type: ``"time"``, ``"variable"`` or ``"api-response"``.
        operator: ``"equals"``, ``"contains"``, ``"greater"``, ``"less"`` or ``"exists"``.
        value: Expected value to compare against.
        key: Dotted path into the evaluation variables (ignored for ``time``).
    """

    type: str
    operator: str
    value: Any = None
    key: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "operator": self.operator, "value": self.value, "key": self.key}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskCondition:
        return cls(
            type=data.get("type", ""),
            operator=data.get("operator", ""),
            value=data.get("value"),
            key=data.get("key", ""),
        )


@dataclass
class RetryPolicy:
    """Fixed-backoff retry policy: ``max_retries`` extra attempts, ``backoff_ms`` apart."""

    max_retries: int
    backoff_ms: int

    def to_dict(self) -> dict[str, int]:
        return {"max_retries": self.max_retries, "backoff_ms": self.backoff_ms}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(max_retries=int(data["max_retries"]), backoff_ms=int(data["backoff_ms"]))


@dataclass
class NotificationPolicy:
    on_success: bool = False
    on_failure: bool = False
    channels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "on_success": self.on_success,
            "on_failure": self.on_failure,
            "channels": list(self.channels),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NotificationPolicy:
        return cls(
            on_success=bool(data.get("on_success", False)),
            on_failure=bool(data.get("on_failure", False)),
            channels=list(data.get("channels", [])),
        )


# -- Task ----------------------------------------------------------------------

TASK_COLUMNS = (
    "id, user_id, name, description, task_type, schedule, trigger_config, action, "
    "conditions, retry_policy, notification, status, last_run_at, next_run_at, "
    "run_count, failure_count, created_at, updated_at"
)


@dataclass
class ScheduledTask:
    """A persisted, schedulable unit of work.

    Attributes:
        id: Unique identifier (UUID hex).
        user_id: Owning user.
        name: Human-readable name.
        task_type: ``"one-time"``, ``"recurring"`` or ``"trigger"``.
        action: What to do, tagged by ``"type"`` — e.g.
            ``{"type": "webhook", "url": "...", "method": "POST"}``.
        description: Optional longer description.
        schedule: ``{"at": "ISO"}`` for one-time tasks,
            ``{"cron": "*/5 * * * *", "timezone": "UTC"}`` for recurring ones.
        trigger: ``{"type": "webhook"|"email"|"event", "config": {...}}`` for trigger tasks.
        conditions: Preconditions, all of which must hold for a run to proceed.
        retry_policy: Optional fixed-backoff retry policy.
        notification: Optional success/failure notification policy.
        status: ``"active"``, ``"paused"``, ``"completed"`` or ``"failed"``.
        last_run_at: Time of the last successful run.
        next_run_at: Next planned run (None for trigger tasks and finished tasks).
        run_count: Number of successful runs.
        failure_count: Consecutive failed attempts since the last success.
        created_at: Creation time.
        updated_at: Last modification time.
    """

    id: str
    user_id: str
    name: str
    task_type: str
    action: dict[str, Any]
    description: str = ""
    schedule: dict[str, Any] | None = None
    trigger: dict[str, Any] | None = None
    conditions: list[TaskCondition] = field(default_factory=list)
    retry_policy: RetryPolicy | None = None
    notification: NotificationPolicy | None = None
    status: str = ACTIVE
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    run_count: int = 0
    failure_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.created_at is None:
            self.created_at = utcnow()
        if self.updated_at is None:
            self.updated_at = self.created_at

    # -- Convenience properties ------------------------------------------------

    @property
    def action_type(self) -> str:
        return str(self.action.get("type", ""))

    @property
    def is_one_time(self) -> bool:
        return self.task_type == ONE_TIME

    @property
    def is_recurring(self) -> bool:
        return self.task_type == RECURRING

    @property
    def is_trigger(self) -> bool:
        return self.task_type == TRIGGER

    @property
    def is_active(self) -> bool:
        return self.status == ACTIVE

    @property
    def is_finished(self) -> bool:
        return self.status in (COMPLETED, FAILED)

    @property
    def trigger_type(self) -> str:
        return str((self.trigger or {}).get("type", ""))

    @property
    def cron(self) -> str | None:
        return (self.schedule or {}).get("cron")

    @property
    def timezone(self) -> str | None:
        return (self.schedule or {}).get("timezone")

    @property
    def run_at(self) -> datetime | None:
        return parse_instant((self.schedule or {}).get("at"))

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching ``TASK_COLUMNS``."""
        return (
            self.id,
            self.user_id,
            self.name,
            self.description,
            self.task_type,
            _dumps(self.schedule),
            _dumps(self.trigger),
            json.dumps(self.action),
            json.dumps([c.to_dict() for c in self.conditions]),
            _dumps(self.retry_policy.to_dict() if self.retry_policy else None),
            _dumps(self.notification.to_dict() if self.notification else None),
            self.status,
            format_instant(self.last_run_at),
            format_instant(self.next_run_at),
            self.run_count,
            self.failure_count,
            format_instant(self.created_at),
            format_instant(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> ScheduledTask:
        """Deserialize from a row selected with ``TASK_COLUMNS``."""
        retry = _loads(row[9])
        notification = _loads(row[10])
        return cls(
            id=row[0],
            user_id=row[1],
            name=row[2],
            description=row[3] or "",
            task_type=row[4],
            schedule=_loads(row[5]),
            trigger=_loads(row[6]),
            action=json.loads(row[7]),
            conditions=[TaskCondition.from_dict(c) for c in _loads(row[8]) or []],
            retry_policy=RetryPolicy.from_dict(retry) if retry else None,
            notification=NotificationPolicy.from_dict(notification) if notification else None,
            status=row[11],
            last_run_at=parse_instant(row[12]),
            next_run_at=parse_instant(row[13]),
            run_count=row[14],
            failure_count=row[15],
            created_at=parse_instant(row[16]),
            updated_at=parse_instant(row[17]),
        )


@dataclass
class TaskInput:
    """Everything a caller supplies to create a task."""

    user_id: str
    name: str
    task_type: str
    action: dict[str, Any]
    description: str = ""
    schedule: dict[str, Any] | None = None
    trigger: dict[str, Any] | None = None
    conditions: list[TaskCondition] = field(default_factory=list)
    retry_policy: RetryPolicy | None = None
    notification: NotificationPolicy | None = None

    def to_task(self, task_id: str, now: datetime) -> ScheduledTask:
        return ScheduledTask(
            id=task_id,
            user_id=self.user_id,
            name=self.name,
            task_type=self.task_type,
            action=self.action,
            description=self.description,
            schedule=self.schedule,
            trigger=self.trigger,
            conditions=list(self.conditions),
            retry_policy=self.retry_policy,
            notification=self.notification,
            created_at=now,
            updated_at=now,
        )


CLEARABLE_FIELDS = ("retry_policy", "notification")


@dataclass
class TaskPatch:
    """Partial update for a task. Fields left as None are not changed.

    Optional policies cannot be removed by passing None; name them in
    ``clear`` instead (any of ``CLEARABLE_FIELDS``).
    """

    name: str | None = None
    description: str | None = None
    task_type: str | None = None
    schedule: dict[str, Any] | None = None
    trigger: dict[str, Any] | None = None
    action: dict[str, Any] | None = None
    conditions: list[TaskCondition] | None = None
    retry_policy: RetryPolicy | None = None
    notification: NotificationPolicy | None = None
    clear: tuple[str, ...] = ()

    def changed_fields(self) -> dict[str, Any]:
        changed = {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if f.name != "clear" and getattr(self, f.name) is not None
        }
        changed.update(dict.fromkeys(self.clear))
        return changed

    @property
    def touches_schedule(self) -> bool:
        return self.task_type is not None or self.schedule is not None

    def apply(self, task: ScheduledTask, now: datetime) -> ScheduledTask:
        """Return a copy of *task* with the changed fields merged in."""
        return dataclasses.replace(task, **self.changed_fields(), updated_at=now)


# -- Execution -----------------------------------------------------------------

EXECUTION_COLUMNS = (
    "id, task_id, status, trigger, started_at, completed_at, duration_ms, result, error, logs"
)


@dataclass
class TaskExecution:
    """One attempt to run a task's action.

    Attributes:
        id: Unique identifier (UUID hex).
        task_id: The task this attempt belongs to.
        status: ``"running"``, then ``"completed"`` or ``"failed"``.
        trigger: What started the attempt: ``"schedule"``, ``"retry"``,
            ``"manual"``, ``"webhook"`` or ``"event"``.
        started_at: Start time.
        completed_at: Finalisation time.
        duration_ms: Milliseconds between start and finalisation.
        result: Action result on success.
        error: Error message on failure.
        logs: Progress lines accumulated during the attempt.
    """

    id: str
    task_id: str
    started_at: datetime
    status: str = RUNNING
    trigger: str = "schedule"
    completed_at: datetime | None = None
    duration_ms: int | None = None
    result: Any = None
    error: str | None = None
    logs: list[str] = field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.status != RUNNING

    def to_row(self) -> tuple:
        return (
            self.id,
            self.task_id,
            self.status,
            self.trigger,
            format_instant(self.started_at),
            format_instant(self.completed_at),
            self.duration_ms,
            _dumps(self.result),
            self.error,
            json.dumps(self.logs),
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskExecution:
        return cls(
            id=row[0],
            task_id=row[1],
            status=row[2],
            trigger=row[3],
            started_at=parse_instant(row[4]),
            completed_at=parse_instant(row[5]),
            duration_ms=row[6],
            result=_loads(row[7]),
            error=row[8],
            logs=json.loads(row[9]) if row[9] else [],
        )


# -- Webhook binding -----------------------------------------------------------


@dataclass
class WebhookBinding:
    """An id/secret pair that lets an external caller trigger one task."""

    id: str
    task_id: str
    secret: str
    created_at: datetime = field(default_factory=utcnow)
    last_triggered_at: datetime | None = None
    trigger_count: int = 0

    def to_row(self) -> tuple:
        return (
            self.id,
            self.task_id,
            self.secret,
            format_instant(self.created_at),
            format_instant(self.last_triggered_at),
            self.trigger_count,
        )

    @classmethod
    def from_row(cls, row: tuple) -> WebhookBinding:
        return cls(
            id=row[0],
            task_id=row[1],
            secret=row[2],
            created_at=parse_instant(row[3]),
            last_triggered_at=parse_instant(row[4]),
            trigger_count=row[5],
        )


@dataclass
class TaskStats:
    active: int = 0
    paused: int = 0
    completed: int = 0
    failed: int = 0
    due_soon: int = 0


@dataclass
class CleanupResult:
    tasks_deleted: int = 0
    executions_deleted: int = 0


def make_id() -> str:
    """Generate a new task/execution/webhook ID."""
    return uuid.uuid4().hex
