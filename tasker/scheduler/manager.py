"""TaskManager — task lifecycle and the shared execution path."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from tasker.config import settings
from tasker.errors import ExecutionError, InvalidTask, NotFound
from tasker.scheduler import policy, schedule
from tasker.scheduler.conditions import ConditionContext, all_conditions_met
from tasker.scheduler.models import (
    ACTIVE,
    CLEARABLE_FIELDS,
    COMPLETED,
    FAILED,
    PAUSED,
    CleanupResult,
    make_id,
    utcnow,
)
from tasker.scheduler.recorder import ExecutionRecorder
from tasker.scheduler.registry import CronRegistry
from tasker.scheduler.validation import validate_task
from tasker.webhooks.gateway import WebhookGateway

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping
    from datetime import datetime

    from tasker.actions.registry import ActionExecutor
    from tasker.notifications.router import Notifier
    from tasker.scheduler.models import (
        ScheduledTask,
        TaskExecution,
        TaskInput,
        TaskPatch,
        TaskStats,
    )
    from tasker.scheduler.store import TaskStore

    VariablesProvider = Callable[[ScheduledTask], Awaitable[Mapping[str, Any]]]

logger = logging.getLogger(__name__)


class TaskManager:
    """Creates, updates, pauses, resumes, deletes and runs tasks.

    The store is the system of record; the cron registry is a derived cache
    rebuilt by ``initialize()``. Every run, whether from a timer, a manual
    ``run_now`` or a webhook, goes through the same path: record the
    attempt, check conditions, dispatch, finalise the record, then apply
    the retry & notification policy.

    There is no per-task execution lock: a timer can fire while a manual
    run of the same task is still in flight, and both runs will proceed.

    Args:
        store: TaskStore for persistence.
        executor: ActionExecutor that runs task actions.
        registry: CronRegistry holding live timers (a new one by default).
        notifier: Outcome notification fan-out (no notifications if None).
        clock: Returns the current time (aware UTC).
        variables: Async callable returning the variables that ``variable``
            and ``api-response`` conditions are evaluated against.
    """

    def __init__(
        self,
        store: TaskStore,
        executor: ActionExecutor,
        *,
        registry: CronRegistry | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        variables: VariablesProvider | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._registry = registry or CronRegistry()
        self._registry.attach(self._run_from_timer)
        self._notifier = notifier
        self._clock = clock
        self._variables = variables
        self._recorder = ExecutionRecorder(store, clock)
        self.webhooks = WebhookGateway(self, store, clock)

    @property
    def registry(self) -> CronRegistry:
        return self._registry

    # -- Lifecycle -------------------------------------------------------------

    async def initialize(self) -> None:
        """Re-arm every persisted active task, then start the timers."""
        tasks = await self._store.list_active_tasks()
        armed = sum(1 for task in tasks if self._arm(task))
        self._registry.start()
        logger.info("Task manager initialised: %d active task(s), %d armed", len(tasks), armed)

    async def shutdown(self) -> None:
        """Disarm all timers. In-flight runs are not cancelled."""
        self._registry.shutdown()
        logger.info("Task manager shut down")

    # -- Task management -------------------------------------------------------

    async def create_task(self, data: TaskInput) -> ScheduledTask:
        """Validate, persist and arm a new task."""
        now = self._clock()
        task = data.to_task(make_id(), now)
        validate_task(task)
        task.next_run_at = schedule.next_run(task, now)

        await self._store.add_task(task)
        self._arm(task)
        logger.info(
            "Task created: '%s' (%s) type=%s next_run=%s",
            task.name,
            task.id,
            task.task_type,
            task.next_run_at,
        )
        return task

    async def update_task(self, task_id: str, patch: TaskPatch) -> ScheduledTask:
        """Merge *patch* into a task; re-arm its timers if the schedule changed."""
        if not patch.changed_fields():
            msg = "No fields to update"
            raise InvalidTask(msg)
        for name in patch.clear:
            if name not in CLEARABLE_FIELDS:
                msg = f"Cannot clear field: {name}"
                raise InvalidTask(msg)
            if getattr(patch, name) is not None:
                msg = f"Cannot both set and clear field: {name}"
                raise InvalidTask(msg)

        task = await self._require(task_id)
        now = self._clock()
        updated = patch.apply(task, now)
        validate_task(updated)

        if patch.touches_schedule:
            # A recomputed schedule supersedes any pending retry.
            updated.failure_count = 0
            updated.next_run_at = None if updated.is_finished else schedule.next_run(updated, now)

        await self._store.save_task(updated)
        if patch.touches_schedule:
            self._registry.disarm(task_id)
            self._arm(updated)
        logger.info("Task updated: %s (%s)", task_id, ", ".join(patch.changed_fields()))
        return updated

    async def pause_task(self, task_id: str) -> ScheduledTask:
        """Stop future runs. Pausing a paused task is a no-op."""
        task = await self._require(task_id)
        if task.status == PAUSED:
            return task
        if task.is_finished:
            msg = f"Cannot pause {task.status} task {task_id}"
            raise InvalidTask(msg)

        task.status = PAUSED
        task.updated_at = self._clock()
        await self._store.save_task(task)
        self._registry.disarm(task_id)
        logger.info("Task paused: %s", task_id)
        return task

    async def resume_task(self, task_id: str) -> ScheduledTask:
        """Re-activate a paused (or failed) task and re-arm its timer."""
        task = await self._require(task_id)
        if task.is_active:
            return task
        if task.status == COMPLETED:
            msg = f"Cannot resume completed task {task_id}"
            raise InvalidTask(msg)

        now = self._clock()
        if task.status == FAILED:
            task.failure_count = 0
        task.status = ACTIVE
        task.updated_at = now
        if task.is_recurring:
            task.failure_count = 0
            task.next_run_at = schedule.next_run(task, now)
        elif task.is_one_time:
            task.next_run_at = task.next_run_at or task.run_at

        await self._store.save_task(task)
        self._arm(task)
        logger.info("Task resumed: %s (next_run=%s)", task_id, task.next_run_at)
        return task

    async def delete_task(self, task_id: str) -> None:
        """Disarm and delete a task with its bindings and history."""
        self._registry.disarm(task_id)
        if not await self._store.delete_task(task_id):
            msg = f"Task {task_id} not found"
            raise NotFound(msg)
        logger.info("Task deleted: %s", task_id)

    # -- Queries ---------------------------------------------------------------

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        return await self._store.get_task(task_id)

    async def list_tasks(
        self,
        user_id: str,
        *,
        task_type: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ScheduledTask]:
        return await self._store.list_tasks(
            user_id, task_type=task_type, status=status, limit=limit
        )

    async def get_ready_tasks(self, limit: int | None = None) -> list[ScheduledTask]:
        """Active scheduled tasks whose next run has arrived."""
        return await self._store.list_ready_tasks(self._clock(), limit)

    async def get_upcoming_tasks(
        self, user_id: str, limit: int | None = None
    ) -> list[ScheduledTask]:
        return await self._store.list_upcoming_tasks(user_id, limit or settings.upcoming_limit)

    async def get_executions(
        self, task_id: str, limit: int | None = None
    ) -> list[TaskExecution]:
        """A task's execution history, newest first."""
        return await self._store.list_executions(
            task_id, limit or settings.execution_history_limit
        )

    async def get_stats(self) -> TaskStats:
        """Task counts per status plus active tasks due within the hour."""
        return await self._store.task_stats(self._clock() + timedelta(hours=1))

    async def cleanup(
        self, older_than_days: int = 30, keep_executions: int = 100
    ) -> CleanupResult:
        """Drop old completed one-time tasks and trim long execution histories."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        result = CleanupResult(
            tasks_deleted=await self._store.delete_completed_one_time_tasks(cutoff),
            executions_deleted=await self._store.prune_executions(keep_executions),
        )
        logger.info(
            "Cleanup removed %d task(s) and %d execution(s)",
            result.tasks_deleted,
            result.executions_deleted,
        )
        return result

    # -- Webhook & event triggers ----------------------------------------------

    async def generate_webhook_url(self, task_id: str) -> str:
        return await self.webhooks.generate_webhook_url(task_id)

    async def handle_webhook(
        self, webhook_id: str, payload: Any = None, secret: str | None = None
    ) -> TaskExecution:
        return await self.webhooks.handle(webhook_id, payload, secret=secret)

    async def handle_event(
        self, user_id: str, event: str, payload: Any = None
    ) -> list[TaskExecution]:
        return await self.webhooks.handle_event(user_id, event, payload)

    # -- Running ---------------------------------------------------------------

    async def run_now(
        self,
        task_id: str,
        payload: Any = None,
        *,
        trigger: str = "manual",
    ) -> TaskExecution:
        """Run a task once, outside its schedule.

        Raises:
            NotFound: If the task does not exist.
            ExecutionError: If the action failed (after bookkeeping is done).
        """
        task = await self._require(task_id)
        return await self._execute(task, trigger, payload, raise_errors=True)

    async def _run_from_timer(self, task_id: str, kind: str) -> None:
        """Registry callback for timer fires."""
        task = await self._store.get_task(task_id)
        if task is None:
            logger.warning("Timer fired for missing task %s; disarming", task_id)
            self._registry.disarm(task_id)
            return
        if not task.is_active:
            logger.info("Skipping %s task: '%s' (%s)", task.status, task.name, task_id)
            return
        trigger = "retry" if task.failure_count else kind
        await self._execute(task, trigger, None, raise_errors=False)

    async def _execute(
        self,
        task: ScheduledTask,
        trigger: str,
        payload: Any,
        *,
        raise_errors: bool,
    ) -> TaskExecution:
        execution = await self._recorder.start(task, trigger)
        logger.info(
            "Executing task: '%s' (%s) action=%s trigger=%s",
            task.name,
            task.id,
            task.action_type,
            trigger,
        )

        if task.conditions:
            context = await self._condition_context(task, payload)
            if not all_conditions_met(task.conditions, context):
                execution.logs.append("Conditions not met, skipping execution")
                logger.info("Conditions not met for task %s; skipped", task.id)
                return await self._recorder.complete(execution)

        execution.logs.append(f"Executing action: {task.action_type}")
        try:
            result = await self._executor.execute(task.action, execution.logs)
        except Exception as exc:
            execution = await self._on_failure(task, execution, exc)
            if raise_errors:
                msg = f"Task '{task.name}' failed: {execution.error}"
                raise ExecutionError(msg, execution) from exc
            return execution
        return await self._on_success(task, execution, result)

    async def _on_success(
        self, task: ScheduledTask, execution: TaskExecution, result: Any
    ) -> TaskExecution:
        execution.logs.append("Task completed successfully")
        await self._recorder.complete(execution, result)

        current = await self._store.get_task(task.id)
        if current is None:
            logger.info("Task %s was deleted during its run", task.id)
            return execution

        policy.apply_success(current, self._clock())
        await self._store.save_task(current)
        self._sync_timers(current)
        logger.info("Task executed successfully: '%s' (%s)", current.name, current.id)

        await policy.notify_outcome(self._notifier, current, policy.SUCCESS, result)
        return execution

    async def _on_failure(
        self, task: ScheduledTask, execution: TaskExecution, exc: Exception
    ) -> TaskExecution:
        error = str(exc) or exc.__class__.__name__
        execution.logs.append(f"Task failed: {error}")
        logger.warning("Task execution failed: '%s' (%s): %s", task.name, task.id, error)

        current = await self._store.get_task(task.id)
        if current is None:
            await self._recorder.fail(execution, error)
            logger.info("Task %s was deleted during its run", task.id)
            return execution

        decision = policy.apply_failure(current, self._clock())
        if decision.should_retry:
            execution.logs.append(
                f"Will retry ({current.failure_count}/{current.retry_policy.max_retries})"
                f" at {decision.retry_at.isoformat()}"
            )
        else:
            execution.logs.append("No retries left, task marked failed")

        await self._recorder.fail(execution, error)
        await self._store.save_task(current)
        self._sync_timers(current)

        await policy.notify_outcome(self._notifier, current, policy.FAILURE, error)
        return execution

    # -- Internal --------------------------------------------------------------

    async def _require(self, task_id: str) -> ScheduledTask:
        task = await self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found"
            raise NotFound(msg)
        return task

    async def _condition_context(self, task: ScheduledTask, payload: Any) -> ConditionContext:
        variables: dict[str, Any] = {}
        if self._variables is not None:
            variables.update(await self._variables(task))
        if payload is not None:
            variables["payload"] = payload
        return ConditionContext(now=self._clock(), variables=variables)

    def _arm(self, task: ScheduledTask) -> bool:
        """Arm the timers an active task needs, including a pending retry."""
        if not task.is_active:
            return False
        armed = self._registry.arm(task)
        if not task.is_one_time and task.failure_count and task.next_run_at is not None:
            self._registry.arm_retry(task.id, task.next_run_at)
            armed = True
        return armed

    def _sync_timers(self, task: ScheduledTask) -> None:
        """Bring the registry in line with a task's state after a run."""
        if not task.is_active:
            self._registry.disarm(task.id)
        elif task.is_one_time:
            self._registry.arm(task)
        elif task.failure_count and task.next_run_at is not None:
            self._registry.arm_retry(task.id, task.next_run_at)
        else:
            self._registry.disarm_retry(task.id)
