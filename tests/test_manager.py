"""Tests for TaskManager — lifecycle, execution path and timer bookkeeping."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from tasker.errors import ExecutionError, InvalidTask, NotFound
from tasker.scheduler.manager import TaskManager
from tasker.scheduler.models import (
    NotificationPolicy,
    RetryPolicy,
    ScheduledTask,
    TaskCondition,
    TaskInput,
    TaskPatch,
)
from tasker.scheduler.registry import CronRegistry
from tasker.scheduler.store import TaskStore

FAR_FUTURE = "2099-01-01T00:00:00+00:00"


@pytest.fixture
def executor() -> AsyncMock:
    executor = AsyncMock()
    executor.execute.return_value = {"ok": True}
    return executor


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def manager(
    store: TaskStore, executor: AsyncMock, notifier: AsyncMock, clock
) -> TaskManager:
    mgr = TaskManager(store, executor, registry=CronRegistry(), notifier=notifier, clock=clock)
    yield mgr
    await mgr.shutdown()


def _recurring(**kwargs) -> TaskInput:
    defaults = {
        "user_id": "u1",
        "name": "Every five minutes",
        "task_type": "recurring",
        "action": {"type": "webhook", "url": "https://example.com/hook"},
        "schedule": {"cron": "*/5 * * * *", "timezone": "UTC"},
    }
    defaults.update(kwargs)
    return TaskInput(**defaults)


def _one_time(at: str = FAR_FUTURE, **kwargs) -> TaskInput:
    defaults = {
        "user_id": "u1",
        "name": "Reminder",
        "task_type": "one-time",
        "action": {"type": "send-email", "to": "me@example.com"},
        "schedule": {"at": at},
    }
    defaults.update(kwargs)
    return TaskInput(**defaults)


def _trigger(trigger: dict | None = None, **kwargs) -> TaskInput:
    defaults = {
        "user_id": "u1",
        "name": "On signup",
        "task_type": "trigger",
        "action": {"type": "webhook", "url": "https://example.com/hook"},
        "trigger": trigger or {"type": "webhook", "config": {}},
    }
    defaults.update(kwargs)
    return TaskInput(**defaults)


# -- create_task ---------------------------------------------------------------


async def test_create_recurring(manager: TaskManager, store: TaskStore, clock) -> None:
    task = await manager.create_task(_recurring())

    assert task.status == "active"
    assert task.next_run_at == clock.now + timedelta(minutes=5)
    assert task.run_count == 0
    assert manager.registry.is_armed(task.id)

    stored = await store.get_task(task.id)
    assert stored.next_run_at == task.next_run_at


async def test_create_one_time(manager: TaskManager) -> None:
    task = await manager.create_task(_one_time())

    assert task.next_run_at == datetime(2099, 1, 1, tzinfo=UTC)
    assert manager.registry.is_armed(task.id)


async def test_create_one_time_normalises_datetime(manager: TaskManager) -> None:
    task = await manager.create_task(
        _one_time(at=datetime(2099, 1, 1, tzinfo=UTC))  # type: ignore[arg-type]
    )
    assert task.schedule["at"] == "2099-01-01T00:00:00.000000+00:00"


async def test_create_trigger_is_not_armed(manager: TaskManager) -> None:
    task = await manager.create_task(_trigger())

    assert task.next_run_at is None
    assert not manager.registry.is_armed(task.id)


@pytest.mark.parametrize(
    "data",
    [
        _recurring(task_type="sometimes"),
        _recurring(schedule={"cron": "every tuesday"}),
        _recurring(schedule={"cron": "0 9 * * *", "timezone": "Nowhere/Special"}),
        _recurring(schedule={}),
        _one_time(at="not a date"),
        _one_time(schedule={}),
        _trigger(trigger={"type": "carrier-pigeon"}),
        _trigger(trigger={"type": "event", "config": {}}),
        _recurring(action={"type": "teleport"}),
        _recurring(action={}),
        _recurring(name=""),
        _recurring(retry_policy=RetryPolicy(max_retries=-1, backoff_ms=10)),
        _recurring(notification=NotificationPolicy(on_failure=True, channels=["pager"])),
        _recurring(conditions=[TaskCondition("variable", "equals", 1)]),
    ],
)
async def test_create_rejects_invalid_tasks(
    manager: TaskManager, store: TaskStore, data: TaskInput
) -> None:
    with pytest.raises(InvalidTask):
        await manager.create_task(data)
    assert await store.list_tasks("u1") == []
    assert manager.registry.armed_ids() == []


# -- update_task ---------------------------------------------------------------


async def test_update_empty_patch(manager: TaskManager) -> None:
    task = await manager.create_task(_recurring())
    with pytest.raises(InvalidTask, match="No fields to update"):
        await manager.update_task(task.id, TaskPatch())


async def test_update_missing_task(manager: TaskManager) -> None:
    with pytest.raises(NotFound):
        await manager.update_task("nope", TaskPatch(name="x"))


async def test_update_name_keeps_schedule(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring())
    clock.advance(minutes=1)

    updated = await manager.update_task(task.id, TaskPatch(name="Renamed"))

    assert updated.name == "Renamed"
    assert updated.next_run_at == task.next_run_at
    assert updated.updated_at == clock.now


async def test_update_schedule_recomputes_and_rearms(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring(schedule={"cron": "0 9 * * *"}))
    assert task.next_run_at == datetime(2030, 1, 2, 9, 0, tzinfo=UTC)

    updated = await manager.update_task(task.id, TaskPatch(schedule={"cron": "30 12 * * *"}))

    assert updated.next_run_at == datetime(2030, 1, 1, 12, 30, tzinfo=UTC)
    assert manager.registry.is_armed(task.id)
    assert (await manager.get_task(task.id)).next_run_at == updated.next_run_at


async def test_update_invalid_patch_changes_nothing(manager: TaskManager) -> None:
    task = await manager.create_task(_recurring())
    with pytest.raises(InvalidTask):
        await manager.update_task(task.id, TaskPatch(schedule={"cron": "bogus"}))
    assert (await manager.get_task(task.id)).schedule == task.schedule


async def test_update_clears_policies(manager: TaskManager, store: TaskStore) -> None:
    task = await manager.create_task(
        _recurring(
            retry_policy=RetryPolicy(max_retries=2, backoff_ms=1000),
            notification=NotificationPolicy(on_success=True, channels=["webhook"]),
        )
    )

    updated = await manager.update_task(task.id, TaskPatch(clear=("retry_policy", "notification")))

    assert updated.retry_policy is None
    assert updated.notification is None
    stored = await store.get_task(task.id)
    assert stored.retry_policy is None
    assert stored.notification is None


@pytest.mark.parametrize(
    "patch",
    [
        TaskPatch(clear=("name",)),
        TaskPatch(retry_policy=RetryPolicy(max_retries=1, backoff_ms=10), clear=("retry_policy",)),
    ],
)
async def test_update_rejects_bad_clear(manager: TaskManager, patch: TaskPatch) -> None:
    task = await manager.create_task(_recurring())
    with pytest.raises(InvalidTask):
        await manager.update_task(task.id, patch)
    assert (await manager.get_task(task.id)).name == task.name


async def test_update_schedule_clears_pending_retry(
    manager: TaskManager, executor: AsyncMock
) -> None:
    task = await manager.create_task(
        _recurring(retry_policy=RetryPolicy(max_retries=3, backoff_ms=1000))
    )
    executor.execute.side_effect = RuntimeError("boom")
    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)
    assert manager.registry.has_retry(task.id)

    updated = await manager.update_task(task.id, TaskPatch(schedule={"cron": "0 * * * *"}))

    assert updated.failure_count == 0
    assert not manager.registry.has_retry(task.id)


# -- pause / resume ------------------------------------------------------------


async def test_pause_disarms(manager: TaskManager) -> None:
    task = await manager.create_task(_recurring())
    paused = await manager.pause_task(task.id)

    assert paused.status == "paused"
    assert not manager.registry.is_armed(task.id)
    assert (await manager.get_task(task.id)).status == "paused"


async def test_pause_is_idempotent(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring())
    first = await manager.pause_task(task.id)
    clock.advance(minutes=10)

    second = await manager.pause_task(task.id)

    assert second.updated_at == first.updated_at
    assert second.next_run_at == first.next_run_at


async def test_pause_completed_task_rejected(manager: TaskManager) -> None:
    task = await manager.create_task(_one_time())
    await manager.run_now(task.id)
    with pytest.raises(InvalidTask):
        await manager.pause_task(task.id)


async def test_pause_missing_task(manager: TaskManager) -> None:
    with pytest.raises(NotFound):
        await manager.pause_task("nope")


async def test_resume_recomputes_next_run(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring())
    await manager.pause_task(task.id)
    clock.advance(days=1, minutes=2)

    resumed = await manager.resume_task(task.id)

    assert resumed.status == "active"
    assert resumed.next_run_at == datetime(2030, 1, 2, 12, 5, tzinfo=UTC)
    assert manager.registry.is_armed(task.id)


async def test_resume_one_time_rearms_at_instant(manager: TaskManager) -> None:
    task = await manager.create_task(_one_time())
    await manager.pause_task(task.id)

    resumed = await manager.resume_task(task.id)

    assert resumed.next_run_at == datetime(2099, 1, 1, tzinfo=UTC)
    assert manager.registry.is_armed(task.id)


async def test_resume_failed_task_resets_failures(
    manager: TaskManager, executor: AsyncMock
) -> None:
    task = await manager.create_task(_recurring())
    executor.execute.side_effect = RuntimeError("boom")
    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)
    assert (await manager.get_task(task.id)).status == "failed"

    resumed = await manager.resume_task(task.id)

    assert resumed.status == "active"
    assert resumed.failure_count == 0
    assert resumed.next_run_at is not None


async def test_resume_completed_task_rejected(manager: TaskManager) -> None:
    task = await manager.create_task(_one_time())
    await manager.run_now(task.id)
    with pytest.raises(InvalidTask):
        await manager.resume_task(task.id)


async def test_resume_missing_task(manager: TaskManager) -> None:
    with pytest.raises(NotFound):
        await manager.resume_task("nope")


# -- delete_task ---------------------------------------------------------------


async def test_delete_task(manager: TaskManager, store: TaskStore) -> None:
    task = await manager.create_task(_recurring())
    execution = await manager.run_now(task.id)

    await manager.delete_task(task.id)

    assert await manager.get_task(task.id) is None
    assert await store.get_execution(execution.id) is None
    assert not manager.registry.is_armed(task.id)


async def test_deleted_task_never_fires(store: TaskStore, executor: AsyncMock) -> None:
    kept_ran = asyncio.Event()

    async def execute(action: dict, logs: list[str]) -> dict:
        if action["to"] == "kept@example.com":
            kept_ran.set()
        return {"ok": True}

    executor.execute.side_effect = execute
    mgr = TaskManager(store, executor, registry=CronRegistry())
    await mgr.initialize()
    try:
        soon = (datetime.now(UTC) + timedelta(milliseconds=200)).isoformat()
        doomed = await mgr.create_task(
            _one_time(at=soon, action={"type": "send-email", "to": "doomed@example.com"})
        )
        kept = await mgr.create_task(
            _one_time(at=soon, action={"type": "send-email", "to": "kept@example.com"})
        )
        await mgr.delete_task(doomed.id)

        await asyncio.wait_for(kept_ran.wait(), timeout=5)
        await asyncio.sleep(0.2)
    finally:
        await mgr.shutdown()

    executor.execute.assert_awaited_once()
    assert await mgr.get_executions(doomed.id) == []
    assert len(await mgr.get_executions(kept.id)) == 1


async def test_delete_missing_task(manager: TaskManager) -> None:
    with pytest.raises(NotFound):
        await manager.delete_task("nope")


# -- run_now: success ----------------------------------------------------------


async def test_run_now_success(manager: TaskManager, executor: AsyncMock, clock) -> None:
    task = await manager.create_task(_recurring())
    clock.advance(minutes=1)

    execution = await manager.run_now(task.id)

    assert execution.status == "completed"
    assert execution.trigger == "manual"
    assert execution.result == {"ok": True}
    assert execution.logs[0] == "Starting task execution: Every five minutes"
    assert "Executing action: webhook" in execution.logs
    assert execution.logs[-1] == "Task completed successfully"
    executor.execute.assert_awaited_once()

    updated = await manager.get_task(task.id)
    assert updated.run_count == 1
    assert updated.last_run_at == clock.now
    assert updated.next_run_at == datetime(2030, 1, 1, 12, 5, tzinfo=UTC)
    assert manager.registry.is_armed(task.id)


async def test_run_now_passes_action(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())
    await manager.run_now(task.id)

    action, logs = executor.execute.await_args.args
    assert action == {"type": "webhook", "url": "https://example.com/hook"}
    assert isinstance(logs, list)


async def test_run_now_one_time_completes(manager: TaskManager) -> None:
    task = await manager.create_task(_one_time())
    await manager.run_now(task.id)

    updated = await manager.get_task(task.id)
    assert updated.status == "completed"
    assert updated.next_run_at is None
    assert updated.run_count == 1
    assert not manager.registry.is_armed(task.id)


async def test_run_now_missing_task(manager: TaskManager) -> None:
    with pytest.raises(NotFound):
        await manager.run_now("nope")


async def test_execution_is_persisted(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring())
    execution = await manager.run_now(task.id)

    history = await manager.get_executions(task.id)
    assert [e.id for e in history] == [execution.id]
    assert history[0].status == "completed"
    assert history[0].completed_at == clock.now
    assert history[0].duration_ms == 0
    assert history[0].logs == execution.logs


# -- run_now: failure & retry --------------------------------------------------


async def test_failure_without_retry_policy(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())
    executor.execute.side_effect = RuntimeError("connection refused")

    with pytest.raises(ExecutionError) as exc_info:
        await manager.run_now(task.id)

    execution = exc_info.value.execution
    assert execution.status == "failed"
    assert execution.error == "connection refused"
    assert "Task failed: connection refused" in execution.logs
    assert isinstance(exc_info.value.__cause__, RuntimeError)

    updated = await manager.get_task(task.id)
    assert updated.status == "failed"
    assert updated.next_run_at is None
    assert updated.run_count == 0
    assert not manager.registry.is_armed(task.id)


async def test_retry_then_give_up(manager: TaskManager, executor: AsyncMock, clock) -> None:
    task = await manager.create_task(
        _recurring(retry_policy=RetryPolicy(max_retries=2, backoff_ms=1000))
    )
    executor.execute.side_effect = RuntimeError("boom")

    with pytest.raises(ExecutionError) as exc_info:
        await manager.run_now(task.id)
    first = await manager.get_task(task.id)
    assert first.status == "active"
    assert first.failure_count == 1
    assert first.next_run_at == clock.now + timedelta(seconds=1)
    assert manager.registry.has_retry(task.id)
    assert any(line.startswith("Will retry (1/2)") for line in exc_info.value.execution.logs)

    clock.advance(seconds=1)
    await manager._run_from_timer(task.id, "retry")
    assert (await manager.get_task(task.id)).failure_count == 2

    clock.advance(seconds=1)
    await manager._run_from_timer(task.id, "retry")
    final = await manager.get_task(task.id)
    assert final.status == "failed"
    assert final.failure_count == 3
    assert final.next_run_at is None
    assert not manager.registry.is_armed(task.id)

    history = await manager.get_executions(task.id)
    assert len(history) == 3
    assert [e.trigger for e in history] == ["retry", "retry", "manual"]
    assert all(e.status == "failed" for e in history)
    assert executor.execute.await_count == 3


async def test_success_after_retry_resets_failures(
    manager: TaskManager, executor: AsyncMock, clock
) -> None:
    task = await manager.create_task(
        _recurring(retry_policy=RetryPolicy(max_retries=2, backoff_ms=1000))
    )
    executor.execute.side_effect = RuntimeError("flaky")
    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)

    executor.execute.side_effect = None
    clock.advance(seconds=1)
    await manager._run_from_timer(task.id, "retry")

    updated = await manager.get_task(task.id)
    assert updated.status == "active"
    assert updated.failure_count == 0
    assert updated.run_count == 1
    assert updated.next_run_at == datetime(2030, 1, 1, 12, 5, tzinfo=UTC)


async def test_success_clears_pending_retry(
    manager: TaskManager, executor: AsyncMock
) -> None:
    task = await manager.create_task(
        _recurring(retry_policy=RetryPolicy(max_retries=2, backoff_ms=300))
    )
    executor.execute.side_effect = RuntimeError("flaky")
    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)
    assert manager.registry.has_retry(task.id)

    executor.execute.side_effect = None
    await manager.run_now(task.id)

    assert (await manager.get_task(task.id)).failure_count == 0
    assert not manager.registry.has_retry(task.id)
    assert manager.registry.is_armed(task.id)
    assert [job.id for job in manager.registry._scheduler.get_jobs()] == [task.id]


async def test_one_time_retry_then_give_up(
    manager: TaskManager, executor: AsyncMock, clock
) -> None:
    task = await manager.create_task(
        _one_time(retry_policy=RetryPolicy(max_retries=2, backoff_ms=1000))
    )
    executor.execute.side_effect = RuntimeError("smtp down")

    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)
    first = await manager.get_task(task.id)
    assert first.status == "active"
    assert first.next_run_at == clock.now + timedelta(seconds=1)

    clock.advance(seconds=1)
    await manager._run_from_timer(task.id, "schedule")
    second = await manager.get_task(task.id)
    assert second.status == "active"
    assert second.next_run_at == clock.now + timedelta(seconds=1)
    assert manager.registry.is_armed(task.id)

    clock.advance(seconds=1)
    await manager._run_from_timer(task.id, "schedule")
    final = await manager.get_task(task.id)
    assert final.status == "failed"
    assert final.next_run_at is None
    assert not manager.registry.is_armed(task.id)

    history = await manager.get_executions(task.id)
    assert len(history) == 3
    assert all(e.status == "failed" for e in history)


async def test_one_time_retry_rearms_its_timer(
    manager: TaskManager, executor: AsyncMock, clock
) -> None:
    task = await manager.create_task(
        _one_time(retry_policy=RetryPolicy(max_retries=1, backoff_ms=60_000))
    )
    executor.execute.side_effect = RuntimeError("smtp down")

    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)

    updated = await manager.get_task(task.id)
    assert updated.status == "active"
    assert updated.next_run_at == clock.now + timedelta(minutes=1)
    assert manager.registry.is_armed(task.id)
    assert not manager.registry.has_retry(task.id)


async def test_timer_failures_are_not_raised(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())
    executor.execute.side_effect = RuntimeError("boom")

    # Should not raise
    await manager._run_from_timer(task.id, "schedule")

    history = await manager.get_executions(task.id)
    assert history[0].status == "failed"
    assert history[0].trigger == "schedule"


# -- Conditions ----------------------------------------------------------------


async def test_unmet_conditions_skip(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(
        _recurring(conditions=[TaskCondition("variable", "equals", "prod", "env")])
    )

    execution = await manager.run_now(task.id)

    assert execution.status == "completed"
    assert "Conditions not met, skipping execution" in execution.logs
    executor.execute.assert_not_awaited()

    unchanged = await manager.get_task(task.id)
    assert unchanged.run_count == 0
    assert unchanged.last_run_at is None
    assert unchanged.next_run_at == task.next_run_at


async def test_payload_is_visible_to_conditions(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(
        _recurring(conditions=[TaskCondition("variable", "equals", "paid", "payload.status")])
    )

    await manager.run_now(task.id, {"status": "paid"})

    executor.execute.assert_awaited_once()


async def test_variables_provider(store: TaskStore, executor: AsyncMock, clock) -> None:
    variables = AsyncMock(return_value={"env": "prod"})
    mgr = TaskManager(store, executor, clock=clock, variables=variables)
    task = await mgr.create_task(
        _recurring(conditions=[TaskCondition("variable", "equals", "prod", "env")])
    )

    await mgr.run_now(task.id)

    executor.execute.assert_awaited_once()
    assert variables.await_args.args[0].id == task.id
    await mgr.shutdown()


async def test_time_condition(manager: TaskManager, executor: AsyncMock, clock) -> None:
    task = await manager.create_task(
        _recurring(conditions=[TaskCondition("time", "greater", "2030-01-01T13:00:00Z")])
    )

    await manager.run_now(task.id)
    executor.execute.assert_not_awaited()

    clock.advance(hours=2)
    await manager.run_now(task.id)
    executor.execute.assert_awaited_once()


# -- Notifications -------------------------------------------------------------


async def test_notify_on_success(manager: TaskManager, notifier: AsyncMock) -> None:
    task = await manager.create_task(
        _recurring(notification=NotificationPolicy(on_success=True, channels=["webhook"]))
    )
    await manager.run_now(task.id)

    notifier.notify.assert_awaited_once()
    notified_task, outcome, payload = notifier.notify.await_args.args
    assert notified_task.id == task.id
    assert notified_task.run_count == 1
    assert outcome == "success"
    assert payload == {"ok": True}


async def test_notify_on_failure(
    manager: TaskManager, executor: AsyncMock, notifier: AsyncMock
) -> None:
    task = await manager.create_task(
        _recurring(notification=NotificationPolicy(on_failure=True, channels=["webhook"]))
    )
    executor.execute.side_effect = RuntimeError("boom")

    with pytest.raises(ExecutionError):
        await manager.run_now(task.id)

    _, outcome, payload = notifier.notify.await_args.args
    assert outcome == "failure"
    assert payload == "boom"


async def test_no_notification_when_not_requested(
    manager: TaskManager, notifier: AsyncMock
) -> None:
    task = await manager.create_task(
        _recurring(notification=NotificationPolicy(on_failure=True, channels=["webhook"]))
    )
    await manager.run_now(task.id)
    notifier.notify.assert_not_awaited()


async def test_notifier_errors_do_not_fail_the_run(
    manager: TaskManager, notifier: AsyncMock
) -> None:
    notifier.notify.side_effect = RuntimeError("smtp down")
    task = await manager.create_task(
        _recurring(notification=NotificationPolicy(on_success=True, channels=["email"]))
    )

    execution = await manager.run_now(task.id)

    assert execution.status == "completed"
    assert (await manager.get_task(task.id)).run_count == 1


# -- Timer-initiated runs ------------------------------------------------------


async def test_timer_skips_paused_task(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())
    await manager.pause_task(task.id)

    await manager._run_from_timer(task.id, "schedule")

    executor.execute.assert_not_awaited()
    assert await manager.get_executions(task.id) == []


async def test_timer_for_deleted_task_disarms(manager: TaskManager, store: TaskStore) -> None:
    task = await manager.create_task(_recurring())
    await store.delete_task(task.id)
    assert manager.registry.is_armed(task.id)

    await manager._run_from_timer(task.id, "schedule")

    assert not manager.registry.is_armed(task.id)


# -- Changes made while a run is in flight -------------------------------------


async def test_pause_during_run_is_kept(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())

    async def pause_mid_run(action: dict, logs: list[str]) -> dict:
        await manager.pause_task(task.id)
        return {"ok": True}

    executor.execute.side_effect = pause_mid_run
    await manager.run_now(task.id)

    updated = await manager.get_task(task.id)
    assert updated.status == "paused"
    assert updated.run_count == 1
    assert not manager.registry.is_armed(task.id)


async def test_delete_during_run(manager: TaskManager, executor: AsyncMock) -> None:
    task = await manager.create_task(_recurring())

    async def delete_mid_run(action: dict, logs: list[str]) -> dict:
        await manager.delete_task(task.id)
        return {"ok": True}

    executor.execute.side_effect = delete_mid_run
    execution = await manager.run_now(task.id)

    assert execution.status == "completed"
    assert await manager.get_task(task.id) is None
    assert not manager.registry.is_armed(task.id)


# -- initialize / shutdown -----------------------------------------------------


async def test_initialize_rearms_active_tasks(
    store: TaskStore, executor: AsyncMock, clock
) -> None:
    def stored(task_id: str, task_type: str, schedule: dict, **kwargs) -> ScheduledTask:
        return ScheduledTask(
            id=task_id,
            user_id="u1",
            name=task_id,
            task_type=task_type,
            action={"type": "webhook", "url": "https://example.com"},
            schedule=schedule,
            **kwargs,
        )

    retry_at = datetime(2099, 6, 1, tzinfo=UTC)
    await store.add_task(stored("cron", "recurring", {"cron": "0 9 * * *"}))
    await store.add_task(stored("once", "one-time", {"at": FAR_FUTURE}))
    await store.add_task(stored("paused", "recurring", {"cron": "0 9 * * *"}, status="paused"))
    await store.add_task(
        stored(
            "retrying",
            "recurring",
            {"cron": "0 9 * * *"},
            failure_count=1,
            next_run_at=retry_at,
            retry_policy=RetryPolicy(max_retries=3, backoff_ms=1000),
        )
    )

    mgr = TaskManager(store, executor, registry=CronRegistry(), clock=clock)
    await mgr.initialize()
    try:
        assert mgr.registry.running
        assert sorted(mgr.registry.armed_ids()) == ["cron", "once", "retrying"]
        assert mgr.registry.has_retry("retrying")
        assert not mgr.registry.has_retry("cron")
    finally:
        await mgr.shutdown()

    assert mgr.registry.armed_ids() == []
    assert not mgr.registry.running


# -- Queries -------------------------------------------------------------------


async def test_list_tasks(manager: TaskManager) -> None:
    await manager.create_task(_recurring())
    await manager.create_task(_one_time())
    await manager.create_task(_recurring(user_id="u2"))

    assert len(await manager.list_tasks("u1")) == 2
    one_time = await manager.list_tasks("u1", task_type="one-time")
    assert [t.name for t in one_time] == ["Reminder"]


async def test_get_ready_tasks(manager: TaskManager, clock) -> None:
    overdue = await manager.create_task(_one_time(at="2030-01-01T11:00:00+00:00"))
    await manager.create_task(_one_time())
    await manager.create_task(_trigger())

    ready = await manager.get_ready_tasks()
    assert [t.id for t in ready] == [overdue.id]


async def test_get_upcoming_tasks(manager: TaskManager) -> None:
    later = await manager.create_task(_one_time())
    sooner = await manager.create_task(_recurring())
    await manager.create_task(_trigger())

    upcoming = await manager.get_upcoming_tasks("u1")
    assert [t.id for t in upcoming] == [sooner.id, later.id]


async def test_get_executions_limit(manager: TaskManager, clock) -> None:
    task = await manager.create_task(_recurring())
    ids = []
    for _ in range(3):
        ids.append((await manager.run_now(task.id)).id)
        clock.advance(seconds=1)

    history = await manager.get_executions(task.id, limit=2)
    assert [e.id for e in history] == [ids[2], ids[1]]


async def test_get_stats(manager: TaskManager) -> None:
    await manager.create_task(_recurring())
    await manager.create_task(_recurring(schedule={"cron": "0 9 * * *"}))
    paused = await manager.create_task(_recurring())
    await manager.pause_task(paused.id)

    stats = await manager.get_stats()
    assert stats.active == 2
    assert stats.paused == 1
    assert stats.due_soon == 1


async def test_cleanup(manager: TaskManager, clock) -> None:
    once = await manager.create_task(_one_time())
    await manager.run_now(once.id)
    recurring = await manager.create_task(_recurring())
    for _ in range(3):
        await manager.run_now(recurring.id)
        clock.advance(seconds=1)

    clock.advance(days=31)
    result = await manager.cleanup(keep_executions=1)

    assert result.tasks_deleted == 1
    assert result.executions_deleted == 2
    assert await manager.get_task(once.id) is None
    assert len(await manager.get_executions(recurring.id)) == 1
