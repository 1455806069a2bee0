"""TaskStore — aiosqlite persistence for tasks, executions and webhook bindings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tasker import db
from tasker.scheduler.models import (
    ACTIVE,
    COMPLETED,
    EXECUTION_COLUMNS,
    ONE_TIME,
    TASK_COLUMNS,
    TASK_STATUSES,
    TRIGGER,
    ScheduledTask,
    TaskExecution,
    TaskStats,
    WebhookBinding,
    format_instant,
)

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    import aiosqlite

logger = logging.getLogger(__name__)

_SELECT_TASKS = f"SELECT {TASK_COLUMNS} FROM scheduled_tasks"  # noqa: S608
_SELECT_EXECUTIONS = f"SELECT {EXECUTION_COLUMNS} FROM task_executions"  # noqa: S608
_TASK_PLACEHOLDERS = ", ".join("?" * len(TASK_COLUMNS.split(",")))
_EXECUTION_PLACEHOLDERS = ", ".join("?" * len(EXECUTION_COLUMNS.split(",")))


class TaskStore:
    """Persists tasks, their executions and webhook bindings in SQLite.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``);
    None uses the configured database.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        conn = await db.connect(self._db_path)
        if not self._initialised:
            await db.create_schema(conn)
            self._initialised = True
        return conn

    async def _fetch_tasks(self, sql: str, params: tuple = ()) -> list[ScheduledTask]:
        conn = await self._connect()
        try:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
            return [ScheduledTask.from_row(tuple(row)) for row in rows]
        finally:
            await conn.close()

    # -- Tasks -----------------------------------------------------------------

    async def add_task(self, task: ScheduledTask) -> ScheduledTask:
        """Insert a new task. Returns the same task object."""
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO scheduled_tasks ({TASK_COLUMNS}) VALUES ({_TASK_PLACEHOLDERS})",  # noqa: S608
                task.to_row(),
            )
            await conn.commit()
            logger.info("Added task: %s (%s, %s)", task.name, task.id, task.task_type)
            return task
        finally:
            await conn.close()

    async def save_task(self, task: ScheduledTask) -> bool:
        """Overwrite every column of an existing task in one statement.

        Returns True if a row was updated.
        """
        columns = [c.strip() for c in TASK_COLUMNS.split(",")][1:]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        row = task.to_row()
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?",  # noqa: S608
                (*row[1:], row[0]),
            )
            await conn.commit()
            return cursor.rowcount > 0
        finally:
            await conn.close()

    async def get_task(self, task_id: str) -> ScheduledTask | None:
        """Fetch a task by ID, or None if not found."""
        tasks = await self._fetch_tasks(f"{_SELECT_TASKS} WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task with its executions and webhook bindings.

        Returns True if the task existed.
        """
        conn = await self._connect()
        try:
            await conn.execute("DELETE FROM task_webhooks WHERE task_id = ?", (task_id,))
            await conn.execute("DELETE FROM task_executions WHERE task_id = ?", (task_id,))
            cursor = await conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
            await conn.commit()
            deleted = cursor.rowcount > 0
            if deleted:
                logger.info("Deleted task: %s", task_id)
            return deleted
        finally:
            await conn.close()

    async def list_tasks(
        self,
        user_id: str,
        *,
        task_type: str | None = None,
        status: str | None = None,
        limit: int | None = None,
    ) -> list[ScheduledTask]:
        """Return a user's tasks, newest first, optionally filtered."""
        sql = f"{_SELECT_TASKS} WHERE user_id = ?"
        params: list = [user_id]
        if task_type:
            sql += " AND task_type = ?"
            params.append(task_type)
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._fetch_tasks(sql, tuple(params))

    async def list_active_tasks(self, task_type: str | None = None) -> list[ScheduledTask]:
        """Return all active tasks, oldest first."""
        sql = f"{_SELECT_TASKS} WHERE status = ?"
        params: list = [ACTIVE]
        if task_type:
            sql += " AND task_type = ?"
            params.append(task_type)
        return await self._fetch_tasks(sql + " ORDER BY created_at", tuple(params))

    async def list_trigger_tasks(self, trigger_type: str) -> list[ScheduledTask]:
        """Return active trigger tasks of the given trigger type."""
        tasks = await self.list_active_tasks(TRIGGER)
        return [t for t in tasks if t.trigger_type == trigger_type]

    async def list_ready_tasks(
        self, now: datetime, limit: int | None = None
    ) -> list[ScheduledTask]:
        """Active, non-trigger tasks whose next run has arrived, oldest due first."""
        sql = (
            f"{_SELECT_TASKS} WHERE status = ? AND task_type != ?"
            " AND next_run_at IS NOT NULL AND next_run_at <= ?"
            " ORDER BY next_run_at"
        )
        params: list = [ACTIVE, TRIGGER, format_instant(now)]
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._fetch_tasks(sql, tuple(params))

    async def list_upcoming_tasks(self, user_id: str, limit: int) -> list[ScheduledTask]:
        """A user's active tasks with a planned next run, soonest first."""
        return await self._fetch_tasks(
            f"{_SELECT_TASKS} WHERE user_id = ? AND status = ?"
            " AND next_run_at IS NOT NULL ORDER BY next_run_at LIMIT ?",
            (user_id, ACTIVE, limit),
        )

    async def task_stats(self, due_before: datetime) -> TaskStats:
        """Count tasks per status plus active tasks due before *due_before*."""
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "SELECT status, COUNT(*) FROM scheduled_tasks GROUP BY status"
            )
            counts = {status: count for status, count in await cursor.fetchall()}
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM scheduled_tasks"
                " WHERE status = ? AND next_run_at IS NOT NULL AND next_run_at <= ?",
                (ACTIVE, format_instant(due_before)),
            )
            (due_soon,) = await cursor.fetchone()
        finally:
            await conn.close()
        stats = TaskStats(due_soon=due_soon)
        for status in TASK_STATUSES:
            setattr(stats, status, counts.get(status, 0))
        return stats

    async def delete_completed_one_time_tasks(self, before: datetime) -> int:
        """Delete completed one-time tasks last updated before *before*."""
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "SELECT id FROM scheduled_tasks"
                " WHERE task_type = ? AND status = ? AND updated_at < ?",
                (ONE_TIME, COMPLETED, format_instant(before)),
            )
            ids = [row[0] for row in await cursor.fetchall()]
            for task_id in ids:
                await conn.execute("DELETE FROM task_webhooks WHERE task_id = ?", (task_id,))
                await conn.execute("DELETE FROM task_executions WHERE task_id = ?", (task_id,))
                await conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
            await conn.commit()
            return len(ids)
        finally:
            await conn.close()

    # -- Executions ------------------------------------------------------------

    async def add_execution(self, execution: TaskExecution) -> TaskExecution:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO task_executions ({EXECUTION_COLUMNS})"  # noqa: S608
                f" VALUES ({_EXECUTION_PLACEHOLDERS})",
                execution.to_row(),
            )
            await conn.commit()
            return execution
        finally:
            await conn.close()

    async def finish_execution(self, execution: TaskExecution) -> bool:
        """Write the final state of a running execution.

        Only rows still in ``running`` are touched, so a finalised record is
        never rewritten. Returns True if the row was updated.
        """
        row = execution.to_row()
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "UPDATE task_executions"
                " SET status = ?, completed_at = ?, duration_ms = ?, result = ?, error = ?, logs = ?"
                " WHERE id = ? AND status = 'running'",
                (row[2], row[5], row[6], row[7], row[8], row[9], row[0]),
            )
            await conn.commit()
            return cursor.rowcount > 0
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> TaskExecution | None:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                f"{_SELECT_EXECUTIONS} WHERE id = ?", (execution_id,)
            )
            row = await cursor.fetchone()
            return TaskExecution.from_row(tuple(row)) if row else None
        finally:
            await conn.close()

    async def list_executions(self, task_id: str, limit: int) -> list[TaskExecution]:
        """A task's executions, newest first."""
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                f"{_SELECT_EXECUTIONS} WHERE task_id = ?"
                " ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (task_id, limit),
            )
            rows = await cursor.fetchall()
            return [TaskExecution.from_row(tuple(row)) for row in rows]
        finally:
            await conn.close()

    async def prune_executions(self, keep: int) -> int:
        """Keep only the newest *keep* executions of every task. Returns rows deleted."""
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                """
                DELETE FROM task_executions WHERE id IN (
                    SELECT id FROM (
                        SELECT id, ROW_NUMBER() OVER (
                            PARTITION BY task_id ORDER BY started_at DESC, rowid DESC
                        ) AS rn
                        FROM task_executions
                    ) WHERE rn > ?
                )
                """,
                (keep,),
            )
            await conn.commit()
            return cursor.rowcount
        finally:
            await conn.close()

    # -- Webhook bindings ------------------------------------------------------

    async def add_webhook(self, binding: WebhookBinding) -> WebhookBinding:
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO task_webhooks"
                " (id, task_id, secret, created_at, last_triggered_at, trigger_count)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                binding.to_row(),
            )
            await conn.commit()
            logger.info("Added webhook binding %s for task %s", binding.id, binding.task_id)
            return binding
        finally:
            await conn.close()

    async def get_webhook(self, webhook_id: str) -> WebhookBinding | None:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "SELECT id, task_id, secret, created_at, last_triggered_at, trigger_count"
                " FROM task_webhooks WHERE id = ?",
                (webhook_id,),
            )
            row = await cursor.fetchone()
            return WebhookBinding.from_row(tuple(row)) if row else None
        finally:
            await conn.close()

    async def list_webhooks(self, task_id: str) -> list[WebhookBinding]:
        conn = await self._connect()
        try:
            cursor = await conn.execute(
                "SELECT id, task_id, secret, created_at, last_triggered_at, trigger_count"
                " FROM task_webhooks WHERE task_id = ? ORDER BY created_at",
                (task_id,),
            )
            rows = await cursor.fetchall()
            return [WebhookBinding.from_row(tuple(row)) for row in rows]
        finally:
            await conn.close()

    async def record_webhook_call(self, webhook_id: str, when: datetime) -> None:
        """Bump a binding's trigger count and last-triggered time."""
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE task_webhooks"
                " SET trigger_count = trigger_count + 1, last_triggered_at = ?"
                " WHERE id = ?",
                (format_instant(when), webhook_id),
            )
            await conn.commit()
        finally:
            await conn.close()
