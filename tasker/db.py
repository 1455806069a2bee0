"""SQLite connection helper over aiosqlite.

Every store operation opens a short-lived connection through ``connect()``.
Local files run in WAL mode with a busy timeout so timer callbacks and
lifecycle calls can write concurrently, and foreign keys are enforced so
executions and webhook bindings cascade with their task.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiosqlite

from tasker.config import settings

if TYPE_CHECKING:
    from pathlib import Path

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS scheduled_tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        task_type TEXT NOT NULL,
        schedule TEXT,
        trigger_config TEXT,
        action TEXT NOT NULL,
        conditions TEXT NOT NULL DEFAULT '[]',
        retry_policy TEXT,
        notification TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        last_run_at TEXT,
        next_run_at TEXT,
        run_count INTEGER NOT NULL DEFAULT 0,
        failure_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_user
        ON scheduled_tasks (user_id, created_at)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_due
        ON scheduled_tasks (status, next_run_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS task_executions (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES scheduled_tasks(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        trigger TEXT NOT NULL DEFAULT 'schedule',
        started_at TEXT NOT NULL,
        completed_at TEXT,
        duration_ms INTEGER,
        result TEXT,
        error TEXT,
        logs TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_task_executions_task
        ON task_executions (task_id, started_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS task_webhooks (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL REFERENCES scheduled_tasks(id) ON DELETE CASCADE,
        secret TEXT NOT NULL,
        created_at TEXT NOT NULL,
        last_triggered_at TEXT,
        trigger_count INTEGER NOT NULL DEFAULT 0
    )
    """,
)


async def connect(path: Path | None = None) -> aiosqlite.Connection:
    """Open a connection to *path* (default ``settings.database_path``)."""
    db_path = path or settings.database_path
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    await db.execute("PRAGMA foreign_keys=ON")
    return db


async def create_schema(db: aiosqlite.Connection) -> None:
    """Create all tables and indexes if they do not exist yet."""
    for statement in SCHEMA:
        await db.execute(statement)
    await db.commit()
