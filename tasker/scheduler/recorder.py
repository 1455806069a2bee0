"""ExecutionRecorder — append-only audit trail of run attempts."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from tasker.scheduler.models import COMPLETED, FAILED, TaskExecution, make_id, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tasker.scheduler.models import ScheduledTask
    from tasker.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """Creates one execution record per attempt and finalises it exactly once.

    Args:
        store: TaskStore the records are written to.
        clock: Returns the current time (aware UTC).
    """

    def __init__(self, store: TaskStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    async def start(self, task: ScheduledTask, trigger: str) -> TaskExecution:
        """Persist a new ``running`` execution for *task*."""
        execution = TaskExecution(
            id=make_id(),
            task_id=task.id,
            started_at=self._clock(),
            trigger=trigger,
            logs=[f"Starting task execution: {task.name}"],
        )
        await self._store.add_execution(execution)
        return execution

    async def complete(self, execution: TaskExecution, result: Any = None) -> TaskExecution:
        return await self._finish(execution, COMPLETED, result=result)

    async def fail(self, execution: TaskExecution, error: str) -> TaskExecution:
        return await self._finish(execution, FAILED, error=error)

    async def _finish(
        self,
        execution: TaskExecution,
        status: str,
        *,
        result: Any = None,
        error: str | None = None,
    ) -> TaskExecution:
        if execution.is_finished:
            msg = f"Execution {execution.id} is already {execution.status}"
            raise RuntimeError(msg)

        completed_at = self._clock()
        execution.status = status
        execution.completed_at = completed_at
        execution.duration_ms = max(
            0, int((completed_at - execution.started_at).total_seconds() * 1000)
        )
        execution.result = result
        execution.error = error

        if not await self._store.finish_execution(execution):
            logger.warning("Execution %s was not running in the store", execution.id)
        logger.info(
            "Execution %s for task %s %s in %dms",
            execution.id,
            execution.task_id,
            status,
            execution.duration_ms,
        )
        return execution
