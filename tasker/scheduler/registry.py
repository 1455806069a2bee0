"""CronRegistry — one APScheduler timer per scheduled task."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tasker.scheduler import schedule

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from apscheduler.schedulers.base import BaseScheduler

    from tasker.scheduler.models import ScheduledTask

    # Runner signature: async (task_id, trigger) -> None
    TaskRunner = Callable[[str, str], Awaitable[object]]

logger = logging.getLogger(__name__)

_RETRY_SUFFIX = ":retry"


class CronRegistry:
    """Maps task IDs to live timers.

    Recurring tasks get a cron timer and one-time tasks a timer at their
    instant; a task may additionally hold one pending retry timer. Every
    fire calls the attached runner, and anything the runner raises is
    logged rather than propagated so one failing task cannot take the
    scheduler down.

    Args:
        scheduler: APScheduler instance to host the jobs (a fresh
            ``AsyncIOScheduler`` in UTC by default).
    """

    def __init__(self, scheduler: BaseScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._runner: TaskRunner | None = None
        self._jobs: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def attach(self, runner: TaskRunner) -> None:
        """Set the coroutine function invoked as ``runner(task_id, trigger)`` on every fire."""
        self._runner = runner

    # -- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
        if not self._running:
            self._running = True
            logger.info("Cron registry started with %d armed task(s)", len(self._jobs))

    def shutdown(self) -> None:
        """Disarm every timer and stop the scheduler."""
        with self._lock:
            for task_id in list(self._jobs):
                self.disarm(task_id)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Cron registry stopped")

    # -- Arming ----------------------------------------------------------------

    def arm(self, task: ScheduledTask) -> bool:
        """Install the task's timer, replacing any existing one (pending retries included).

        Returns False for tasks that have nothing to schedule.
        """
        if task.is_recurring and task.cron:
            trigger = schedule.build_cron_trigger(task.cron, task.timezone)
        elif task.is_one_time and (task.next_run_at or task.run_at) is not None:
            # One-time tasks fire at next_run_at, which moves forward on retry.
            trigger = schedule.build_date_trigger(task.next_run_at or task.run_at)
        else:
            return False

        with self._lock:
            self.disarm(task.id)
            self._add_job(task.id, task.id, trigger, "schedule")
        logger.debug("Armed %s task %s (%s)", task.task_type, task.id, task.name)
        return True

    def arm_retry(self, task_id: str, run_at: datetime) -> None:
        """Install a one-shot retry timer next to the task's regular timer."""
        job_id = task_id + _RETRY_SUFFIX
        with self._lock:
            self._remove_job(task_id, job_id)
            self._add_job(task_id, job_id, schedule.build_date_trigger(run_at), "retry")
        logger.debug("Armed retry for task %s at %s", task_id, run_at.isoformat())

    def disarm_retry(self, task_id: str) -> None:
        """Remove a pending retry timer, leaving the regular timer in place."""
        job_id = task_id + _RETRY_SUFFIX
        with self._lock:
            if job_id not in self._jobs.get(task_id, ()):
                return
            self._remove_job(task_id, job_id)
            if not self._jobs.get(task_id):
                self._jobs.pop(task_id, None)

    def disarm(self, task_id: str) -> None:
        """Remove every timer of a task. Safe for IDs that are not armed."""
        with self._lock:
            for job_id in list(self._jobs.get(task_id, ())):
                self._remove_job(task_id, job_id)
            self._jobs.pop(task_id, None)

    def is_armed(self, task_id: str) -> bool:
        with self._lock:
            return bool(self._jobs.get(task_id))

    def has_retry(self, task_id: str) -> bool:
        with self._lock:
            return task_id + _RETRY_SUFFIX in self._jobs.get(task_id, ())

    def armed_ids(self) -> list[str]:
        with self._lock:
            return [task_id for task_id, jobs in self._jobs.items() if jobs]

    def next_fire_time(self, task_id: str) -> datetime | None:
        """The regular timer's next fire time, once the scheduler is running."""
        job = self._scheduler.get_job(task_id)
        return getattr(job, "next_run_time", None) if job else None

    # -- Internal --------------------------------------------------------------

    def _add_job(self, task_id: str, job_id: str, trigger, kind: str) -> None:
        self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=job_id,
            args=[task_id, job_id, kind],
            misfire_grace_time=None,
            coalesce=True,
            replace_existing=True,
        )
        self._jobs.setdefault(task_id, set()).add(job_id)

    def _remove_job(self, task_id: str, job_id: str) -> None:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug("Job %s not found in scheduler (may already be removed)", job_id)
        jobs = self._jobs.get(task_id)
        if jobs is not None:
            jobs.discard(job_id)

    def _forget_one_shot(self, task_id: str, job_id: str) -> None:
        """Drop bookkeeping for a date-triggered job APScheduler has already discarded."""
        with self._lock:
            jobs = self._jobs.get(task_id)
            if jobs is None or job_id not in jobs:
                return
            if self._scheduler.get_job(job_id) is None:
                jobs.discard(job_id)
            if not jobs:
                self._jobs.pop(task_id, None)

    async def _fire(self, task_id: str, job_id: str, kind: str) -> None:
        """Job callback: run the task, never letting an error escape."""
        self._forget_one_shot(task_id, job_id)
        if self._runner is None:
            logger.warning("Timer fired for task %s but no runner is attached", task_id)
            return
        try:
            await self._runner(task_id, kind)
        except Exception:
            logger.exception("Scheduled run failed for task %s", task_id)
