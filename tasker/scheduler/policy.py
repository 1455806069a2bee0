"""Retry & notification policy — reacts to the outcome of a run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from tasker.scheduler import schedule
from tasker.scheduler.models import COMPLETED, FAILED

if TYPE_CHECKING:
    from datetime import datetime

    from tasker.notifications.router import Notifier
    from tasker.scheduler.models import ScheduledTask

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"


@dataclass
class FailureDecision:
    """What to do after a failed attempt: retry at ``retry_at``, or give up."""

    retry_at: datetime | None = None

    @property
    def should_retry(self) -> bool:
        return self.retry_at is not None


def decide_failure(task: ScheduledTask, now: datetime) -> FailureDecision:
    """Retry after a fixed backoff while fewer than ``max_retries`` retries were made.

    ``task.failure_count`` is the number of consecutive failures *before*
    this one, so ``max_retries=2`` allows three attempts in total.
    """
    policy = task.retry_policy
    if policy is not None and task.failure_count < policy.max_retries:
        return FailureDecision(retry_at=now + timedelta(milliseconds=policy.backoff_ms))
    return FailureDecision()


def apply_success(task: ScheduledTask, now: datetime) -> None:
    """Update bookkeeping after a successful run (mutates *task*)."""
    task.run_count += 1
    task.failure_count = 0
    task.last_run_at = now
    task.updated_at = now
    task.next_run_at = None if task.is_finished else schedule.next_run(task, now)
    if task.is_one_time:
        task.status = COMPLETED
        task.next_run_at = None


def apply_failure(task: ScheduledTask, now: datetime) -> FailureDecision:
    """Update bookkeeping after a failed run (mutates *task*) and return the decision."""
    decision = decide_failure(task, now)
    task.failure_count += 1
    task.updated_at = now
    if decision.should_retry:
        task.next_run_at = decision.retry_at
    else:
        task.status = FAILED
        task.next_run_at = None
    return decision


def should_notify(task: ScheduledTask, outcome: str) -> bool:
    policy = task.notification
    if policy is None or not policy.channels:
        return False
    if outcome == SUCCESS:
        return policy.on_success
    return policy.on_failure


async def notify_outcome(
    notifier: Notifier | None,
    task: ScheduledTask,
    outcome: str,
    payload: Any,
) -> None:
    """Fan out a success/failure notification if the task asks for one.

    Delivery problems are logged and never raised.
    """
    if notifier is None or not should_notify(task, outcome):
        return
    try:
        await notifier.notify(task, outcome, payload)
    except Exception:
        logger.exception("Notification failed for task '%s' (%s)", task.name, task.id)
