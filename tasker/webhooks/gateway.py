"""WebhookGateway — turns inbound webhook calls and events into task runs."""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import TYPE_CHECKING, Any

from tasker.config import settings
from tasker.errors import ExecutionError, InvalidTask, NotFound, Unauthorized
from tasker.scheduler.models import WebhookBinding, make_id, utcnow

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from tasker.scheduler.manager import TaskManager
    from tasker.scheduler.models import TaskExecution
    from tasker.scheduler.store import TaskStore

logger = logging.getLogger(__name__)


class WebhookGateway:
    """Binds trigger tasks to webhook ids and dispatches inbound calls.

    The HTTP layer in front of this is out of scope: it is expected to
    pass the id from the URL path, the ``secret`` query parameter and the
    decoded JSON body to ``handle()``.
    """

    def __init__(
        self,
        manager: TaskManager,
        store: TaskStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._manager = manager
        self._store = store
        self._clock = clock

    async def bind(self, task_id: str) -> WebhookBinding:
        """Create a new id/secret pair for a webhook-triggered task."""
        task = await self._store.get_task(task_id)
        if task is None:
            msg = f"Task {task_id} not found"
            raise NotFound(msg)
        if not task.is_trigger or task.trigger_type != "webhook":
            msg = f"Task {task_id} is not a webhook-triggered task"
            raise InvalidTask(msg)

        binding = WebhookBinding(
            id=make_id(),
            task_id=task_id,
            secret=secrets.token_urlsafe(settings.webhook_secret_bytes),
            created_at=self._clock(),
        )
        return await self._store.add_webhook(binding)

    async def generate_webhook_url(self, task_id: str) -> str:
        """Bind the task and return the URL external callers should hit."""
        binding = await self.bind(task_id)
        base = settings.webhook_base_url.rstrip("/")
        return f"{base}/webhooks/{binding.id}?secret={binding.secret}"

    async def handle(
        self,
        webhook_id: str,
        payload: Any = None,
        *,
        secret: str | None = None,
    ) -> TaskExecution:
        """Authenticate an inbound call and run the bound task with *payload*.

        A failing action still returns its (failed) execution record; the
        caller sees the outcome there rather than as an exception.

        Raises:
            NotFound: Unknown webhook id, or its task is gone or not active.
            Unauthorized: The secret is missing or does not match.
        """
        binding = await self._store.get_webhook(webhook_id)
        if binding is None:
            msg = f"Webhook {webhook_id} not found"
            raise NotFound(msg)
        if secret is None or not hmac.compare_digest(
            secret.encode("utf-8"), binding.secret.encode("utf-8")
        ):
            logger.warning("Rejected webhook call with bad secret: %s", webhook_id)
            msg = "Invalid webhook secret"
            raise Unauthorized(msg)

        task = await self._store.get_task(binding.task_id)
        if task is None or not task.is_active:
            msg = f"No active task for webhook {webhook_id}"
            raise NotFound(msg)

        await self._store.record_webhook_call(webhook_id, self._clock())
        logger.info("Webhook %s triggered task %s", webhook_id, task.id)
        try:
            return await self._manager.run_now(task.id, payload, trigger="webhook")
        except ExecutionError as exc:
            return exc.execution

    async def handle_event(
        self, user_id: str, event: str, payload: Any = None
    ) -> list[TaskExecution]:
        """Run every active event-trigger task of *user_id* listening for *event*."""
        tasks = await self._store.list_trigger_tasks("event")
        matching = [
            t
            for t in tasks
            if t.user_id == user_id and (t.trigger.get("config") or {}).get("event") == event
        ]
        logger.info("Event '%s' for user %s matched %d task(s)", event, user_id, len(matching))

        executions = []
        for task in matching:
            try:
                executions.append(await self._manager.run_now(task.id, payload, trigger="event"))
            except ExecutionError as exc:
                executions.append(exc.execution)
        return executions
