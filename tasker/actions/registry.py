"""Action handler registry — the executor side of action dispatch."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Handler signature: async (action: dict, logs: list[str]) -> result
ActionHandler = Callable[[dict[str, Any], list[str]], Awaitable[Any]]


@runtime_checkable
class ActionExecutor(Protocol):
    """Anything that can run a task action.

    ``execute`` returns a JSON-serialisable result or raises. Progress lines
    may be appended to *logs*; they end up in the execution record.
    """

    async def execute(self, action: dict[str, Any], logs: list[str]) -> Any: ...


class UnknownActionError(LookupError):
    """No handler is registered for an action type."""


class ActionRegistry:
    """Registry of per-kind action handlers, itself an ``ActionExecutor``.

    Usage::

        actions = ActionRegistry()

        @actions.handler("ai-prompt")
        async def run_prompt(action: dict, logs: list[str]) -> dict:
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def handler(self, action_type: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator to register an async function as the handler for *action_type*."""

        def decorator(fn: ActionHandler) -> ActionHandler:
            self.register(action_type, fn)
            return fn

        return decorator

    def register(self, action_type: str, fn: ActionHandler) -> None:
        self._handlers[action_type] = fn
        logger.info("Registered action handler: %s", action_type)

    def get(self, action_type: str) -> ActionHandler | None:
        return self._handlers.get(action_type)

    @property
    def action_types(self) -> list[str]:
        """All registered action types."""
        return list(self._handlers)

    async def execute(self, action: dict[str, Any], logs: list[str]) -> Any:
        action_type = str(action.get("type", ""))
        fn = self._handlers.get(action_type)
        if fn is None:
            msg = f"Unknown action type: {action_type}"
            raise UnknownActionError(msg)
        logs.append(f"Action type: {action_type}")
        return await fn(action, logs)
