"""Built-in action handlers: outbound HTTP webhook calls and action chains."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tasker.actions.registry import ActionHandler, ActionRegistry
from tasker.config import settings

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 300


def make_webhook_handler(transport: httpx.AsyncBaseTransport | None = None) -> ActionHandler:
    """Build the ``webhook`` handler.

    The action carries ``url``, ``method`` (default POST) and optional
    ``headers`` and JSON ``body``. Any non-2xx response is a failure.
    *transport* is handed to httpx, mainly so tests can mock the network.
    """

    async def run_webhook(action: dict[str, Any], logs: list[str]) -> dict[str, Any]:
        url = action.get("url")
        if not url:
            msg = "webhook action requires a url"
            raise ValueError(msg)
        method = str(action.get("method") or "POST").upper()
        logs.append(f"Calling webhook: {method} {url}")

        async with httpx.AsyncClient(
            timeout=settings.http_timeout_seconds, transport=transport
        ) as client:
            resp = await client.request(
                method,
                url,
                headers=action.get("headers"),
                json=action.get("body"),
            )

        logs.append(f"Webhook responded with status {resp.status_code}")
        try:
            data: Any = resp.json()
        except ValueError:
            data = resp.text

        if resp.is_error:
            msg = f"Webhook failed with status {resp.status_code}: {str(data)[:_MAX_ERROR_BODY]}"
            raise RuntimeError(msg)
        return {"status": resp.status_code, "data": data}

    return run_webhook


def make_chain_handler(registry: ActionRegistry) -> ActionHandler:
    """Build the ``chain`` handler: run ``action["tasks"]`` in order through *registry*.

    The first failing step aborts the chain.
    """

    async def run_chain(action: dict[str, Any], logs: list[str]) -> dict[str, Any]:
        steps = action.get("tasks") or []
        results = []
        for index, step in enumerate(steps, start=1):
            logs.append(f"Chain step {index}/{len(steps)}: {step.get('type', '')}")
            results.append(await registry.execute(step, logs))
        return {"results": results}

    return run_chain


def default_registry(transport: httpx.AsyncBaseTransport | None = None) -> ActionRegistry:
    """An ActionRegistry with the built-in handlers installed."""
    registry = ActionRegistry()
    registry.register("webhook", make_webhook_handler(transport))
    registry.register("chain", make_chain_handler(registry))
    return registry
