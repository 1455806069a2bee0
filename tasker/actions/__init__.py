"""Action dispatch — executor protocol, handler registry and built-in handlers."""

from tasker.actions.handlers import default_registry
from tasker.actions.registry import ActionExecutor, ActionRegistry, UnknownActionError

__all__ = [
    "ActionExecutor",
    "ActionRegistry",
    "UnknownActionError",
    "default_registry",
]
