"""Exceptions raised by the task engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tasker.scheduler.models import TaskExecution


class TaskerError(Exception):
    """Base class for all engine errors."""


class InvalidTask(TaskerError, ValueError):
    """A task definition failed validation. Nothing was persisted."""


class NotFound(TaskerError, LookupError):
    """A task or webhook binding does not exist (or cannot be triggered)."""


class Unauthorized(TaskerError):
    """A webhook call presented the wrong secret."""


class ExecutionError(TaskerError):
    """The action dispatcher failed during a run.

    Attributes:
        execution: The finalised ``failed`` execution record, when available.
    """

    def __init__(self, message: str, execution: TaskExecution | None = None) -> None:
        super().__init__(message)
        self.execution = execution
