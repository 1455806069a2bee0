"""NotificationChannel protocol — interface for all notification delivery channels."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class NotificationChannel(Protocol):
    """Protocol that all notification channels must satisfy."""

    @property
    def name(self) -> str:
        """Unique channel identifier (``"email"``, ``"webhook"`` or ``"push"``)."""
        ...

    async def send(
        self,
        user_id: str,
        message: str,
        *,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Deliver a message with optional structured data. Returns True on success."""
        ...
