"""Notification fan-out for task outcomes."""

from tasker.notifications.channels import NotificationChannel
from tasker.notifications.router import NotificationRouter, Notifier
from tasker.notifications.webhook_channel import WebhookChannel

__all__ = [
    "NotificationChannel",
    "NotificationRouter",
    "Notifier",
    "WebhookChannel",
]
