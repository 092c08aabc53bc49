"""Admin notifications (Telegram, logging)."""

from src.devpipeline.notifications.notifier import (
    CompositeNotifier,
    LoggingNotifier,
    NotificationButton,
    NotificationMessage,
    NotificationResult,
    Notifier,
    NullNotifier,
    TelegramNotifier,
    parse_chat_id,
)

__all__ = [
    "CompositeNotifier",
    "LoggingNotifier",
    "NotificationButton",
    "NotificationMessage",
    "NotificationResult",
    "Notifier",
    "NullNotifier",
    "TelegramNotifier",
    "parse_chat_id",
]
