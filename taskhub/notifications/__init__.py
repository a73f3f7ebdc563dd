"""Notification sink: email jobs fed by the completion hook."""

from .email import EmailMessage, EmailSender, LogEmailSender
from .handlers import compose_message, deliver_notification, register_notification_handlers
from .hooks import CompletionNotifier, summarize_result

__all__ = [
    "CompletionNotifier",
    "EmailMessage",
    "EmailSender",
    "LogEmailSender",
    "compose_message",
    "deliver_notification",
    "register_notification_handlers",
    "summarize_result",
]
