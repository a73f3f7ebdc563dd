"""Email delivery backends for notification jobs."""

from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, Protocol

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmailMessage:
    """A plain-text email ready for delivery."""

    to: str
    subject: str
    body: str


class EmailSender(Protocol):
    """Anything that can deliver an EmailMessage."""

    async def send(self, message: EmailMessage) -> Dict[str, Any]: ...


class LogEmailSender:
    """Sender that records deliveries in the log instead of sending mail.

    Keeps the most recent ``history`` messages in ``sent`` for inspection.
    """

    def __init__(self, history: int = 100) -> None:
        self.sent: deque[EmailMessage] = deque(maxlen=history)

    async def send(self, message: EmailMessage) -> Dict[str, Any]:
        logger.info("email_sending", to=message.to, subject=message.subject)
        self.sent.append(message)
        logger.info(
            "email_sent",
            to=message.to,
            subject=message.subject,
            body_length=len(message.body),
        )
        return {"to": message.to, "subject": message.subject, "sent": True}
