"""
Notification Intents
====================

Outbound notifications are described, not delivered, by the core. A
notifier adapter turns an intent into a webhook call (or nothing at all).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict


@dataclass(frozen=True)
class NotificationIntent:
    event_type: str
    recipient: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "recipient": self.recipient,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


class INotifier(ABC):
    """Fire-and-forget notification sink."""

    @abstractmethod
    async def notify(self, intent: NotificationIntent) -> bool:
        """
        Deliver an intent.

        Returns:
            True if delivered, False if skipped or failed. Never raises.
        """
