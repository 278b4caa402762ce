"""Delivery transports.

The dispatcher only knows ``DeliveryTransport.send``; how the follow-up actually
reaches a person is the business of whatever sits behind the transport.
"""
from datetime import datetime
import logging
from typing import Any, Dict, Optional

import requests

from .config import settings, ReminderSettings
from .errors import TransportError
from .models import Reminder


logger = logging.getLogger(__name__)


def build_event(reminder: Reminder) -> Dict[str, Any]:
    """Wire payload describing a reminder delivery."""
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "reminder_id": str(reminder.id),
        "entity_id": reminder.entity_id,
        "scheduled_at": _iso(reminder.scheduled_at),
        "sent_at": _iso(reminder.last_sent_at),
        "sent_count": reminder.sent_count,
        "frequency": reminder.frequency,
        "priority": reminder.priority,
        "notes": reminder.notes,
        "tags": list(reminder.tags or []),
        "client": {
            "name": reminder.client_name,
            "email": reminder.client_email,
            "phone": reminder.client_phone,
        },
    }


class DeliveryTransport:
    """Narrow interface to the delivery collaborator. Raise TransportError on failure."""

    def send(self, reminder: Reminder) -> None:
        raise NotImplementedError


class LoggingTransport(DeliveryTransport):
    """Records the delivery in the log only (local runs, dry deployments)."""

    def send(self, reminder: Reminder) -> None:
        logger.info(
            f"Reminder {reminder.id} delivered for entity {reminder.entity_id} "
            f"(client={reminder.client_name or 'N/A'}, sent_count={reminder.sent_count})"
        )


class WebhookTransport(DeliveryTransport):
    """POSTs the delivery event as JSON to a notifier service."""

    def __init__(self, url: str, timeout: int = 10, headers: Optional[Dict[str, str]] = None):
        if not url:
            raise ValueError("WebhookTransport requires a URL")
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    def send(self, reminder: Reminder) -> None:
        try:
            response = requests.post(self.url, json=build_event(reminder), headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"Webhook delivery failed: {e}", reminder_id=str(reminder.id)) from e
        logger.debug(f"Webhook accepted reminder {reminder.id}: HTTP {response.status_code}")


def build_transport(config: ReminderSettings = settings) -> DeliveryTransport:
    if config.TRANSPORT == "webhook":
        return WebhookTransport(config.WEBHOOK_URL or "", timeout=config.WEBHOOK_TIMEOUT_SECONDS)
    return LoggingTransport()
