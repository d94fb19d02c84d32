"""
Notification outbox dispatcher.

Delivers pending outbox events to the notification service. A failed
delivery bumps retry_count and records last_error on the outbox row; the
change that produced the event is already committed and is never touched.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from config import Config
from models import OutboxEvent
from services.notification_outbox import NotificationOutbox
from utils.atomic_transactions import atomic_transaction
from utils.helpers import utcnow

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """Raised by a sender when the notification service rejects an event"""


class LoggingNotificationSender:
    """Default sender: writes events to the log"""

    def send(self, event: OutboxEvent) -> None:
        logger.info(f"📣 NOTIFICATION: {event.event_type} for {event.aggregate_id}: {event.event_data}")


class WebhookNotificationSender:
    """POSTs each event as JSON to the notification service"""

    def __init__(self, url: str, timeout: int = None):
        self.url = url
        self.timeout = timeout or Config.NOTIFICATION_TIMEOUT_SECONDS

    def send(self, event: OutboxEvent) -> None:
        payload: Dict[str, Any] = {
            "id": event.id,
            "event_type": event.event_type,
            "aggregate_id": event.aggregate_id,
            "data": event.event_data,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NotificationDeliveryError(str(e)) from e
        if response.status_code >= 400:
            raise NotificationDeliveryError(f"HTTP {response.status_code}: {response.text[:200]}")


def default_sender():
    if Config.NOTIFICATION_WEBHOOK_URL:
        return WebhookNotificationSender(Config.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotificationSender()


def dispatch_pending(sender=None, limit: Optional[int] = None) -> Dict[str, int]:
    """Deliver one batch of pending events; returns delivered/failed counts"""
    sender = sender or default_sender()
    results = {"delivered": 0, "failed": 0}

    with atomic_transaction() as session:
        events = NotificationOutbox.pending(session, limit)
        for event in events:
            try:
                sender.send(event)
            except NotificationDeliveryError as e:
                event.retry_count = event.retry_count + 1
                event.last_error = str(e)[:1000]
                results["failed"] += 1
                level = logging.ERROR if event.retry_count >= Config.OUTBOX_MAX_RETRIES else logging.WARNING
                logger.log(
                    level,
                    f"⚠️ NOTIFICATION_DELIVERY_FAILED: event {event.id} ({event.event_type}) "
                    f"attempt {event.retry_count}/{Config.OUTBOX_MAX_RETRIES}: {e}",
                )
                continue
            event.processed = True
            event.processed_at = utcnow()
            results["delivered"] += 1

    if results["delivered"] or results["failed"]:
        logger.info(f"📬 OUTBOX_DISPATCH: delivered {results['delivered']}, failed {results['failed']}")
    return results


async def run_notification_dispatch():
    """Scheduler entry point"""
    try:
        return await asyncio.to_thread(dispatch_pending)
    except Exception as e:
        logger.error(f"❌ OUTBOX_DISPATCH_ERROR: {e}")
        return {"delivered": 0, "failed": 0, "error": str(e)}
