"""
Notification outbox.

Events are written in the same transaction as the change that caused them,
so a notification exists if and only if the change committed. Delivery is
done later by jobs/notification_dispatcher.py; a failed delivery only
updates the outbox row.
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import OutboxEvent

logger = logging.getLogger(__name__)


class NotificationEvent(Enum):
    """Semantic events delivered to the notification service"""
    ACTIVITY_CREATED = "activity_created"
    STAGE_TRANSITION = "stage_transition"
    REVIEWER_JOINED = "reviewer_joined"
    REVIEWER_REMOVED = "reviewer_removed"
    AWARD_GIVEN = "award_given"
    ASSESSMENT_RESET = "assessment_reset"
    ACTIVITY_COMPLETED = "activity_completed"


class NotificationOutbox:
    """Writes and reads pending notification events"""

    @staticmethod
    def enqueue(session: Session, event: NotificationEvent, aggregate_id, data: Dict[str, Any]) -> OutboxEvent:
        outbox_event = OutboxEvent(
            event_type=event.value,
            aggregate_id=str(aggregate_id),
            event_data=data,
            processed=False,
            retry_count=0,
        )
        session.add(outbox_event)
        logger.debug(f"📬 OUTBOX_ENQUEUED: {event.value} for {aggregate_id}")
        return outbox_event

    @staticmethod
    def pending(session: Session, limit: int = None) -> List[OutboxEvent]:
        """Unprocessed events that have not exhausted their retries, oldest first"""
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.processed.is_(False),
                OutboxEvent.retry_count < Config.OUTBOX_MAX_RETRIES,
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit or Config.OUTBOX_BATCH_SIZE)
        )
        return list(session.execute(stmt).scalars())

    @staticmethod
    def for_aggregate(session: Session, aggregate_id) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.aggregate_id == str(aggregate_id))
            .order_by(OutboxEvent.id)
        )
        return list(session.execute(stmt).scalars())
