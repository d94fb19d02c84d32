"""Activity timeline writes and reads"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import TimelineEvent, TimelineEventType

logger = logging.getLogger(__name__)


class TimelineService:

    @staticmethod
    def record(
        session: Session,
        activity_id: int,
        event_type: TimelineEventType,
        title: str,
        description: Optional[str] = None,
        user_id: Optional[int] = None,
        from_stage_key: Optional[str] = None,
        stage_key: Optional[str] = None,
    ) -> TimelineEvent:
        event = TimelineEvent(
            activity_id=activity_id,
            event_type=event_type.value,
            title=title,
            description=description,
            user_id=user_id,
            from_stage_key=from_stage_key,
            stage_key=stage_key,
        )
        session.add(event)
        return event

    @staticmethod
    def for_activity(session: Session, activity_id: int) -> List[TimelineEvent]:
        stmt = (
            select(TimelineEvent)
            .where(TimelineEvent.activity_id == activity_id)
            .order_by(TimelineEvent.created_at, TimelineEvent.id)
        )
        return list(session.execute(stmt).scalars())
