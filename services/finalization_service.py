"""
Collaborative Assessment Finalization

Reviewers sign off on the shared assessment document. Any change to the
document content invalidates every sign-off: on_content_changed() deletes
all finalization rows for the activity before any all-finalized check is
trusted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from models import (
    AssessmentDocument, FinalizationStatus, MembershipStatus, ReviewerMembership, TimelineEventType
)
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.timeline_service import TimelineService
from utils.atomic_transactions import locked_activity, require_atomic_transaction
from utils.error_handler import ErrorCode
from utils.helpers import content_hash as hash_content, utcnow

logger = logging.getLogger(__name__)

EMPTY_CONTENT_HASH = hash_content("")


@dataclass
class FinalizationResult:
    """Outcome of a finalization toggle"""

    success: bool
    is_finalized: bool = False
    all_finalized: bool = False
    finalized_count: int = 0
    active_count: int = 0
    content_reset: bool = False
    error_code: Optional[ErrorCode] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "is_finalized": self.is_finalized,
            "all_finalized": self.all_finalized,
            "finalized_count": self.finalized_count,
            "active_count": self.active_count,
            "content_reset": self.content_reset,
            "error_code": self.error_code.value if self.error_code else None,
        }


class FinalizationService:

    @staticmethod
    def _get_document(session: Session, activity_id: int) -> Optional[AssessmentDocument]:
        return session.execute(
            select(AssessmentDocument).where(AssessmentDocument.activity_id == activity_id)
        ).scalar_one_or_none()

    @staticmethod
    def _is_active_reviewer(session: Session, activity_id: int, user_id: int) -> bool:
        status = session.execute(
            select(ReviewerMembership.status).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.user_id == user_id,
            )
        ).scalar_one_or_none()
        return status in MembershipStatus.active_values()

    @staticmethod
    def finalization_counts(session: Session, activity_id: int) -> tuple:
        """(finalized active reviewers, active reviewers)"""
        active_ids = select(ReviewerMembership.user_id).where(
            ReviewerMembership.activity_id == activity_id,
            ReviewerMembership.status.in_(MembershipStatus.active_values()),
        )
        active = session.execute(
            select(func.count()).select_from(active_ids.subquery())
        ).scalar_one()
        finalized = session.execute(
            select(func.count(FinalizationStatus.id)).where(
                FinalizationStatus.activity_id == activity_id,
                FinalizationStatus.is_finalized.is_(True),
                FinalizationStatus.reviewer_id.in_(active_ids),
            )
        ).scalar_one()
        return finalized, active

    @classmethod
    def is_all_finalized(cls, session: Session, activity_id: int) -> bool:
        finalized, active = cls.finalization_counts(session, activity_id)
        return active > 0 and finalized >= active

    # ------------------------------------------------------------------
    # Content change invalidation
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def on_content_changed(cls, activity_id: int, new_hash: str, session: Session = None) -> bool:
        """
        Invalidate every reviewer's finalization when the assessment hash changes.

        A document that has never been hashed counts as empty content, so
        sign-offs given before the first snapshot are cleared by it too.
        Returns True when at least one sign-off was cleared.
        """
        activity = locked_activity(session, activity_id)
        if activity is None:
            return False

        document = cls._get_document(session, activity_id)
        if document is None:
            document = AssessmentDocument(activity_id=activity_id, last_content_hash=EMPTY_CONTENT_HASH)
            session.add(document)

        previous_hash = document.last_content_hash or EMPTY_CONTENT_HASH
        if previous_hash == new_hash:
            document.last_content_hash = new_hash
            session.flush()
            return False

        document.last_content_hash = new_hash
        deleted = session.execute(
            delete(FinalizationStatus).where(FinalizationStatus.activity_id == activity_id)
        ).rowcount
        session.flush()
        if not deleted:
            logger.debug(f"Assessment hash for activity {activity_id} changed with no sign-offs to clear")
            return False

        TimelineService.record(
            session, activity_id, TimelineEventType.ASSESSMENT_RESET,
            title="Assessment changed",
            description="Assessment content changed; every reviewer must finalize again",
            stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session, NotificationEvent.ASSESSMENT_RESET, activity_id,
            {"activity_uuid": activity.activity_uuid, "cleared_finalizations": deleted},
        )
        session.flush()
        logger.info(f"♻️ ASSESSMENT_RESET: activity {activity_id} content changed, cleared {deleted} finalizations")
        return True

    @classmethod
    @require_atomic_transaction
    def record_snapshot(
        cls,
        activity_id: int,
        content: str,
        content_hash: Optional[str] = None,
        taken_at: Optional[datetime] = None,
        pad_id: Optional[str] = None,
        session: Session = None,
    ) -> bool:
        """Store the latest pad snapshot and apply the content-change rule; True when sign-offs were reset"""
        new_hash = content_hash or hash_content(content)
        reset = cls.on_content_changed(activity_id, new_hash, session=session)
        document = cls._get_document(session, activity_id)
        if document is None:
            return reset
        document.last_backup_content = content
        document.last_backup_at = taken_at or utcnow()
        if pad_id:
            document.pad_id = pad_id
        session.flush()
        return reset

    # ------------------------------------------------------------------
    # Toggle
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def toggle_finalization(
        cls,
        activity_id: int,
        reviewer_id: int,
        finalized: bool,
        content_hash: Optional[str] = None,
        session: Session = None,
    ) -> FinalizationResult:
        """Set the reviewer's sign-off against the given content hash and recompute all-finalized"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return FinalizationResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)
        if not cls._is_active_reviewer(session, activity_id, reviewer_id):
            return FinalizationResult(success=False, error_code=ErrorCode.NOT_A_REVIEWER)

        reset = False
        if content_hash is not None:
            reset = cls.on_content_changed(activity_id, content_hash, session=session)

        status = session.execute(
            select(FinalizationStatus).where(
                FinalizationStatus.activity_id == activity_id,
                FinalizationStatus.reviewer_id == reviewer_id,
            )
        ).scalar_one_or_none()
        if status is None:
            status = FinalizationStatus(activity_id=activity_id, reviewer_id=reviewer_id)
            session.add(status)

        status.is_finalized = finalized
        status.finalized_at = utcnow() if finalized else None
        status.content_hash_at_finalization = content_hash if finalized else None
        session.flush()

        finalized_count, active_count = cls.finalization_counts(session, activity_id)
        all_finalized = active_count > 0 and finalized_count >= active_count
        logger.info(
            f"📝 FINALIZATION_TOGGLED: reviewer {reviewer_id} on activity {activity_id} -> {finalized} "
            f"({finalized_count}/{active_count})"
        )
        return FinalizationResult(
            success=True,
            is_finalized=finalized,
            all_finalized=all_finalized,
            finalized_count=finalized_count,
            active_count=active_count,
            content_reset=reset,
        )

    @classmethod
    def check_ready_for_completion(cls, session: Session, activity_id: int) -> dict:
        """All active reviewers finalized and every sign-off matches the current content hash"""
        finalized, active = cls.finalization_counts(session, activity_id)
        document = cls._get_document(session, activity_id)
        current_hash = (document.last_content_hash if document else None) or EMPTY_CONTENT_HASH

        mismatched = session.execute(
            select(func.count(FinalizationStatus.id)).where(
                FinalizationStatus.activity_id == activity_id,
                FinalizationStatus.is_finalized.is_(True),
                FinalizationStatus.content_hash_at_finalization.isnot(None),
                FinalizationStatus.content_hash_at_finalization != current_hash,
            )
        ).scalar_one()

        return {
            "ready": active > 0 and finalized >= active and mismatched == 0,
            "finalized_count": finalized,
            "active_count": active,
            "hash_mismatches": mismatched,
            "current_hash": current_hash,
        }
