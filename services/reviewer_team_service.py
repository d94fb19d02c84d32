"""
Reviewer-Team State Machine

    joined -> locked_in     (LockIn before the commitment deadline)
    joined -> removed       (commitment timeout sweep, or manual removal)
    locked_in -> removed    (manual removal for cause only)

Only joined and locked_in count as active members.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal
from models import (
    Activity, ActivityTemplate, EntryOrigin, MembershipStatus, PenaltyType,
    ReviewerMembership, ReviewerPenalty, TemplateStage, TimelineEventType
)
from services.ledger_service import LedgerService
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.timeline_service import TimelineService
from utils.atomic_transactions import (
    atomic_transaction, lock_aggregate, locked_activity, require_atomic_transaction
)
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation
from utils.helpers import utcnow

logger = logging.getLogger(__name__)

COMMITMENT_TIMEOUT_REASON = "commitment timeout"


class MembershipTransitions:
    """Valid membership state changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {MembershipStatus.JOINED.value},
        MembershipStatus.JOINED.value: {MembershipStatus.LOCKED_IN.value, MembershipStatus.REMOVED.value},
        MembershipStatus.LOCKED_IN.value: {MembershipStatus.REMOVED.value},
        MembershipStatus.REMOVED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current: Optional[str], new: str) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, set())


@dataclass
class MembershipResult:
    """Outcome of a reviewer-team operation"""

    success: bool
    membership: Optional[ReviewerMembership] = None
    error_code: Optional[ErrorCode] = None
    current_status: Optional[str] = None
    active_count: Optional[int] = None
    max_size: Optional[int] = None

    def to_dict(self) -> dict:
        membership = self.membership
        return {
            "success": self.success,
            "error_code": self.error_code.value if self.error_code else None,
            "current_status": self.current_status,
            "active_count": self.active_count,
            "max_size": self.max_size,
            "membership": None if membership is None else {
                "activity_id": membership.activity_id,
                "user_id": membership.user_id,
                "status": membership.status,
                "joined_at": membership.joined_at.isoformat() if membership.joined_at else None,
                "commitment_deadline": (
                    membership.commitment_deadline.isoformat() if membership.commitment_deadline else None
                ),
                "locked_in_at": membership.locked_in_at.isoformat() if membership.locked_in_at else None,
            },
        }


class ReviewerTeamService:
    """Join, lock in, remove and sweep reviewer memberships"""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def get_membership(session: Session, activity_id: int, user_id: int) -> Optional[ReviewerMembership]:
        return session.execute(
            select(ReviewerMembership).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.user_id == user_id,
            )
        ).scalar_one_or_none()

    @staticmethod
    def count_by_status(session: Session, activity_id: int, statuses: List[str]) -> int:
        return session.execute(
            select(func.count(ReviewerMembership.id)).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.status.in_(statuses),
            )
        ).scalar_one()

    @classmethod
    def active_member_count(cls, session: Session, activity_id: int) -> int:
        return cls.count_by_status(session, activity_id, MembershipStatus.active_values())

    @classmethod
    def locked_in_count(cls, session: Session, activity_id: int) -> int:
        return cls.count_by_status(session, activity_id, [MembershipStatus.LOCKED_IN.value])

    @staticmethod
    def active_reviewer_ids(session: Session, activity_id: int) -> List[int]:
        return list(session.execute(
            select(ReviewerMembership.user_id).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.status.in_(MembershipStatus.active_values()),
            ).order_by(ReviewerMembership.joined_at, ReviewerMembership.id)
        ).scalars())

    @staticmethod
    def get_team(session: Session, activity_id: int) -> List[ReviewerMembership]:
        return list(session.execute(
            select(ReviewerMembership)
            .where(ReviewerMembership.activity_id == activity_id)
            .order_by(ReviewerMembership.joined_at, ReviewerMembership.id)
        ).scalars())

    @staticmethod
    def _accepting_reviewers(session: Session, activity: Activity) -> bool:
        if activity.is_completed:
            return False
        stage = session.execute(
            select(TemplateStage).where(
                TemplateStage.template_id == activity.template_id,
                TemplateStage.activity_type == activity.activity_type,
                TemplateStage.stage_key == activity.current_stage_key,
            )
        ).scalar_one_or_none()
        return stage is not None and not stage.is_terminal

    @classmethod
    def can_join(cls, session: Session, activity_id: int, user_id: int) -> dict:
        """Read-only eligibility check with the reason a join would fail"""
        activity = session.get(Activity, activity_id)
        if activity is None:
            return {"can_join": False, "reason": "activity_not_found"}
        template = session.get(ActivityTemplate, activity.template_id)
        current_size = cls.active_member_count(session, activity_id)
        info = {
            "current_size": current_size,
            "max_size": template.reviewer_count,
            "spots_remaining": max(0, template.reviewer_count - current_size),
        }
        if not cls._accepting_reviewers(session, activity):
            return {"can_join": False, "reason": "not_accepting", **info}
        if activity.creator_id == user_id:
            return {"can_join": False, "reason": "is_author", **info}
        if cls.get_membership(session, activity_id, user_id) is not None:
            return {"can_join": False, "reason": "already_joined", **info}
        if current_size >= template.reviewer_count:
            return {"can_join": False, "reason": "team_full", **info}
        return {"can_join": True, "reason": None, **info}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def join(cls, activity_id: int, user_id: int, session: Session = None) -> MembershipResult:
        """Add the user to the review team with a commitment deadline"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return MembershipResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        template = session.get(ActivityTemplate, activity.template_id)
        active = cls.active_member_count(session, activity_id)

        if not cls._accepting_reviewers(session, activity):
            return MembershipResult(success=False, error_code=ErrorCode.NOT_ACCEPTING)
        if activity.creator_id == user_id:
            return MembershipResult(success=False, error_code=ErrorCode.IS_AUTHOR)

        existing = cls.get_membership(session, activity_id, user_id)
        if existing is not None:
            return MembershipResult(
                success=False,
                error_code=ErrorCode.ALREADY_MEMBER,
                membership=existing,
                current_status=existing.status,
            )
        if active >= template.reviewer_count:
            logger.info(f"👥 TEAM_FULL: activity {activity_id} has {active}/{template.reviewer_count}")
            return MembershipResult(
                success=False,
                error_code=ErrorCode.TEAM_FULL,
                active_count=active,
                max_size=template.reviewer_count,
            )

        now = utcnow()
        membership = ReviewerMembership(
            activity_id=activity_id,
            user_id=user_id,
            status=MembershipStatus.JOINED.value,
            joined_at=now,
            commitment_deadline=now + timedelta(hours=Config.COMMITMENT_WINDOW_HOURS),
        )
        session.add(membership)
        TimelineService.record(
            session, activity_id, TimelineEventType.REVIEWER_JOINED,
            title="Reviewer joined", user_id=user_id, stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session, NotificationEvent.REVIEWER_JOINED, activity_id,
            {"activity_uuid": activity.activity_uuid, "user_id": user_id, "creator_id": activity.creator_id},
        )
        session.flush()
        logger.info(
            f"👥 REVIEWER_JOINED: user {user_id} on activity {activity_id} "
            f"({active + 1}/{template.reviewer_count}), commit by {membership.commitment_deadline}"
        )
        return MembershipResult(
            success=True,
            membership=membership,
            current_status=membership.status,
            active_count=active + 1,
            max_size=template.reviewer_count,
        )

    @classmethod
    @require_atomic_transaction
    def lock_in(cls, activity_id: int, user_id: int, session: Session = None) -> MembershipResult:
        """Confirm commitment: joined -> locked_in"""
        # Activity before membership, same order as the sweep
        if locked_activity(session, activity_id) is None:
            return MembershipResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)
        lock_aggregate(session, "membership", (activity_id, user_id))
        membership = cls.get_membership(session, activity_id, user_id)
        if membership is None:
            return MembershipResult(success=False, error_code=ErrorCode.NOT_A_MEMBER)
        session.refresh(membership, with_for_update=True)
        if membership.status != MembershipStatus.JOINED.value:
            return MembershipResult(
                success=False,
                error_code=ErrorCode.INVALID_STATE,
                membership=membership,
                current_status=membership.status,
            )

        membership.status = MembershipStatus.LOCKED_IN.value
        membership.locked_in_at = utcnow()
        membership.commitment_deadline = None
        TimelineService.record(
            session, activity_id, TimelineEventType.REVIEWER_LOCKED_IN,
            title="Reviewer locked in", user_id=user_id,
        )
        session.flush()
        logger.info(f"🔐 REVIEWER_LOCKED_IN: user {user_id} on activity {activity_id}")
        return MembershipResult(success=True, membership=membership, current_status=membership.status)

    @classmethod
    def _post_penalty(
        cls,
        session: Session,
        activity: Activity,
        user_id: int,
        penalty_type: PenaltyType,
        amount: int,
    ) -> ReviewerPenalty:
        """
        Deduct a penalty, capped at the reviewer's balance.

        A reviewer with no tokens still gets a penalty row, with amount 0 and
        no ledger entry.
        """
        charged = min(amount, LedgerService.get_balance(session, user_id))
        entry_id = None
        if charged > 0:
            result = LedgerService.debit(
                user_id,
                charged,
                EntryOrigin.ACTIVITY,
                f"Reviewer penalty ({penalty_type.value}) for activity {activity.activity_uuid}",
                related_activity_id=activity.id,
                related_activity_uuid=activity.activity_uuid,
                session=session,
            )
            entry_id = result.entry_id if result.success else None
            if not result.success:
                charged = 0
        penalty = ReviewerPenalty(
            activity_id=activity.id,
            user_id=user_id,
            penalty_type=penalty_type.value,
            amount=charged,
            ledger_entry_id=entry_id,
        )
        session.add(penalty)
        return penalty

    @classmethod
    def _remove(
        cls,
        session: Session,
        activity: Activity,
        membership: ReviewerMembership,
        reason: str,
        penalty_type: Optional[PenaltyType],
        now: datetime,
    ) -> Optional[ReviewerPenalty]:
        membership.status = MembershipStatus.REMOVED.value
        membership.removed_at = now
        membership.removal_reason = reason
        membership.commitment_deadline = None

        penalty = None
        if penalty_type is not None:
            penalty = cls._post_penalty(
                session, activity, membership.user_id, penalty_type, Config.COMMITMENT_PENALTY_TOKENS
            )

        TimelineService.record(
            session, activity.id, TimelineEventType.REVIEWER_REMOVED,
            title="Reviewer removed", description=reason,
            user_id=membership.user_id, stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session, NotificationEvent.REVIEWER_REMOVED, activity.id,
            {
                "activity_uuid": activity.activity_uuid,
                "user_id": membership.user_id,
                "reason": reason,
                "penalty": penalty.amount if penalty is not None else 0,
            },
        )
        session.flush()
        return penalty

    @classmethod
    @require_atomic_transaction
    def remove(
        cls,
        activity_id: int,
        user_id: int,
        reason: str,
        removed_by: Optional[int] = None,
        penalize: bool = False,
        session: Session = None,
    ) -> MembershipResult:
        """Remove a member for cause (joined or locked_in -> removed)"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return MembershipResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)
        lock_aggregate(session, "membership", (activity_id, user_id))
        membership = cls.get_membership(session, activity_id, user_id)
        if membership is None:
            return MembershipResult(success=False, error_code=ErrorCode.NOT_A_MEMBER)
        session.refresh(membership, with_for_update=True)
        if not MembershipTransitions.is_valid_transition(membership.status, MembershipStatus.REMOVED.value):
            return MembershipResult(
                success=False, error_code=ErrorCode.INVALID_STATE,
                membership=membership, current_status=membership.status,
            )

        cls._remove(
            session, activity, membership, reason,
            PenaltyType.KICKED_OUT if penalize else None, utcnow(),
        )
        logger.info(f"🚪 REVIEWER_REMOVED: user {user_id} from activity {activity_id} by {removed_by}: {reason}")
        return MembershipResult(success=True, membership=membership, current_status=membership.status)

    # ------------------------------------------------------------------
    # Periodic sweep
    # ------------------------------------------------------------------

    @classmethod
    def find_expired_commitments(cls, session: Session, now: datetime) -> List[tuple]:
        return list(session.execute(
            select(ReviewerMembership.activity_id, ReviewerMembership.user_id).where(
                ReviewerMembership.status == MembershipStatus.JOINED.value,
                ReviewerMembership.commitment_deadline.isnot(None),
                ReviewerMembership.commitment_deadline < now,
            ).order_by(ReviewerMembership.commitment_deadline)
        ).all())

    @classmethod
    def _sweep_one(cls, session: Session, activity_id: int, user_id: int, now: datetime) -> Optional[dict]:
        activity = locked_activity(session, activity_id)
        lock_aggregate(session, "membership", (activity_id, user_id))
        membership = cls.get_membership(session, activity_id, user_id)
        if activity is None or membership is None:
            return None
        session.refresh(membership, with_for_update=True)
        # Re-check under lock; a concurrent lock-in or earlier sweep wins
        if (
            membership.status != MembershipStatus.JOINED.value
            or membership.commitment_deadline is None
            or membership.commitment_deadline >= now
        ):
            return None
        penalty = cls._remove(
            session, activity, membership, COMMITMENT_TIMEOUT_REASON, PenaltyType.LATE, now
        )
        return {"activity_id": activity_id, "user_id": user_id, "penalty": penalty.amount}

    @classmethod
    def sweep_expired_commitments(cls, now: Optional[datetime] = None) -> Dict:
        """
        Remove reviewers whose commitment deadline passed without a lock-in.

        Each membership is handled in its own transaction so one failure
        does not block the rest. Safe to re-run: only rows still joined and
        past their deadline are touched.
        """
        now = now or utcnow()
        results = {"processed": 0, "removed": [], "errors": []}

        session = SessionLocal()
        try:
            candidates = cls.find_expired_commitments(session, now)
        finally:
            session.close()

        if candidates:
            logger.info(f"🔍 COMMITMENT_SWEEP: {len(candidates)} expired commitments found")

        for activity_id, user_id in candidates:
            results["processed"] += 1
            try:
                with atomic_transaction() as tx_session:
                    removed = cls._sweep_one(tx_session, activity_id, user_id, now)
                if removed is not None:
                    results["removed"].append(removed)
                    logger.info(
                        f"⏰ COMMITMENT_TIMEOUT: removed user {user_id} from activity {activity_id}, "
                        f"penalty {removed['penalty']}"
                    )
            except IntegrityViolation:
                raise
            except Exception as e:
                logger.error(f"❌ COMMITMENT_SWEEP_ERROR: activity {activity_id} user {user_id}: {e}")
                results["errors"].append({"activity_id": activity_id, "user_id": user_id, "error": str(e)})

        if results["removed"]:
            logger.info(f"✅ COMMITMENT_SWEEP_COMPLETE: removed {len(results['removed'])} reviewers")
        return results
