"""
Activity type capabilities.

The progression engine is activity-type agnostic: it talks to an
ActivityTypeHandler to resolve the template, lock and change the stage
state, write the timeline, evaluate condition predicates and run stage
hooks. Each registered activity type supplies its own predicate registry
and hooks.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Activity, ActivityTemplate, ActivityType, AuthorResponse, AwardDistributionStatus,
    MembershipStatus, ReviewerMembership, ReviewSubmission, TemplateStage, TimelineEventType
)
from services.conditions import Predicate
from services.escrow_service import EscrowService
from services.finalization_service import FinalizationService
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.reviewer_team_service import ReviewerTeamService
from services.timeline_service import TimelineService
from utils.atomic_transactions import locked_activity
from utils.exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class EvaluationContext:
    """Live state a predicate is evaluated against"""

    session: Session
    activity: Activity
    template: ActivityTemplate
    now: datetime


PredicateFn = Callable[[EvaluationContext, Dict[str, Any]], bool]


# ----------------------------------------------------------------------
# Predicates shared by every activity type
# ----------------------------------------------------------------------

def manual(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    return True


def deadline_reached(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    deadline = ctx.activity.stage_deadline
    return deadline is not None and deadline <= ctx.now


def escrow_empty(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    return ctx.activity.escrow_balance == 0


def all_finalized(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    return FinalizationService.is_all_finalized(ctx.session, ctx.activity.id)


def all_awards_distributed(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    """Creator and every active reviewer have marked their awards as distributed"""
    participants = set(ReviewerTeamService.active_reviewer_ids(ctx.session, ctx.activity.id))
    participants.add(ctx.activity.creator_id)
    distributed = set(ctx.session.execute(
        select(AwardDistributionStatus.user_id).where(
            AwardDistributionStatus.activity_id == ctx.activity.id,
            AwardDistributionStatus.has_distributed_awards.is_(True),
        )
    ).scalars())
    return participants <= distributed


# ----------------------------------------------------------------------
# Peer review predicates
# ----------------------------------------------------------------------

def _round(config: Dict[str, Any]) -> int:
    return int(config.get("round_number", 1))


def first_review_submitted(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    count = ctx.session.execute(
        select(func.count(ReviewSubmission.id)).where(
            ReviewSubmission.activity_id == ctx.activity.id,
            ReviewSubmission.round_number == _round(config),
        )
    ).scalar_one()
    return count >= 1


def min_reviewers_locked_in(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    required = int(config.get("min_count", ctx.template.reviewer_count))
    return ReviewerTeamService.locked_in_count(ctx.session, ctx.activity.id) >= required


def all_active_reviewers_locked_in(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    active = ReviewerTeamService.active_member_count(ctx.session, ctx.activity.id)
    locked = ReviewerTeamService.locked_in_count(ctx.session, ctx.activity.id)
    return active > 0 and locked == active


def all_reviews_submitted(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    """Distinct active reviewers with a review for the round reach the template's reviewer count"""
    submitted = ctx.session.execute(
        select(func.count(func.distinct(ReviewSubmission.reviewer_id)))
        .join(
            ReviewerMembership,
            (ReviewerMembership.activity_id == ReviewSubmission.activity_id)
            & (ReviewerMembership.user_id == ReviewSubmission.reviewer_id),
        )
        .where(
            ReviewSubmission.activity_id == ctx.activity.id,
            ReviewSubmission.round_number == _round(config),
            ReviewerMembership.status.in_(MembershipStatus.active_values()),
        )
    ).scalar_one()
    required = int(config.get("min_count", ctx.template.reviewer_count))
    return submitted >= required > 0


def author_response_submitted(ctx: EvaluationContext, config: Dict[str, Any]) -> bool:
    count = ctx.session.execute(
        select(func.count(AuthorResponse.id)).where(
            AuthorResponse.activity_id == ctx.activity.id,
            AuthorResponse.round_number == _round(config),
        )
    ).scalar_one()
    return count >= 1


# ----------------------------------------------------------------------
# Capability interface
# ----------------------------------------------------------------------

class ActivityTypeHandler(ABC):
    """Everything the progression engine needs to know about one activity type"""

    activity_type: str = ""

    def __init__(self):
        self.predicates: Dict[str, PredicateFn] = self.build_predicates()

    @abstractmethod
    def build_predicates(self) -> Dict[str, PredicateFn]:
        """Named predicates condition expressions may reference"""

    @abstractmethod
    def on_stage_entered(
        self, session: Session, activity: Activity, stage: TemplateStage, triggered_by: Optional[int]
    ) -> None:
        """Stage-specific side effects, run after the generic stage update"""

    def requires_funding(self) -> bool:
        return True

    def predicate_names(self) -> set:
        return set(self.predicates)

    def resolve_template(self, session: Session, activity: Activity) -> ActivityTemplate:
        return session.get(ActivityTemplate, activity.template_id)

    def load_stage_state(self, session: Session, activity_id: int) -> Optional[Activity]:
        """Lock the activity's stage state; None when it is missing or of another type"""
        activity = locked_activity(session, activity_id)
        if activity is None or activity.activity_type != self.activity_type:
            return None
        return activity

    def apply_stage_change(
        self, session: Session, activity: Activity, stage: TemplateStage, now: datetime
    ) -> None:
        activity.current_stage_key = stage.stage_key
        activity.stage_entered_at = now
        activity.stage_deadline = now + timedelta(days=stage.deadline_days) if stage.deadline_days else None

    def emit_timeline_event(
        self,
        session: Session,
        activity: Activity,
        from_stage: TemplateStage,
        to_stage: TemplateStage,
        triggered_by: Optional[int],
    ) -> None:
        TimelineService.record(
            session,
            activity.id,
            TimelineEventType.STAGE_TRANSITION,
            title=f"Progressed to {to_stage.display_name}",
            description=f"Activity progressed from {from_stage.display_name} to {to_stage.display_name}",
            user_id=triggered_by,
            from_stage_key=from_stage.stage_key,
            stage_key=to_stage.stage_key,
        )

    def evaluate_predicate(self, ctx: EvaluationContext, predicate: Predicate) -> bool:
        fn = self.predicates.get(predicate.name)
        if fn is None:
            # Templates are validated at definition time, so this means a hand-edited row
            raise ValidationError(
                f"Unknown predicate '{predicate.name}' for activity type {self.activity_type}"
            )
        return fn(ctx, predicate.config)

    def mark_completed(self, session: Session, activity: Activity, triggered_by: Optional[int]) -> None:
        if activity.is_completed:
            return
        activity.is_completed = True
        activity.completed_at = activity.stage_entered_at
        TimelineService.record(
            session, activity.id, TimelineEventType.ACTIVITY_COMPLETED,
            title="Activity completed", user_id=triggered_by, stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session, NotificationEvent.ACTIVITY_COMPLETED, activity.id,
            {"activity_uuid": activity.activity_uuid, "activity_type": activity.activity_type},
        )
        logger.info(f"🏁 ACTIVITY_COMPLETED: {activity.activity_type} {activity.id}")


class PeerReviewActivity(ActivityTypeHandler):
    """Token-funded peer review with reviewer team, rounds, assessment and awards"""

    activity_type = ActivityType.PEER_REVIEW.value

    def build_predicates(self) -> Dict[str, PredicateFn]:
        return {
            "manual": manual,
            "deadline_reached": deadline_reached,
            "escrow_empty": escrow_empty,
            "all_finalized": all_finalized,
            "all_awards_distributed": all_awards_distributed,
            "first_review_submitted": first_review_submitted,
            "min_reviewers_locked_in": min_reviewers_locked_in,
            "all_active_reviewers_locked_in": all_active_reviewers_locked_in,
            "all_reviews_submitted": all_reviews_submitted,
            "author_response_submitted": author_response_submitted,
        }

    def on_stage_entered(
        self, session: Session, activity: Activity, stage: TemplateStage, triggered_by: Optional[int]
    ) -> None:
        if stage.is_terminal:
            self.mark_completed(session, activity, triggered_by)
            EscrowService.release_leftover_escrow(activity.id, session=session)


class JournalClubActivity(ActivityTypeHandler):
    """Free, manually driven journal club discussion"""

    activity_type = ActivityType.JOURNAL_CLUB.value

    def build_predicates(self) -> Dict[str, PredicateFn]:
        return {
            "manual": manual,
            "deadline_reached": deadline_reached,
            "all_finalized": all_finalized,
            "all_awards_distributed": all_awards_distributed,
        }

    def requires_funding(self) -> bool:
        return False

    def on_stage_entered(
        self, session: Session, activity: Activity, stage: TemplateStage, triggered_by: Optional[int]
    ) -> None:
        if stage.is_terminal:
            self.mark_completed(session, activity, triggered_by)


ACTIVITY_TYPES: Dict[str, ActivityTypeHandler] = {
    handler.activity_type: handler
    for handler in (PeerReviewActivity(), JournalClubActivity())
}


def get_activity_type(activity_type: str) -> Optional[ActivityTypeHandler]:
    return ACTIVITY_TYPES.get(activity_type)


def require_activity_type(activity_type: str) -> ActivityTypeHandler:
    handler = get_activity_type(activity_type)
    if handler is None:
        raise ValidationError(f"Unknown activity type: {activity_type}")
    return handler
