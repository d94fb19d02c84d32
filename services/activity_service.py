"""
Activity service: the stable call contracts exposed to clients.

Each participant action runs in one transaction and then lets the
progression engine apply whatever automatic transitions became satisfied.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    Activity, ActivityTemplate, AuthorResponse, AwardDistributionStatus, MembershipStatus,
    Paper, PublicationChoice, PublicationOption, ReviewSubmission, TimelineEventType
)
from services.activity_types import get_activity_type
from services.escrow_service import AwardResult, EscrowService
from services.finalization_service import FinalizationResult, FinalizationService
from services.ledger_service import LedgerService
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.progression_engine import ProgressionEngine, ProgressionResult
from services.reviewer_team_service import MembershipResult, ReviewerTeamService
from services.stage_graph import get_initial_stage, get_template_by_name
from services.timeline_service import TimelineService
from utils.atomic_transactions import locked_activity, locked_wallet, require_atomic_transaction
from utils.error_handler import ErrorCode
from utils.exceptions import ValidationError
from utils.helpers import generate_activity_uuid, utcnow

logger = logging.getLogger(__name__)

PUBLICATION_STAGE = "publication_choice"


@dataclass
class SubmissionResult:
    """Outcome of a submit-style action"""

    success: bool
    paper_id: Optional[int] = None
    activity_id: Optional[int] = None
    activity_uuid: Optional[str] = None
    record_id: Optional[int] = None
    error_code: Optional[ErrorCode] = None
    current_balance: Optional[int] = None
    required_amount: Optional[int] = None
    current_stage: Optional[str] = None
    progression: List[ProgressionResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "paper_id": self.paper_id,
            "activity_id": self.activity_id,
            "activity_uuid": self.activity_uuid,
            "record_id": self.record_id,
            "error_code": self.error_code.value if self.error_code else None,
            "current_balance": self.current_balance,
            "required_amount": self.required_amount,
            "current_stage": self.current_stage,
            "progression": [step.to_dict() for step in self.progression if step.progressed],
        }


class ActivityService:

    @staticmethod
    def _resolve_template(session: Session, template: Any) -> Optional[ActivityTemplate]:
        if isinstance(template, int):
            return session.get(ActivityTemplate, template)
        return get_template_by_name(session, str(template))

    @staticmethod
    def _progress(session: Session, activity: Activity, triggered_by: Optional[int]) -> List[ProgressionResult]:
        return ProgressionEngine.progress_until_stable(
            activity.activity_type, activity.id, triggered_by=triggered_by, session=session
        )

    # ------------------------------------------------------------------
    # SubmitActivity
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def submit_activity(
        cls,
        paper_title: str,
        creator_id: int,
        template: Any,
        funding_amount: Optional[int] = None,
        abstract: Optional[str] = None,
        session: Session = None,
    ) -> SubmissionResult:
        """
        Create a paper and its activity, funding the escrow from the creator's wallet.

        ``template`` is a template id or name. Peer review activities must
        be funded with at least the template's total_tokens; journal club
        activities are free.
        """
        if not paper_title or not paper_title.strip():
            raise ValidationError("Paper title is required")

        activity_template = cls._resolve_template(session, template)
        if activity_template is None:
            return SubmissionResult(success=False, error_code=ErrorCode.TEMPLATE_NOT_FOUND)
        handler = get_activity_type(activity_template.activity_type)
        if handler is None:
            return SubmissionResult(success=False, error_code=ErrorCode.UNKNOWN_ACTIVITY_TYPE)

        if handler.requires_funding():
            amount = activity_template.total_tokens if funding_amount is None else funding_amount
            if amount < activity_template.total_tokens:
                return SubmissionResult(
                    success=False,
                    error_code=ErrorCode.INSUFFICIENT_FUNDING,
                    required_amount=activity_template.total_tokens,
                )
        else:
            amount = 0

        wallet = locked_wallet(session, creator_id)
        if wallet.balance < amount:
            logger.info(f"💸 SUBMIT_INSUFFICIENT_FUNDS: creator {creator_id} has {wallet.balance}, needs {amount}")
            return SubmissionResult(
                success=False,
                error_code=ErrorCode.INSUFFICIENT_FUNDS,
                current_balance=wallet.balance,
                required_amount=amount,
            )

        initial_stage = get_initial_stage(session, activity_template.id, activity_template.activity_type)
        now = utcnow()
        paper = Paper(title=paper_title.strip(), abstract=abstract, creator_id=creator_id)
        session.add(paper)
        session.flush()

        activity = Activity(
            activity_uuid=generate_activity_uuid(),
            activity_type=activity_template.activity_type,
            paper_id=paper.id,
            creator_id=creator_id,
            template_id=activity_template.id,
            funding_amount=0,
            escrow_balance=0,
            current_stage_key=initial_stage.stage_key,
            stage_entered_at=now,
            stage_deadline=None,
        )
        handler.apply_stage_change(session, activity, initial_stage, now)
        session.add(activity)
        session.flush()

        escrow = EscrowService.open_escrow(activity, amount, session=session)
        if not escrow.success:
            # Balance was checked under the same wallet lock
            raise ValidationError(f"Escrow funding failed for activity {activity.id}: {escrow.error_code}")

        TimelineService.record(
            session, activity.id, TimelineEventType.ACTIVITY_CREATED,
            title="Activity created",
            description=f"{activity_template.user_facing_name} started for '{paper.title}'",
            user_id=creator_id, stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session, NotificationEvent.ACTIVITY_CREATED, activity.id,
            {
                "activity_uuid": activity.activity_uuid,
                "activity_type": activity.activity_type,
                "paper_id": paper.id,
                "creator_id": creator_id,
                "template": activity_template.name,
                "funding_amount": amount,
            },
        )
        session.flush()
        logger.info(
            f"📄 ACTIVITY_SUBMITTED: {activity.activity_type} {activity.id} for paper {paper.id} "
            f"by {creator_id}, escrow {amount}"
        )
        return SubmissionResult(
            success=True,
            paper_id=paper.id,
            activity_id=activity.id,
            activity_uuid=activity.activity_uuid,
            current_stage=activity.current_stage_key,
        )

    # ------------------------------------------------------------------
    # Reviewer team
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def join_reviewer_team(cls, activity_id: int, user_id: int, session: Session = None) -> MembershipResult:
        return ReviewerTeamService.join(activity_id, user_id, session=session)

    @classmethod
    @require_atomic_transaction
    def lock_in(cls, activity_id: int, user_id: int, session: Session = None) -> MembershipResult:
        result = ReviewerTeamService.lock_in(activity_id, user_id, session=session)
        if result.success:
            activity = session.get(Activity, activity_id)
            cls._progress(session, activity, user_id)
        return result

    # ------------------------------------------------------------------
    # Progression / awards / finalization
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def try_progress(
        cls,
        activity_type: str,
        activity_id: int,
        triggered_by: Optional[int] = None,
        forced_transition_id: Optional[int] = None,
        session: Session = None,
    ) -> ProgressionResult:
        return ProgressionEngine.try_progress(
            activity_type, activity_id,
            triggered_by=triggered_by, forced_transition_id=forced_transition_id, session=session,
        )

    @classmethod
    @require_atomic_transaction
    def give_award(
        cls,
        activity_id: int,
        giver_id: int,
        receiver_id: int,
        award_type: str,
        round_number: int = 1,
        session: Session = None,
    ) -> AwardResult:
        return EscrowService.disburse_award(
            activity_id, round_number, giver_id, receiver_id, award_type, session=session
        )

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
        result = FinalizationService.toggle_finalization(
            activity_id, reviewer_id, finalized, content_hash, session=session
        )
        if result.success and result.all_finalized:
            cls._progress(session, session.get(Activity, activity_id), reviewer_id)
        return result

    @classmethod
    @require_atomic_transaction
    def record_assessment_snapshot(
        cls, activity_id: int, content: str, content_hash: Optional[str] = None, session: Session = None
    ) -> bool:
        return FinalizationService.record_snapshot(activity_id, content, content_hash, session=session)

    # ------------------------------------------------------------------
    # Reviews and responses
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def submit_review(
        cls,
        activity_id: int,
        reviewer_id: int,
        content: str,
        round_number: int = 1,
        session: Session = None,
    ) -> SubmissionResult:
        """Record a review; a joined reviewer's first review also locks them in"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return SubmissionResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        membership = ReviewerTeamService.get_membership(session, activity_id, reviewer_id)
        if membership is None or membership.status not in MembershipStatus.active_values():
            return SubmissionResult(success=False, error_code=ErrorCode.NOT_A_MEMBER, activity_id=activity_id)

        duplicate = session.execute(
            select(ReviewSubmission.id).where(
                ReviewSubmission.activity_id == activity_id,
                ReviewSubmission.reviewer_id == reviewer_id,
                ReviewSubmission.round_number == round_number,
            )
        ).scalar_one_or_none()
        if duplicate is not None:
            return SubmissionResult(
                success=False, error_code=ErrorCode.ALREADY_SUBMITTED, activity_id=activity_id, record_id=duplicate
            )

        is_initial = membership.status == MembershipStatus.JOINED.value and round_number == 1
        review = ReviewSubmission(
            activity_id=activity_id,
            reviewer_id=reviewer_id,
            round_number=round_number,
            content=content,
            is_initial_evaluation=is_initial,
        )
        session.add(review)
        if is_initial:
            ReviewerTeamService.lock_in(activity_id, reviewer_id, session=session)
        TimelineService.record(
            session, activity_id, TimelineEventType.REVIEW_SUBMITTED,
            title=f"Review submitted for round {round_number}",
            user_id=reviewer_id, stage_key=activity.current_stage_key,
        )
        session.flush()

        steps = cls._progress(session, activity, reviewer_id)
        return SubmissionResult(
            success=True,
            activity_id=activity_id,
            record_id=review.id,
            current_stage=activity.current_stage_key,
            progression=steps,
        )

    @classmethod
    @require_atomic_transaction
    def submit_author_response(
        cls,
        activity_id: int,
        author_id: int,
        content: str,
        round_number: int = 1,
        session: Session = None,
    ) -> SubmissionResult:
        activity = locked_activity(session, activity_id)
        if activity is None:
            return SubmissionResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)
        if activity.creator_id != author_id:
            return SubmissionResult(success=False, error_code=ErrorCode.NOT_THE_AUTHOR, activity_id=activity_id)

        existing = session.execute(
            select(AuthorResponse.id).where(
                AuthorResponse.activity_id == activity_id,
                AuthorResponse.round_number == round_number,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return SubmissionResult(
                success=False, error_code=ErrorCode.ALREADY_SUBMITTED, activity_id=activity_id, record_id=existing
            )

        response = AuthorResponse(
            activity_id=activity_id, author_id=author_id, round_number=round_number, content=content
        )
        session.add(response)
        TimelineService.record(
            session, activity_id, TimelineEventType.AUTHOR_RESPONSE_SUBMITTED,
            title=f"Author responded to round {round_number}",
            user_id=author_id, stage_key=activity.current_stage_key,
        )
        session.flush()

        steps = cls._progress(session, activity, author_id)
        return SubmissionResult(
            success=True,
            activity_id=activity_id,
            record_id=response.id,
            current_stage=activity.current_stage_key,
            progression=steps,
        )

    @classmethod
    @require_atomic_transaction
    def mark_awards_distributed(cls, activity_id: int, user_id: int, session: Session = None) -> SubmissionResult:
        """Participant declares they are done giving awards"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return SubmissionResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        is_participant = user_id == activity.creator_id or user_id in ReviewerTeamService.active_reviewer_ids(
            session, activity_id
        )
        if not is_participant:
            return SubmissionResult(success=False, error_code=ErrorCode.NOT_A_MEMBER, activity_id=activity_id)

        status = session.execute(
            select(AwardDistributionStatus).where(
                AwardDistributionStatus.activity_id == activity_id,
                AwardDistributionStatus.user_id == user_id,
            )
        ).scalar_one_or_none()
        if status is None:
            status = AwardDistributionStatus(activity_id=activity_id, user_id=user_id)
            session.add(status)
        status.has_distributed_awards = True
        status.distributed_at = utcnow()
        session.flush()

        steps = cls._progress(session, activity, user_id)
        return SubmissionResult(
            success=True,
            activity_id=activity_id,
            record_id=status.id,
            current_stage=activity.current_stage_key,
            progression=steps,
        )

    @classmethod
    @require_atomic_transaction
    def choose_publication(
        cls,
        activity_id: int,
        user_id: int,
        choice: str,
        notes: Optional[str] = None,
        external_submission_details: Optional[Dict[str, Any]] = None,
        session: Session = None,
    ) -> SubmissionResult:
        """Author's final decision; only available in the publication choice stage"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return SubmissionResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)
        if activity.creator_id != user_id:
            return SubmissionResult(success=False, error_code=ErrorCode.NOT_THE_AUTHOR, activity_id=activity_id)
        if activity.current_stage_key != PUBLICATION_STAGE:
            return SubmissionResult(
                success=False, error_code=ErrorCode.INVALID_STAGE,
                activity_id=activity_id, current_stage=activity.current_stage_key,
            )
        try:
            option = PublicationOption(choice)
        except ValueError:
            raise ValidationError(f"Unknown publication choice: {choice}")

        existing = session.execute(
            select(PublicationChoice.id).where(PublicationChoice.activity_id == activity_id)
        ).scalar_one_or_none()
        if existing is not None:
            return SubmissionResult(
                success=False, error_code=ErrorCode.ALREADY_SUBMITTED, activity_id=activity_id, record_id=existing
            )

        record = PublicationChoice(
            activity_id=activity_id,
            choice=option.value,
            chosen_by=user_id,
            notes=notes,
            external_submission_details=external_submission_details,
        )
        session.add(record)
        TimelineService.record(
            session, activity_id, TimelineEventType.PUBLICATION_CHOSEN,
            title="Publication choice made", description=option.value,
            user_id=user_id, stage_key=activity.current_stage_key,
        )
        session.flush()
        logger.info(f"📚 PUBLICATION_CHOSEN: activity {activity_id} -> {option.value}")
        return SubmissionResult(
            success=True, activity_id=activity_id, record_id=record.id, current_stage=activity.current_stage_key
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    @staticmethod
    def activity_summary(session: Session, activity_id: int) -> Optional[dict]:
        activity = session.get(Activity, activity_id)
        if activity is None:
            return None
        return {
            "id": activity.id,
            "activity_uuid": activity.activity_uuid,
            "activity_type": activity.activity_type,
            "paper_id": activity.paper_id,
            "creator_id": activity.creator_id,
            "template_id": activity.template_id,
            "current_stage": activity.current_stage_key,
            "stage_entered_at": activity.stage_entered_at.isoformat() if activity.stage_entered_at else None,
            "stage_deadline": activity.stage_deadline.isoformat() if activity.stage_deadline else None,
            "funding_amount": activity.funding_amount,
            "escrow_balance": activity.escrow_balance,
            "is_completed": activity.is_completed,
            "active_reviewers": ReviewerTeamService.active_member_count(session, activity_id),
        }

    @staticmethod
    def wallet_summary(session: Session, owner_id: int, limit: int = 50) -> dict:
        return {
            "owner_id": owner_id,
            "balance": LedgerService.get_balance(session, owner_id),
            "entries": [
                {
                    "id": entry.id,
                    "amount": entry.amount,
                    "kind": entry.kind,
                    "origin": entry.origin,
                    "description": entry.description,
                    "related_activity_id": entry.related_activity_id,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in LedgerService.list_entries(session, owner_id, limit)
            ],
        }
