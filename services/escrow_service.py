"""
Escrow Accounting Service

An activity's escrow is funded once at creation by debiting its creator and
drained only by award disbursement or by releasing the leftover to the
platform account when the activity completes. Invariant:
0 <= escrow_balance <= funding_amount.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import Activity, Award, AwardType, EntryOrigin, TimelineEventType
from services.ledger_service import LedgerResult, LedgerService
from services.notification_outbox import NotificationEvent, NotificationOutbox
from services.timeline_service import TimelineService
from utils.atomic_transactions import locked_activity, require_atomic_transaction
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class AwardResult:
    """Outcome of an award disbursement"""

    success: bool
    award_id: Optional[int] = None
    points: Optional[int] = None
    escrow_balance: Optional[int] = None
    error_code: Optional[ErrorCode] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "award_id": self.award_id,
            "points": self.points,
            "escrow_balance": self.escrow_balance,
            "error_code": self.error_code.value if self.error_code else None,
        }


def check_escrow_invariant(activity: Activity) -> None:
    """Raise IntegrityViolation when escrow falls outside [0, funding_amount]"""
    if activity.escrow_balance < 0 or activity.escrow_balance > activity.funding_amount:
        logger.critical(
            f"🚨 ESCROW_INVARIANT_BROKEN: activity {activity.id} escrow {activity.escrow_balance} "
            f"funding {activity.funding_amount}"
        )
        raise IntegrityViolation(
            f"Activity {activity.id} escrow {activity.escrow_balance} outside [0, {activity.funding_amount}]"
        )


class EscrowService:
    """Funds, disburses and releases activity escrow"""

    @classmethod
    @require_atomic_transaction
    def open_escrow(cls, activity: Activity, amount: int, session: Session = None) -> LedgerResult:
        """Debit the creator and fund the activity's escrow; called once at creation"""
        if amount < 0:
            raise ValidationError(f"Escrow amount must not be negative, got {amount}")
        if activity.funding_amount:
            raise IntegrityViolation(f"Activity {activity.id} escrow already funded")

        if amount == 0:
            activity.funding_amount = 0
            activity.escrow_balance = 0
            return LedgerResult(success=True, new_balance=LedgerService.get_balance(session, activity.creator_id))

        result = LedgerService.debit(
            activity.creator_id,
            amount,
            EntryOrigin.ACTIVITY,
            f"Escrow funding for activity {activity.activity_uuid}",
            related_activity_id=activity.id,
            related_activity_uuid=activity.activity_uuid,
            session=session,
        )
        if not result.success:
            return result

        activity.funding_amount = amount
        activity.escrow_balance = amount
        check_escrow_invariant(activity)
        session.flush()
        logger.info(f"🏦 ESCROW_OPENED: activity {activity.id} funded with {amount} by {activity.creator_id}")
        return result

    @staticmethod
    def resolve_points(activity: Activity, giver_id: int, award_type: AwardType) -> int:
        if giver_id == activity.creator_id:
            return award_type.author_points
        return award_type.reviewer_points

    @classmethod
    @require_atomic_transaction
    def disburse_award(
        cls,
        activity_id: int,
        round_number: int,
        giver_id: int,
        receiver_id: int,
        award_type: str,
        session: Session = None,
    ) -> AwardResult:
        """
        Give an award paid from the activity's escrow.

        Checks run in order: self award, duplicate award, point resolution,
        escrow sufficiency. On success the award row, the escrow decrement
        and the receiver's ledger credit commit together.
        """
        activity = locked_activity(session, activity_id)
        if activity is None:
            return AwardResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        if giver_id == receiver_id:
            logger.info(f"🚫 SELF_AWARD: user {giver_id} on activity {activity_id}")
            return AwardResult(success=False, error_code=ErrorCode.SELF_AWARD, escrow_balance=activity.escrow_balance)

        existing = session.execute(
            select(Award.id).where(
                Award.activity_id == activity_id,
                Award.round_number == round_number,
                Award.giver_id == giver_id,
                Award.award_type == award_type,
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(
                f"🚫 DUPLICATE_AWARD: {giver_id} already gave {award_type} in round {round_number} "
                f"on activity {activity_id}"
            )
            return AwardResult(
                success=False, error_code=ErrorCode.DUPLICATE_AWARD, escrow_balance=activity.escrow_balance
            )

        award_definition = session.get(AwardType, award_type)
        if award_definition is None:
            return AwardResult(
                success=False, error_code=ErrorCode.UNKNOWN_AWARD_TYPE, escrow_balance=activity.escrow_balance
            )
        points = cls.resolve_points(activity, giver_id, award_definition)

        if activity.escrow_balance < points:
            logger.info(
                f"💸 ESCROW_EXHAUSTED: activity {activity_id} has {activity.escrow_balance}, award needs {points}"
            )
            return AwardResult(
                success=False,
                error_code=ErrorCode.ESCROW_EXHAUSTED,
                points=points,
                escrow_balance=activity.escrow_balance,
            )

        award = Award(
            activity_id=activity_id,
            round_number=round_number,
            giver_id=giver_id,
            receiver_id=receiver_id,
            award_type=award_type,
            points=points,
        )
        session.add(award)
        activity.escrow_balance = activity.escrow_balance - points
        check_escrow_invariant(activity)
        session.flush()

        LedgerService.credit(
            receiver_id,
            points,
            EntryOrigin.ACTIVITY,
            f"Award: {award_type} ({points} tokens) for round {round_number} from {giver_id}",
            related_activity_id=activity.id,
            related_activity_uuid=activity.activity_uuid,
            counterparty_id=giver_id,
            session=session,
        )

        TimelineService.record(
            session,
            activity.id,
            TimelineEventType.AWARD_GIVEN,
            title=f"{award_type.capitalize()} award given",
            description=f"User {giver_id} gave {receiver_id} a {award_type} award ({points} tokens)",
            user_id=giver_id,
            stage_key=activity.current_stage_key,
        )
        NotificationOutbox.enqueue(
            session,
            NotificationEvent.AWARD_GIVEN,
            activity.id,
            {
                "activity_uuid": activity.activity_uuid,
                "giver_id": giver_id,
                "receiver_id": receiver_id,
                "award_type": award_type,
                "points": points,
                "round_number": round_number,
            },
        )
        logger.info(
            f"🏆 AWARD_DISBURSED: {award_type} {points} tokens {giver_id} -> {receiver_id} "
            f"(activity {activity_id} escrow {activity.escrow_balance})"
        )
        return AwardResult(success=True, award_id=award.id, points=points, escrow_balance=activity.escrow_balance)

    @classmethod
    @require_atomic_transaction
    def release_leftover_escrow(
        cls, activity_id: int, admin_id: Optional[int] = None, session: Session = None
    ) -> LedgerResult:
        """Credit whatever escrow remains to the platform account and zero it"""
        activity = locked_activity(session, activity_id)
        if activity is None:
            return LedgerResult(success=False, error_code=ErrorCode.ACTIVITY_NOT_FOUND)

        leftover = activity.escrow_balance
        if leftover == 0:
            return LedgerResult(success=True)

        recipient = admin_id if admin_id is not None else Config.PLATFORM_ADMIN_ACCOUNT_ID
        activity.escrow_balance = 0
        check_escrow_invariant(activity)
        session.flush()

        result = LedgerService.credit(
            recipient,
            leftover,
            EntryOrigin.SYSTEM,
            f"Leftover escrow released from activity {activity.activity_uuid}",
            related_activity_id=activity.id,
            related_activity_uuid=activity.activity_uuid,
            counterparty_id=activity.creator_id,
            session=session,
        )
        logger.info(f"🏦 ESCROW_RELEASED: {leftover} tokens from activity {activity_id} to {recipient}")
        return result


DEFAULT_AWARD_TYPES = (
    ("helpfulness", "Most helpful contribution", 2, 1),
    ("clarity", "Clearest reasoning", 2, 1),
    ("challenger", "Most constructive challenge", 2, 1),
)


@require_atomic_transaction
def seed_award_types(session: Session = None) -> int:
    """Insert the default award catalogue where missing; returns how many were added"""
    added = 0
    for award_type, description, author_points, reviewer_points in DEFAULT_AWARD_TYPES:
        if session.get(AwardType, award_type) is None:
            session.add(AwardType(
                award_type=award_type,
                description=description,
                author_points=author_points,
                reviewer_points=reviewer_points,
            ))
            added += 1
    session.flush()
    return added
