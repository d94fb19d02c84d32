"""
Escrow tests
Funding at creation, award disbursement rules and leftover release
"""

import pytest
from sqlalchemy import select

from config import Config
from models import Activity, Award, EntryOrigin, LedgerEntry
from services.activity_service import ActivityService
from services.escrow_service import EscrowService, check_escrow_invariant
from services.ledger_service import LedgerService
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation

CREATOR_ID = 100
REVIEWER_ID = 201
OTHER_REVIEWER_ID = 202


@pytest.fixture
def activity_id(fund):
    fund(CREATOR_ID, 50)
    result = ActivityService.submit_activity("Escrow paper", CREATOR_ID, "quick_review_v1")
    assert result.success
    return result.activity_id


def escrow_of(session, activity_id):
    return session.execute(
        select(Activity.escrow_balance).where(Activity.id == activity_id)
    ).scalar_one()


class TestEscrowFunding:

    def test_submission_moves_funding_into_escrow(self, session, activity_id, assert_ledger_consistent):
        activity = session.get(Activity, activity_id)

        assert activity.funding_amount == 10
        assert activity.escrow_balance == 10
        assert LedgerService.get_balance(session, CREATOR_ID) == 40

        funding_entry = session.execute(
            select(LedgerEntry).where(
                LedgerEntry.owner_id == CREATOR_ID, LedgerEntry.related_activity_id == activity_id
            )
        ).scalar_one()
        assert funding_entry.amount == -10
        assert funding_entry.origin == EntryOrigin.ACTIVITY.value
        assert_ledger_consistent()

    def test_invariant_check_rejects_overfunded_escrow(self, session, activity_id):
        activity = session.get(Activity, activity_id)
        activity.escrow_balance = activity.funding_amount + 1

        with pytest.raises(IntegrityViolation):
            check_escrow_invariant(activity)
        session.rollback()


class TestAwards:

    def test_author_award_pays_author_points(self, session, activity_id, assert_ledger_consistent):
        result = EscrowService.disburse_award(activity_id, 1, CREATOR_ID, REVIEWER_ID, "helpfulness")

        assert result.success
        assert result.points == 2
        assert result.escrow_balance == 8
        assert escrow_of(session, activity_id) == 8
        assert LedgerService.get_balance(session, REVIEWER_ID) == 2
        assert_ledger_consistent()

    def test_reviewer_award_pays_reviewer_points(self, session, activity_id):
        result = EscrowService.disburse_award(activity_id, 1, REVIEWER_ID, OTHER_REVIEWER_ID, "clarity")

        assert result.success
        assert result.points == 1
        assert LedgerService.get_balance(session, OTHER_REVIEWER_ID) == 1

    def test_self_award_is_rejected_and_escrow_unchanged(self, session, activity_id):
        result = EscrowService.disburse_award(activity_id, 1, CREATOR_ID, CREATOR_ID, "helpfulness")

        assert not result.success
        assert result.error_code == ErrorCode.SELF_AWARD
        assert escrow_of(session, activity_id) == 10
        assert LedgerService.get_balance(session, CREATOR_ID) == 40

    def test_duplicate_award_is_rejected_and_escrow_unchanged(self, session, activity_id, assert_ledger_consistent):
        first = EscrowService.disburse_award(activity_id, 1, CREATOR_ID, REVIEWER_ID, "helpfulness")
        assert first.success

        second = EscrowService.disburse_award(activity_id, 1, CREATOR_ID, OTHER_REVIEWER_ID, "helpfulness")
        assert not second.success
        assert second.error_code == ErrorCode.DUPLICATE_AWARD
        assert escrow_of(session, activity_id) == 8
        assert LedgerService.get_balance(session, OTHER_REVIEWER_ID) == 0
        assert_ledger_consistent()

    def test_same_type_in_another_round_is_allowed(self, session, activity_id):
        assert EscrowService.disburse_award(activity_id, 1, CREATOR_ID, REVIEWER_ID, "helpfulness").success
        assert EscrowService.disburse_award(activity_id, 2, CREATOR_ID, REVIEWER_ID, "helpfulness").success
        assert LedgerService.get_balance(session, REVIEWER_ID) == 4

    def test_unknown_award_type(self, session, activity_id):
        result = EscrowService.disburse_award(activity_id, 1, CREATOR_ID, REVIEWER_ID, "bravery")

        assert result.error_code == ErrorCode.UNKNOWN_AWARD_TYPE
        assert escrow_of(session, activity_id) == 10

    def test_escrow_exhausted(self, session, activity_id, assert_ledger_consistent):
        # 10 tokens: five author awards of 2 points drain it
        for round_number in range(1, 6):
            result = EscrowService.disburse_award(activity_id, round_number, CREATOR_ID, REVIEWER_ID, "helpfulness")
            assert result.success
        assert escrow_of(session, activity_id) == 0

        result = EscrowService.disburse_award(activity_id, 6, CREATOR_ID, REVIEWER_ID, "helpfulness")
        assert not result.success
        assert result.error_code == ErrorCode.ESCROW_EXHAUSTED
        assert result.points == 2
        assert escrow_of(session, activity_id) == 0
        assert session.execute(select(Award.id).where(Award.round_number == 6)).first() is None
        assert_ledger_consistent()

    def test_unknown_activity(self, session):
        result = EscrowService.disburse_award(4040, 1, CREATOR_ID, REVIEWER_ID, "helpfulness")
        assert result.error_code == ErrorCode.ACTIVITY_NOT_FOUND


class TestLeftoverRelease:

    def test_release_credits_platform_account(self, session, activity_id, assert_ledger_consistent):
        EscrowService.disburse_award(activity_id, 1, CREATOR_ID, REVIEWER_ID, "helpfulness")

        result = EscrowService.release_leftover_escrow(activity_id)

        assert result.success
        assert escrow_of(session, activity_id) == 0
        assert LedgerService.get_balance(session, Config.PLATFORM_ADMIN_ACCOUNT_ID) == 8
        entry = session.get(LedgerEntry, result.entry_id)
        assert entry.origin == EntryOrigin.SYSTEM.value
        assert entry.related_activity_id == activity_id
        assert_ledger_consistent()

    def test_release_of_empty_escrow_is_a_no_op(self, session, activity_id):
        EscrowService.release_leftover_escrow(activity_id)
        result = EscrowService.release_leftover_escrow(activity_id)

        assert result.success
        assert result.entry_id is None
        assert LedgerService.get_balance(session, Config.PLATFORM_ADMIN_ACCOUNT_ID) == 10
