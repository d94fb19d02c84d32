"""
Ledger tests
Credits, debits, insufficient funds, duplicate detection and concurrent debits
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from config import Config
from models import EntryKind, EntryOrigin, LedgerEntry
from services.ledger_service import LedgerService
from utils.atomic_transactions import (
    aggregate_locks, atomic_transaction, lock_aggregate, require_atomic_transaction
)
from utils.error_handler import ErrorCode
from utils.exceptions import AggregateLockTimeout, TransientFailure, ValidationError

OWNER_ID = 300


class TestCreditAndDebit:

    def test_credit_creates_wallet_and_entry(self, session, assert_ledger_consistent):
        result = LedgerService.credit(OWNER_ID, 25, EntryOrigin.SYSTEM, "Welcome tokens")

        assert result.success
        assert result.new_balance == 25
        assert not result.duplicate
        assert LedgerService.get_balance(session, OWNER_ID) == 25

        entry = session.get(LedgerEntry, result.entry_id)
        assert entry.amount == 25
        assert entry.kind == EntryKind.CREDIT.value
        assert entry.origin == EntryOrigin.SYSTEM.value
        assert_ledger_consistent()

    def test_debit_is_stored_as_negative_amount(self, session, fund, assert_ledger_consistent):
        fund(OWNER_ID, 20)
        result = LedgerService.debit(OWNER_ID, 7, EntryOrigin.ACTIVITY, "Spend on activity")

        assert result.success
        assert result.new_balance == 13
        entry = session.get(LedgerEntry, result.entry_id)
        assert entry.amount == -7
        assert entry.kind == EntryKind.DEBIT.value
        assert LedgerService.reconstruct_balance(session, OWNER_ID) == 13
        assert LedgerService.has_sufficient_balance(session, OWNER_ID, 13)
        assert not LedgerService.has_sufficient_balance(session, OWNER_ID, 14)
        assert_ledger_consistent()

    def test_overdraw_returns_insufficient_funds_and_leaves_balance(self, session, fund, assert_ledger_consistent):
        fund(OWNER_ID, 5)
        result = LedgerService.debit(OWNER_ID, 6, EntryOrigin.ACTIVITY, "Too expensive")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_FUNDS
        assert result.current_balance == 5
        assert result.required_amount == 6
        assert LedgerService.get_balance(session, OWNER_ID) == 5
        entries = LedgerService.list_entries(session, OWNER_ID)
        assert len(entries) == 1
        assert_ledger_consistent()

    def test_debit_from_unknown_owner_is_insufficient(self, session):
        result = LedgerService.debit(999, 1, EntryOrigin.ACTIVITY, "Nothing to spend")

        assert result.error_code == ErrorCode.INSUFFICIENT_FUNDS
        assert result.current_balance == 0

    @pytest.mark.parametrize("amount", [0, -3, 1.5, True])
    def test_non_positive_or_non_integer_amount_is_rejected(self, session, amount):
        with pytest.raises(ValidationError):
            LedgerService.credit(OWNER_ID, amount, EntryOrigin.SYSTEM, "Bad amount")
        assert LedgerService.get_balance(session, OWNER_ID) == 0


class TestDuplicateDetection:

    def test_identical_credit_in_window_is_idempotent(self, session, assert_ledger_consistent):
        first = LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Monthly bonus")
        second = LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Monthly bonus")

        assert second.success
        assert second.duplicate
        assert second.entry_id == first.entry_id
        assert LedgerService.get_balance(session, OWNER_ID) == 10
        assert_ledger_consistent()

    def test_different_description_is_not_a_duplicate(self, session):
        LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Bonus A")
        second = LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Bonus B")

        assert not second.duplicate
        assert LedgerService.get_balance(session, OWNER_ID) == 20

    def test_credit_and_debit_with_same_description_are_distinct(self, session):
        LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Adjustment")
        debit = LedgerService.debit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Adjustment")

        assert debit.success
        assert not debit.duplicate
        assert LedgerService.get_balance(session, OWNER_ID) == 0

    def test_zero_window_disables_detection(self, session, monkeypatch):
        monkeypatch.setattr(Config, "DUPLICATE_WINDOW_SECONDS", 0)
        LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Monthly bonus")
        second = LedgerService.credit(OWNER_ID, 10, EntryOrigin.SYSTEM, "Monthly bonus")

        assert not second.duplicate
        assert LedgerService.get_balance(session, OWNER_ID) == 20

    def test_is_duplicate_query(self, session):
        LedgerService.credit(OWNER_ID, 4, EntryOrigin.SYSTEM, "Referral")

        assert LedgerService.is_duplicate(session, OWNER_ID, EntryKind.CREDIT, None, "Referral", 4)
        assert not LedgerService.is_duplicate(session, OWNER_ID, EntryKind.CREDIT, None, "Referral", 5)
        assert not LedgerService.is_duplicate(session, OWNER_ID, EntryKind.DEBIT, None, "Referral", 4)

    def test_is_duplicate_matches_debits_by_unsigned_amount(self, session, fund):
        fund(OWNER_ID, 10)
        LedgerService.debit(OWNER_ID, 4, EntryOrigin.ACTIVITY, "Penalty")

        assert LedgerService.is_duplicate(session, OWNER_ID, EntryKind.DEBIT, None, "Penalty", 4)
        assert not LedgerService.is_duplicate(session, OWNER_ID, EntryKind.CREDIT, None, "Penalty", 4)


class TestAggregateLocks:

    def test_registry_is_empty_after_transactions(self, fund):
        for owner_id in range(1000, 1050):
            fund(owner_id, 1)

        assert len(aggregate_locks) == 0

    def test_entry_lives_only_while_held(self):
        with atomic_transaction() as tx_session:
            lock_aggregate(tx_session, "wallet", OWNER_ID)
            lock_aggregate(tx_session, "wallet", OWNER_ID)
            assert len(aggregate_locks) == 1

        assert len(aggregate_locks) == 0

    def test_timed_out_waiter_leaves_no_entry(self, monkeypatch):
        monkeypatch.setattr(Config, "LOCK_TIMEOUT_SECONDS", 0.05)
        held = threading.Event()
        done = threading.Event()

        def holder():
            with atomic_transaction() as tx_session:
                lock_aggregate(tx_session, "wallet", OWNER_ID)
                held.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(AggregateLockTimeout):
                with atomic_transaction() as tx_session:
                    lock_aggregate(tx_session, "wallet", OWNER_ID)
            assert len(aggregate_locks) == 1
        finally:
            done.set()
            thread.join()

        assert len(aggregate_locks) == 0


class TestAdminAdjustments:

    def test_admin_grant_records_admin(self, session):
        admin_id = Config.ADMIN_ACCOUNT_IDS[0]
        result = LedgerService.admin_grant(admin_id, OWNER_ID, 15)

        assert result.success
        entry = session.get(LedgerEntry, result.entry_id)
        assert entry.origin == EntryOrigin.ADMIN.value
        assert entry.admin_id == admin_id
        assert LedgerService.get_balance(session, OWNER_ID) == 15

    def test_non_admin_is_refused(self, session):
        result = LedgerService.admin_grant(12345, OWNER_ID, 15)

        assert not result.success
        assert result.error_code == ErrorCode.NOT_AUTHORIZED
        assert LedgerService.get_balance(session, OWNER_ID) == 0

    def test_admin_deduct_respects_balance(self, session, fund):
        admin_id = Config.ADMIN_ACCOUNT_IDS[0]
        fund(OWNER_ID, 3)

        result = LedgerService.admin_deduct(admin_id, OWNER_ID, 5)
        assert result.error_code == ErrorCode.INSUFFICIENT_FUNDS

        result = LedgerService.admin_deduct(admin_id, OWNER_ID, 2)
        assert result.success
        assert LedgerService.get_balance(session, OWNER_ID) == 1

    def test_admin_invalid_amount(self, session):
        result = LedgerService.admin_grant(Config.ADMIN_ACCOUNT_IDS[0], OWNER_ID, 0)
        assert result.error_code == ErrorCode.INVALID_AMOUNT


class TestConcurrentDebits:

    def test_two_debits_that_jointly_overdraw_yield_one_success(self, session, fund, assert_ledger_consistent):
        fund(OWNER_ID, 10)
        barrier = threading.Barrier(2)

        def spend(label):
            barrier.wait()
            return LedgerService.debit(OWNER_ID, 8, EntryOrigin.ACTIVITY, f"Concurrent spend {label}")

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(spend, ["a", "b"]))

        successes = [r for r in results if r.success]
        failures = [r for r in results if not r.success]
        assert len(successes) == 1
        assert len(failures) == 1
        assert failures[0].error_code == ErrorCode.INSUFFICIENT_FUNDS
        assert failures[0].current_balance == 2
        assert LedgerService.get_balance(session, OWNER_ID) == 2
        assert_ledger_consistent()

    def test_many_concurrent_credits_are_all_applied(self, session, assert_ledger_consistent):
        def earn(index):
            return LedgerService.credit(OWNER_ID, 1, EntryOrigin.SYSTEM, f"Parallel credit {index}")

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(earn, range(12)))

        assert all(r.success for r in results)
        assert LedgerService.get_balance(session, OWNER_ID) == 12
        count = len(session.execute(
            select(LedgerEntry.id).where(LedgerEntry.owner_id == OWNER_ID)
        ).all())
        assert count == 12
        assert_ledger_consistent()


class TestTransactionRetries:

    def test_lock_timeout_is_retried_then_surfaces_as_transient(self, monkeypatch):
        monkeypatch.setattr(Config, "TRANSACTION_RETRY_DELAY_SECONDS", 0)
        calls = []

        @require_atomic_transaction
        def always_contended(session=None):
            calls.append(session)
            raise AggregateLockTimeout("busy")

        with pytest.raises(TransientFailure) as exc_info:
            always_contended()
        assert len(calls) == Config.TRANSACTION_MAX_RETRIES + 1
        assert exc_info.value.attempts == Config.TRANSACTION_MAX_RETRIES + 1

    def test_retryable_database_error_succeeds_on_second_attempt(self, monkeypatch):
        monkeypatch.setattr(Config, "TRANSACTION_RETRY_DELAY_SECONDS", 0)
        attempts = []

        @require_atomic_transaction
        def flaky(session=None):
            attempts.append(1)
            if len(attempts) == 1:
                raise OperationalError("UPDATE wallets", {}, Exception("database is locked"))
            return "done"

        assert flaky() == "done"
        assert len(attempts) == 2

    def test_non_retryable_error_propagates_immediately(self):
        attempts = []

        @require_atomic_transaction
        def broken(session=None):
            attempts.append(1)
            raise ValueError("not a conflict")

        with pytest.raises(ValueError):
            broken()
        assert len(attempts) == 1

    def test_joined_transaction_is_not_retried(self, session):
        attempts = []

        @require_atomic_transaction
        def contended(session=None):
            attempts.append(1)
            raise AggregateLockTimeout("busy")

        with pytest.raises(AggregateLockTimeout):
            contended(session=session)
        assert len(attempts) == 1

    def test_standalone_credit_retries_a_contended_wallet(self, session, monkeypatch):
        monkeypatch.setattr(Config, "TRANSACTION_RETRY_DELAY_SECONDS", 0)
        monkeypatch.setattr(Config, "LOCK_TIMEOUT_SECONDS", 0.01)
        held = threading.Event()
        done = threading.Event()

        def holder():
            with atomic_transaction() as tx_session:
                lock_aggregate(tx_session, "wallet", OWNER_ID)
                held.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        held.wait(5)
        try:
            with pytest.raises(TransientFailure) as exc_info:
                LedgerService.credit(OWNER_ID, 5, EntryOrigin.SYSTEM, "Contended credit")
            assert exc_info.value.attempts == Config.TRANSACTION_MAX_RETRIES + 1
        finally:
            done.set()
            thread.join()

        result = LedgerService.credit(OWNER_ID, 5, EntryOrigin.SYSTEM, "Contended credit")
        assert result.success
        assert LedgerService.get_balance(session, OWNER_ID) == 5
