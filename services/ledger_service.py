"""
Token Ledger Service

Every balance change goes through credit() or debit(): each call writes one
append-only LedgerEntry and updates the owner's Wallet in the same
transaction, under the wallet's row lock. Insufficient funds and duplicate
submissions are returned as results, never raised.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import EntryKind, EntryOrigin, LedgerEntry, Wallet
from utils.atomic_transactions import locked_wallet, require_atomic_transaction
from utils.error_handler import ErrorCode
from utils.exceptions import IntegrityViolation, ValidationError
from utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    """Outcome of a credit or debit"""

    success: bool
    entry_id: Optional[int] = None
    duplicate: bool = False
    new_balance: Optional[int] = None
    error_code: Optional[ErrorCode] = None
    current_balance: Optional[int] = None
    required_amount: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "entry_id": self.entry_id,
            "duplicate": self.duplicate,
            "new_balance": self.new_balance,
            "error_code": self.error_code.value if self.error_code else None,
            "current_balance": self.current_balance,
            "required_amount": self.required_amount,
        }


def _validate_amount(amount) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Ledger amount must be a positive integer, got {amount!r}")


class LedgerService:
    """Append-only token ledger backed by per-owner wallets"""

    # ------------------------------------------------------------------
    # Duplicate detection
    # ------------------------------------------------------------------

    @staticmethod
    def _find_duplicate(
        session: Session,
        owner_id: int,
        kind: EntryKind,
        related_activity_id: Optional[int],
        description: str,
        amount: int,
        window_seconds: Optional[int] = None,
    ) -> Optional[LedgerEntry]:
        window = Config.DUPLICATE_WINDOW_SECONDS if window_seconds is None else window_seconds
        if window <= 0:
            return None
        since = utcnow() - timedelta(seconds=window)
        stmt = (
            select(LedgerEntry)
            .where(
                LedgerEntry.owner_id == owner_id,
                LedgerEntry.kind == kind.value,
                LedgerEntry.description == description,
                func.abs(LedgerEntry.amount) == abs(amount),
                LedgerEntry.created_at >= since,
            )
            .order_by(LedgerEntry.id.desc())
            .limit(1)
        )
        if related_activity_id is None:
            stmt = stmt.where(LedgerEntry.related_activity_id.is_(None))
        else:
            stmt = stmt.where(LedgerEntry.related_activity_id == related_activity_id)
        return session.execute(stmt).scalar_one_or_none()

    @classmethod
    def is_duplicate(
        cls,
        session: Session,
        owner_id: int,
        kind: EntryKind,
        related_activity_id: Optional[int],
        description: str,
        amount: int,
        window_seconds: Optional[int] = None,
    ) -> bool:
        """True when an identical entry of ``kind`` was posted inside the idempotency window; amounts compare unsigned"""
        return cls._find_duplicate(
            session, owner_id, kind, related_activity_id, description, amount, window_seconds
        ) is not None

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    @classmethod
    @require_atomic_transaction
    def credit(
        cls,
        owner_id: int,
        amount: int,
        origin: EntryOrigin,
        description: str,
        related_activity_id: Optional[int] = None,
        related_activity_uuid: Optional[str] = None,
        counterparty_id: Optional[int] = None,
        admin_id: Optional[int] = None,
        session: Session = None,
    ) -> LedgerResult:
        """Post a credit; always succeeds for a positive amount"""
        _validate_amount(amount)
        wallet = locked_wallet(session, owner_id)

        existing = cls._find_duplicate(
            session, owner_id, EntryKind.CREDIT, related_activity_id, description, amount
        )
        if existing is not None:
            logger.info(
                f"🔁 LEDGER_DUPLICATE: credit of {amount} to {owner_id} ({description}) matches entry {existing.id}"
            )
            return LedgerResult(success=True, entry_id=existing.id, duplicate=True, new_balance=wallet.balance)

        entry = LedgerEntry(
            owner_id=owner_id,
            counterparty_id=counterparty_id,
            amount=amount,
            kind=EntryKind.CREDIT.value,
            origin=origin.value,
            admin_id=admin_id,
            related_activity_id=related_activity_id,
            related_activity_uuid=related_activity_uuid,
            description=description,
        )
        session.add(entry)
        wallet.balance = wallet.balance + amount
        wallet.last_updated = utcnow()
        session.flush()

        logger.info(f"✅ LEDGER_CREDIT: +{amount} to {owner_id} (balance {wallet.balance}) - {description}")
        return LedgerResult(success=True, entry_id=entry.id, new_balance=wallet.balance)

    @classmethod
    @require_atomic_transaction
    def debit(
        cls,
        owner_id: int,
        amount: int,
        origin: EntryOrigin,
        description: str,
        related_activity_id: Optional[int] = None,
        related_activity_uuid: Optional[str] = None,
        counterparty_id: Optional[int] = None,
        admin_id: Optional[int] = None,
        session: Session = None,
    ) -> LedgerResult:
        """
        Post a debit of ``amount`` tokens.

        The balance is re-read under the wallet lock that also performs the
        update, so two concurrent debits can never both pass the check.
        """
        _validate_amount(amount)
        wallet = locked_wallet(session, owner_id)

        existing = cls._find_duplicate(
            session, owner_id, EntryKind.DEBIT, related_activity_id, description, amount
        )
        if existing is not None:
            logger.info(
                f"🔁 LEDGER_DUPLICATE: debit of {amount} from {owner_id} ({description}) matches entry {existing.id}"
            )
            return LedgerResult(success=True, entry_id=existing.id, duplicate=True, new_balance=wallet.balance)

        if wallet.balance - amount < 0:
            logger.info(
                f"💸 INSUFFICIENT_FUNDS: owner {owner_id} has {wallet.balance}, needs {amount} - {description}"
            )
            return LedgerResult(
                success=False,
                error_code=ErrorCode.INSUFFICIENT_FUNDS,
                current_balance=wallet.balance,
                required_amount=amount,
            )

        entry = LedgerEntry(
            owner_id=owner_id,
            counterparty_id=counterparty_id,
            amount=-amount,
            kind=EntryKind.DEBIT.value,
            origin=origin.value,
            admin_id=admin_id,
            related_activity_id=related_activity_id,
            related_activity_uuid=related_activity_uuid,
            description=description,
        )
        session.add(entry)
        wallet.balance = wallet.balance - amount
        wallet.last_updated = utcnow()
        if wallet.balance < 0:
            raise IntegrityViolation(f"Wallet {owner_id} would go negative ({wallet.balance})")
        session.flush()

        logger.info(f"✅ LEDGER_DEBIT: -{amount} from {owner_id} (balance {wallet.balance}) - {description}")
        return LedgerResult(success=True, entry_id=entry.id, new_balance=wallet.balance)

    # ------------------------------------------------------------------
    # Administrative adjustments
    # ------------------------------------------------------------------

    @staticmethod
    def is_admin(account_id: int) -> bool:
        return account_id in Config.ADMIN_ACCOUNT_IDS

    @classmethod
    @require_atomic_transaction
    def admin_grant(
        cls, admin_id: int, target_id: int, amount: int, description: str = None, session: Session = None
    ) -> LedgerResult:
        """Grant tokens to an account on behalf of an administrator"""
        if not cls.is_admin(admin_id):
            logger.warning(f"🚫 ADMIN_GRANT_DENIED: {admin_id} is not an administrator")
            return LedgerResult(success=False, error_code=ErrorCode.NOT_AUTHORIZED)
        if not isinstance(amount, int) or amount <= 0:
            return LedgerResult(success=False, error_code=ErrorCode.INVALID_AMOUNT, required_amount=amount)
        return cls.credit(
            target_id,
            amount,
            EntryOrigin.ADMIN,
            description or f"Tokens added by administrator {admin_id}",
            counterparty_id=admin_id,
            admin_id=admin_id,
            session=session,
        )

    @classmethod
    @require_atomic_transaction
    def admin_deduct(
        cls, admin_id: int, target_id: int, amount: int, description: str = None, session: Session = None
    ) -> LedgerResult:
        """Remove tokens from an account on behalf of an administrator"""
        if not cls.is_admin(admin_id):
            logger.warning(f"🚫 ADMIN_DEDUCT_DENIED: {admin_id} is not an administrator")
            return LedgerResult(success=False, error_code=ErrorCode.NOT_AUTHORIZED)
        if not isinstance(amount, int) or amount <= 0:
            return LedgerResult(success=False, error_code=ErrorCode.INVALID_AMOUNT, required_amount=amount)
        return cls.debit(
            target_id,
            amount,
            EntryOrigin.ADMIN,
            description or f"Tokens deducted by administrator {admin_id}",
            counterparty_id=admin_id,
            admin_id=admin_id,
            session=session,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def get_balance(session: Session, owner_id: int) -> int:
        balance = session.execute(
            select(Wallet.balance).where(Wallet.owner_id == owner_id)
        ).scalar_one_or_none()
        return balance or 0

    @classmethod
    def has_sufficient_balance(cls, session: Session, owner_id: int, amount: int) -> bool:
        return cls.get_balance(session, owner_id) >= amount

    @staticmethod
    def reconstruct_balance(session: Session, owner_id: int) -> int:
        """Sum of every ledger entry for the owner"""
        total = session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.owner_id == owner_id)
        ).scalar_one()
        return int(total)

    @staticmethod
    def list_entries(session: Session, owner_id: int, limit: int = 50) -> List[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.owner_id == owner_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
        )
        return list(session.execute(stmt).scalars())
