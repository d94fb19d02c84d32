"""
Ledger and escrow consistency checks.

Detects, never repairs: a finding here means a bug somewhere upstream and
is logged at CRITICAL for a human to investigate.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Activity, Award, EntryKind, EntryOrigin, LedgerEntry, Wallet

logger = logging.getLogger(__name__)


@dataclass
class AuditReport:
    """Result of one consistency pass"""

    wallets_checked: int = 0
    activities_checked: int = 0
    wallet_mismatches: List[Dict] = field(default_factory=list)
    escrow_violations: List[Dict] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.wallet_mismatches and not self.escrow_violations

    def to_dict(self) -> dict:
        return {
            "healthy": self.healthy,
            "wallets_checked": self.wallets_checked,
            "activities_checked": self.activities_checked,
            "wallet_mismatches": self.wallet_mismatches,
            "escrow_violations": self.escrow_violations,
        }


class LedgerAuditService:

    @staticmethod
    def check_wallets(session: Session) -> tuple:
        """Every wallet balance must equal the sum of its owner's ledger entries"""
        totals = dict(session.execute(
            select(LedgerEntry.owner_id, func.sum(LedgerEntry.amount)).group_by(LedgerEntry.owner_id)
        ).all())
        wallets = session.execute(select(Wallet.owner_id, Wallet.balance)).all()

        mismatches = []
        for owner_id, balance in wallets:
            expected = int(totals.pop(owner_id, 0) or 0)
            if balance != expected or balance < 0:
                mismatches.append({"owner_id": owner_id, "balance": balance, "ledger_total": expected})
        for owner_id, total in totals.items():
            mismatches.append({"owner_id": owner_id, "balance": None, "ledger_total": int(total)})
        return len(wallets), mismatches

    @staticmethod
    def check_escrows(session: Session) -> tuple:
        """
        Escrow stays within [0, funding] and is conserved: funding equals
        escrow left + awards paid + leftover released.
        """
        awarded = dict(session.execute(
            select(Award.activity_id, func.sum(Award.points)).group_by(Award.activity_id)
        ).all())
        released = dict(session.execute(
            select(LedgerEntry.related_activity_id, func.sum(LedgerEntry.amount))
            .where(
                LedgerEntry.origin == EntryOrigin.SYSTEM.value,
                LedgerEntry.kind == EntryKind.CREDIT.value,
                LedgerEntry.related_activity_id.isnot(None),
            )
            .group_by(LedgerEntry.related_activity_id)
        ).all())
        activities = session.execute(
            select(Activity.id, Activity.funding_amount, Activity.escrow_balance)
        ).all()

        violations = []
        for activity_id, funding, escrow in activities:
            paid = int(awarded.get(activity_id, 0) or 0)
            returned = int(released.get(activity_id, 0) or 0)
            if escrow < 0 or escrow > funding or funding != escrow + paid + returned:
                violations.append({
                    "activity_id": activity_id,
                    "funding_amount": funding,
                    "escrow_balance": escrow,
                    "awarded": paid,
                    "released": returned,
                })
        return len(activities), violations

    @classmethod
    def run_audit(cls, session: Session) -> AuditReport:
        report = AuditReport()
        report.wallets_checked, report.wallet_mismatches = cls.check_wallets(session)
        report.activities_checked, report.escrow_violations = cls.check_escrows(session)

        for mismatch in report.wallet_mismatches:
            logger.critical(f"🚨 WALLET_LEDGER_MISMATCH: {mismatch}")
        for violation in report.escrow_violations:
            logger.critical(f"🚨 ESCROW_INCONSISTENT: {violation}")
        if report.healthy:
            logger.info(
                f"✅ LEDGER_AUDIT_OK: {report.wallets_checked} wallets, {report.activities_checked} activities"
            )
        return report
