"""
Ledger Consistency Monitor

Periodically reconstructs every wallet from its ledger entries and checks
escrow conservation for every activity. Findings are logged at CRITICAL;
nothing is repaired.
"""

import asyncio
import logging

from database import SessionLocal
from services.ledger_audit_service import AuditReport, LedgerAuditService

logger = logging.getLogger(__name__)


def check_consistency() -> AuditReport:
    session = SessionLocal()
    try:
        return LedgerAuditService.run_audit(session)
    finally:
        session.close()


async def run_ledger_consistency_check():
    """Scheduler entry point"""
    try:
        report = await asyncio.to_thread(check_consistency)
        return report.to_dict()
    except Exception as e:
        logger.error(f"❌ CONSISTENCY_MONITOR_ERROR: {e}")
        return {"healthy": False, "error": str(e)}
