"""
Wallet Routes
Token balances, ledger history and administrative adjustments
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from database import managed_session
from routes.activity_routes import _call
from services.activity_service import ActivityService
from services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallets", tags=["wallets"])


class AdminAdjustmentRequest(BaseModel):
    admin_id: int
    amount: int
    description: Optional[str] = None


@router.get("/{owner_id}")
def get_wallet(owner_id: int, limit: int = Query(50, ge=1, le=500)):
    """Balance plus the most recent ledger entries"""
    with managed_session() as session:
        return ActivityService.wallet_summary(session, owner_id, limit)


@router.get("/{owner_id}/balance")
def get_balance(owner_id: int):
    with managed_session() as session:
        return {"owner_id": owner_id, "balance": LedgerService.get_balance(session, owner_id)}


@router.post("/{owner_id}/grant")
def admin_grant(owner_id: int, body: AdminAdjustmentRequest):
    logger.info(f"🛠️ ADMIN_GRANT_REQUEST: admin {body.admin_id} -> {owner_id} ({body.amount})")
    return _call(
        "ADMIN_GRANT", LedgerService.admin_grant, body.admin_id, owner_id, body.amount, description=body.description
    )


@router.post("/{owner_id}/deduct")
def admin_deduct(owner_id: int, body: AdminAdjustmentRequest):
    logger.info(f"🛠️ ADMIN_DEDUCT_REQUEST: admin {body.admin_id} -> {owner_id} ({body.amount})")
    return _call(
        "ADMIN_DEDUCT", LedgerService.admin_deduct, body.admin_id, owner_id, body.amount, description=body.description
    )
