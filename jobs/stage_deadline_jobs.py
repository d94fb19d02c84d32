"""Time-driven jobs: reviewer commitment sweep and deadline-based progression"""

import asyncio
import logging

from config import Config
from database import SessionLocal
from services.progression_engine import ProgressionEngine
from services.reviewer_team_service import ReviewerTeamService

logger = logging.getLogger(__name__)


async def run_commitment_sweep():
    try:
        return await asyncio.to_thread(ReviewerTeamService.sweep_expired_commitments)
    except Exception as e:
        logger.error(f"❌ COMMITMENT_SWEEP_ERROR: {e}")
        return {"processed": 0, "removed": [], "errors": [str(e)]}


async def run_deadline_progression():
    try:
        return await asyncio.to_thread(ProgressionEngine.process_deadline_progressions)
    except Exception as e:
        logger.error(f"❌ DEADLINE_PROGRESSION_ERROR: {e}")
        return {"checked": 0, "progressed": [], "errors": [str(e)]}


def log_approaching_deadlines() -> int:
    session = SessionLocal()
    try:
        upcoming = ProgressionEngine.activities_approaching_deadline(session, Config.DEADLINE_WARNING_DAYS)
        for activity in upcoming:
            logger.info(
                f"⏳ DEADLINE_APPROACHING: activity {activity.id} stage {activity.current_stage_key} "
                f"due {activity.stage_deadline.isoformat()}"
            )
        return len(upcoming)
    finally:
        session.close()


async def run_deadline_warnings():
    try:
        return await asyncio.to_thread(log_approaching_deadlines)
    except Exception as e:
        logger.error(f"❌ DEADLINE_WARNING_ERROR: {e}")
        return 0
