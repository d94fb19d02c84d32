"""
Background job scheduler

Jobs:
1. Commitment sweep - remove reviewers who never locked in, post penalties
2. Deadline progression - advance activities whose stage deadline passed
3. Deadline warnings - log activities about to hit their deadline
4. Outbox dispatch - deliver pending notifications
5. Ledger consistency - detect wallet/ledger and escrow drift

Every job is idempotent, so coalescing and misfires are harmless.
"""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from jobs.ledger_consistency_monitor import run_ledger_consistency_check
from jobs.notification_dispatcher import run_notification_dispatch
from jobs.stage_deadline_jobs import run_commitment_sweep, run_deadline_progression, run_deadline_warnings

logger = logging.getLogger(__name__)


class ActivityScheduler:
    """Owns the AsyncIOScheduler and the periodic jobs"""

    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all periodic jobs"""
        self.scheduler.add_job(
            run_commitment_sweep,
            trigger=IntervalTrigger(seconds=Config.COMMITMENT_SWEEP_INTERVAL_SECONDS),
            id="commitment_sweep",
            name="⏰ Reviewer Commitment Sweep",
            replace_existing=True
        )
        logger.info(f"✅ Commitment sweep scheduled every {Config.COMMITMENT_SWEEP_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            run_deadline_progression,
            trigger=IntervalTrigger(seconds=Config.DEADLINE_PROGRESSION_INTERVAL_SECONDS),
            id="deadline_progression",
            name="📅 Stage Deadline Progression",
            replace_existing=True
        )
        logger.info(f"✅ Deadline progression scheduled every {Config.DEADLINE_PROGRESSION_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            run_deadline_warnings,
            trigger=IntervalTrigger(hours=6),
            id="deadline_warnings",
            name="⏳ Approaching Deadline Warnings",
            replace_existing=True
        )

        self.scheduler.add_job(
            run_notification_dispatch,
            trigger=IntervalTrigger(seconds=Config.OUTBOX_DISPATCH_INTERVAL_SECONDS),
            id="outbox_dispatch",
            name="📬 Notification Outbox Dispatch",
            replace_existing=True
        )
        logger.info(f"✅ Outbox dispatch scheduled every {Config.OUTBOX_DISPATCH_INTERVAL_SECONDS}s")

        self.scheduler.add_job(
            run_ledger_consistency_check,
            trigger=IntervalTrigger(seconds=Config.CONSISTENCY_CHECK_INTERVAL_SECONDS),
            id="ledger_consistency",
            name="🔍 Ledger Consistency Monitor",
            replace_existing=True
        )
        logger.info(f"✅ Ledger consistency monitor scheduled every {Config.CONSISTENCY_CHECK_INTERVAL_SECONDS}s")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"🚀 Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("🛑 Scheduler stopped")
