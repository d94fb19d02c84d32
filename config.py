"""Configuration management for the activity progression service"""

import os
import logging
from typing import List

logger = logging.getLogger(__name__)


def _int_list(raw: str) -> List[int]:
    return [int(part) for part in raw.split(",") if part.strip()]


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./peerstage.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Ledger idempotency: identical entries inside this window are no-ops
    DUPLICATE_WINDOW_SECONDS = int(os.getenv("DUPLICATE_WINDOW_SECONDS", "60"))

    # Reviewer team commitment policy
    COMMITMENT_WINDOW_HOURS = int(os.getenv("COMMITMENT_WINDOW_HOURS", "72"))
    COMMITMENT_PENALTY_TOKENS = int(os.getenv("COMMITMENT_PENALTY_TOKENS", "1"))

    # Administrative accounts
    PLATFORM_ADMIN_ACCOUNT_ID = int(os.getenv("PLATFORM_ADMIN_ACCOUNT_ID", "1"))
    ADMIN_ACCOUNT_IDS = _int_list(os.getenv("ADMIN_ACCOUNT_IDS", "1"))

    # Concurrency
    TRANSACTION_MAX_RETRIES = int(os.getenv("TRANSACTION_MAX_RETRIES", "3"))
    TRANSACTION_RETRY_DELAY_SECONDS = float(
        os.getenv("TRANSACTION_RETRY_DELAY_SECONDS", "0.05")
    )
    LOCK_TIMEOUT_SECONDS = int(os.getenv("LOCK_TIMEOUT_SECONDS", "30"))

    # Stage deadlines
    DEADLINE_WARNING_DAYS = int(os.getenv("DEADLINE_WARNING_DAYS", "3"))

    # Background jobs (seconds)
    COMMITMENT_SWEEP_INTERVAL_SECONDS = int(
        os.getenv("COMMITMENT_SWEEP_INTERVAL_SECONDS", "300")
    )
    DEADLINE_PROGRESSION_INTERVAL_SECONDS = int(
        os.getenv("DEADLINE_PROGRESSION_INTERVAL_SECONDS", "600")
    )
    OUTBOX_DISPATCH_INTERVAL_SECONDS = int(
        os.getenv("OUTBOX_DISPATCH_INTERVAL_SECONDS", "30")
    )
    CONSISTENCY_CHECK_INTERVAL_SECONDS = int(
        os.getenv("CONSISTENCY_CHECK_INTERVAL_SECONDS", "3600")
    )

    # Notification outbox
    OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "5"))
    OUTBOX_BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "100"))
    NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
    NOTIFICATION_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Service Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Duplicate window: {Config.DUPLICATE_WINDOW_SECONDS}s")
        logger.info(f"   Commitment window: {Config.COMMITMENT_WINDOW_HOURS}h")
        logger.info(f"   Platform admin account: {Config.PLATFORM_ADMIN_ACCOUNT_ID}")
        if not Config.NOTIFICATION_WEBHOOK_URL:
            logger.info("   Notifications: log only (NOTIFICATION_WEBHOOK_URL not set)")
