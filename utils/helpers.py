"""Helper utilities shared by services, jobs and routes"""

import hashlib
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_activity_uuid() -> str:
    return str(uuid.uuid4())


def content_hash(content: str) -> str:
    """SHA-256 hex digest used to fingerprint assessment snapshots"""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
