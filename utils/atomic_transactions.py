"""Atomic transaction utilities for ledger, escrow and stage operations"""

import logging
import threading
import time
from contextlib import contextmanager
from functools import wraps
from typing import Any, Callable, Dict, Generator, Hashable, List, Optional, Tuple, TypeVar

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from config import Config
from database import SessionLocal, is_retryable_error
from models import Activity, Wallet
from utils.exceptions import AggregateLockTimeout, TransientFailure

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

AggregateKey = Tuple[str, Hashable]

_HELD_LOCKS_KEY = "aggregate_locks"


class AggregateLockRegistry:
    """
    Process-local mutex per aggregate (wallet, activity, membership).

    SELECT ... FOR UPDATE serializes writers across processes on PostgreSQL;
    these mutexes give the same guarantee inside one process and on SQLite,
    which ignores FOR UPDATE. Entries are reference counted (holders plus
    waiters) and dropped when the count reaches zero.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[AggregateKey, List] = {}

    def acquire(self, key: AggregateKey, timeout: float) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        if entry[0].acquire(timeout=timeout):
            return True
        self._unref(key)
        return False

    def release(self, key: AggregateKey) -> None:
        with self._guard:
            self._locks[key][0].release()
        self._unref(key)

    def _unref(self, key: AggregateKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


aggregate_locks = AggregateLockRegistry()


def lock_aggregate(session: Session, kind: str, key: Hashable) -> None:
    """Acquire the aggregate mutex and keep it until the session's transaction ends"""
    if not aggregate_locks.acquire((kind, key), timeout=Config.LOCK_TIMEOUT_SECONDS):
        logger.warning(f"⏳ AGGREGATE_LOCK_TIMEOUT: {kind}:{key} after {Config.LOCK_TIMEOUT_SECONDS}s")
        raise AggregateLockTimeout(f"Timed out waiting for {kind} {key}")
    session.info.setdefault(_HELD_LOCKS_KEY, []).append((kind, key))
    logger.debug(f"🔒 LOCKED: {kind}:{key}")


def release_aggregate_locks(session: Session) -> None:
    held = session.info.pop(_HELD_LOCKS_KEY, [])
    for key in reversed(held):
        aggregate_locks.release(key)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Without a session a new one is opened, committed and closed. With a
    session, nesting depth is tracked and only the outermost level commits.
    Aggregate locks taken inside are released once the outermost level
    has committed or rolled back.
    """
    if session is None:
        session = SessionLocal()
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {e}")
            raise
        finally:
            release_aggregate_locks(session)
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))
        if transaction_depth == 0:
            release_aggregate_locks(session)


def require_atomic_transaction(func: F) -> F:
    """
    Run the decorated function inside one atomic transaction.

    When the caller passes ``session=...`` the function joins that
    transaction and conflicts propagate to the caller, which owns the
    logical operation. Without a session a fresh transaction is opened and
    retried on lock or serialization conflicts up to
    ``Config.TRANSACTION_MAX_RETRIES`` times before raising TransientFailure.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        session = kwargs.get("session")
        if session is not None:
            with atomic_transaction(session):
                return func(*args, **kwargs)

        attempts = Config.TRANSACTION_MAX_RETRIES + 1
        for attempt in range(1, attempts + 1):
            try:
                with atomic_transaction() as new_session:
                    kwargs["session"] = new_session
                    return func(*args, **kwargs)
            except (DBAPIError, AggregateLockTimeout) as e:
                retryable = isinstance(e, AggregateLockTimeout) or is_retryable_error(e)
                if not retryable:
                    raise
                if attempt == attempts:
                    logger.error(
                        f"❌ TRANSACTION_RETRIES_EXHAUSTED: {func.__qualname__} failed after {attempts} attempts: {e}"
                    )
                    raise TransientFailure(
                        f"{func.__qualname__} failed after {attempts} attempts", attempts=attempts
                    ) from e
                delay = Config.TRANSACTION_RETRY_DELAY_SECONDS * (2 ** (attempt - 1))
                logger.info(
                    f"🔄 TRANSACTION_RETRY: {func.__qualname__} attempt {attempt + 1}/{attempts} in {delay:.2f}s"
                )
                time.sleep(delay)

    return wrapper  # type: ignore[return-value]


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    return None


def locked_wallet(session: Session, owner_id: int, create: bool = True) -> Optional[Wallet]:
    """
    Lock and return the owner's wallet row, creating it lazily.

    Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first-time
    creation never trips the unique constraint.
    """
    lock_aggregate(session, "wallet", owner_id)
    session.flush()

    stmt = (
        select(Wallet)
        .where(Wallet.owner_id == owner_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    wallet = session.execute(stmt).scalar_one_or_none()
    if wallet is not None or not create:
        return wallet

    insert = _insert_for(session)
    if insert is not None:
        session.execute(
            insert(Wallet)
            .values(owner_id=owner_id, balance=0)
            .on_conflict_do_nothing(index_elements=["owner_id"])
        )
    else:
        session.add(Wallet(owner_id=owner_id, balance=0))
        session.flush()
    wallet = session.execute(stmt).scalar_one()
    logger.debug(f"💼 WALLET_CREATED: owner {owner_id}")
    return wallet


def locked_activity(session: Session, activity_id: int) -> Optional[Activity]:
    """Lock and return the activity row, or None when it does not exist"""
    lock_aggregate(session, "activity", activity_id)
    session.flush()
    stmt = (
        select(Activity)
        .where(Activity.id == activity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.execute(stmt).scalar_one_or_none()
