"""
Shared fixtures: every test gets its own SQLite file database with the
builtin templates and award catalogue seeded.
"""

import pytest

import database
from models import Base, EntryOrigin
from services.escrow_service import seed_award_types
from services.ledger_audit_service import LedgerAuditService
from services.ledger_service import LedgerService
from services.stage_graph import seed_builtin_templates


@pytest.fixture(autouse=True)
def test_database(tmp_path):
    """Point the session factory at a fresh database for each test"""
    engine = database.configure_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(engine)
    seed_builtin_templates()
    seed_award_types()
    yield engine
    engine.dispose()


@pytest.fixture
def session(test_database):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def fund():
    """Credit an account with system tokens"""

    def _fund(owner_id: int, amount: int, description: str = None):
        result = LedgerService.credit(
            owner_id, amount, EntryOrigin.SYSTEM, description or f"Test funding for {owner_id}"
        )
        assert result.success
        return result

    return _fund


@pytest.fixture
def assert_ledger_consistent():
    """Reconstructed balances and escrow conservation must hold"""

    def _check():
        session = database.SessionLocal()
        try:
            report = LedgerAuditService.run_audit(session)
        finally:
            session.close()
        assert report.healthy, report.to_dict()
        return report

    return _check
