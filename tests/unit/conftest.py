"""
Shared fixtures for access-core unit tests.

Every test gets its own sqlite file under tmp_path with all tables created,
a session factory bound to it, the bundled policy table, a fake clock and a
recorder whose queue the test drains explicitly (no background thread).
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from attendx.services.access.audit import AuditRecorder
from attendx.services.access.policy_table import load_policy
from attendx.services.access.tokens import TokenService
from attendx.services.shared.database import create_all_tables, make_engine
from attendx.services.shared.settings import POLICY_FILE


class FakeClock:
    """Callable clock the token service reads instead of the wall clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'attendx.db'}", timeout_seconds=5)
    create_all_tables(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="session")
def policy():
    return load_policy(POLICY_FILE)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def recorder(session_factory):
    return AuditRecorder(session_factory=session_factory, retry_backoff_seconds=0)


@pytest.fixture
def token_service(session_factory, recorder, clock):
    return TokenService(
        session_factory=session_factory,
        recorder=recorder,
        clock=clock,
        retry_backoff_seconds=0,
    )
