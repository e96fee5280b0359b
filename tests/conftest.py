import pytest

from rollout.database import init_db, make_engine, make_session_factory
from rollout.services.audit import AuditLog
from rollout.services.rollout import Rollout
from rollout.store import MemoryStorage


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def rollout(storage):
    return Rollout(storage)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def audit(engine):
    return AuditLog(make_session_factory(engine))
