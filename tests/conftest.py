"""
Shared fixtures.

Each test gets its own SQLite file so separate sessions (and concurrent
claimers) see each other's commits the way they would against PostgreSQL.
"""
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.pool import NullPool

from jobqueue.adapters.base import ChannelAdapter, DeliveryReceipt
from jobqueue.collaborators import Collaborators
from jobqueue.database import create_engine, create_session_factory
from jobqueue.jobs.catalog import build_registry
from jobqueue.models.base import Base

# Register every table with the metadata
from jobqueue.models import destination, dispatch_attempt, job, notification, payout  # noqa: F401


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeAdapter(ChannelAdapter):
    """
    Records sends and answers per address.

    ``failures`` maps an address to a zero-argument callable returning the
    exception to raise for it.
    """

    def __init__(self, provider: str, failures: dict | None = None):
        self.provider = provider
        self.failures = failures or {}
        self.sent: list[tuple[str, dict, str]] = []

    async def send(self, destination, content, *, reference):
        self.sent.append((destination.address, content, reference))
        failure = self.failures.get(destination.address)
        if failure is not None:
            raise failure()
        return DeliveryReceipt(provider_reference_id=f"{self.provider}-{len(self.sent)}")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def collaborators():
    return Collaborators()


@pytest.fixture
def make_ctx(session_factory, registry, clock, collaborators):
    """Build a handler context like the worker does."""

    def factory(job_id: str = "job_test", **overrides) -> dict:
        renewals = []

        async def renew_lease():
            renewals.append(clock())
            return True

        ctx = {
            "job_id": job_id,
            "worker_id": "worker-test",
            "session_factory": session_factory,
            "registry": registry,
            "collaborators": collaborators,
            "clock": clock,
            "renew_lease": renew_lease,
            "renewals": renewals,
        }
        ctx.update(overrides)
        return ctx

    return factory


def make_job(payload: dict, job_id: str = "job_test", created_by: str | None = "user_1"):
    """A stand-in for a leased Job row, enough for calling handlers directly."""
    return SimpleNamespace(id=job_id, payload=payload, created_by=created_by, attempt=1)
