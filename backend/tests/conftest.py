"""Shared test infrastructure for the Haunter engine test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- clock: settable UTC clock
- gateway / bookings / notifier: in-memory collaborator fakes
- collaborators: bundle of the above with a private lock registry
- negotiation / lifecycle / tracker / arbitration / ledger: services on db_session
- open_engagement, posted_job, claimed_job: scenario factories
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from haunter_platform.infra.database import Base
import haunter_platform.domain.models  # noqa: F401

from haunter_platform.app.config import Settings
from haunter_platform.services.arbitration import ArbitrationEngine
from haunter_platform.services.collaborators import BookingRequest, Collaborators, GatewayError
from haunter_platform.services.deadline_tracker import DeadlineTracker
from haunter_platform.services.escrow_ledger import EscrowLedger
from haunter_platform.services.locks import EntityLocks
from haunter_platform.services.negotiation import NegotiationProtocol
from haunter_platform.services.search_job_lifecycle import SearchJobLifecycle

TENANT = "tenant-1"
HUNTER = "hunter-1"
HUNTER_2 = "hunter-2"
ADMIN = "admin-1"
PROPERTY = "property-1"

START = datetime(2025, 1, 9, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable clock pinned to ``now`` until moved."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records every call; raises GatewayError while ``failing`` is set."""

    def __init__(self):
        self.calls = []
        self.failing = False

    async def _record(self, op, escrow_id, amount, party_ref):
        if self.failing:
            raise GatewayError("gateway unavailable")
        self.calls.append((op, escrow_id, Decimal(amount), party_ref))
        return f"RCPT{len(self.calls)}"

    async def initiate_hold(self, escrow_id, amount, payer_ref):
        return await self._record("hold", escrow_id, amount, payer_ref)

    async def disburse(self, escrow_id, amount, payee_ref):
        return await self._record("disburse", escrow_id, amount, payee_ref)

    async def refund(self, escrow_id, amount, payer_ref):
        return await self._record("refund", escrow_id, amount, payer_ref)


class FakeBookings:
    """Booking materializer that keeps requests in memory."""

    def __init__(self):
        self.requests: list[BookingRequest] = []
        self.failing = False

    async def materialize(self, request: BookingRequest) -> str:
        if self.failing:
            raise RuntimeError("booking store down")
        self.requests.append(request)
        return f"booking-{len(self.requests)}"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type for e in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bookings():
    return FakeBookings()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def collaborators(gateway, bookings, notifier, clock):
    return Collaborators(
        gateway=gateway,
        bookings=bookings,
        notifier=notifier,
        clock=clock,
        locks=EntityLocks(),
    )


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def ledger(db_session, collaborators):
    return EscrowLedger(db_session, collaborators)


@pytest.fixture
def negotiation(db_session, collaborators):
    return NegotiationProtocol(db_session, collaborators)


@pytest.fixture
def lifecycle(db_session, collaborators, settings):
    return SearchJobLifecycle(db_session, collaborators, settings)


@pytest.fixture
def tracker(db_session, collaborators, settings):
    return DeadlineTracker(db_session, collaborators, settings)


@pytest.fixture
def arbitration(db_session, collaborators):
    return ArbitrationEngine(db_session, collaborators)


# ---------------------------------------------------------------------------
# Scenario factories
# ---------------------------------------------------------------------------

@pytest.fixture
def open_engagement(negotiation):
    """Factory: a PENDING engagement with one proposed slot.

    Usage:
        engagement = await open_engagement(date="2025-01-10", time_slot="10:00")
    """
    async def _factory(
        date: str = "2025-01-10",
        time_slot: str = "10:00",
        amount: str = "1500.00",
        property_ref: str = PROPERTY,
        location=None,
    ):
        return await negotiation.open_request(
            property_ref=property_ref,
            tenant_ref=TENANT,
            hunter_ref=HUNTER,
            amount=Decimal(amount),
            slots=[{"date": date, "time_slot": time_slot}],
            location=location,
        )

    return _factory


@pytest.fixture
def posted_job(lifecycle):
    """Factory: a paid job open for bids.

    Usage:
        job = await posted_job(tier="PREMIUM")
    """
    async def _factory(tier: str = "PREMIUM"):
        job = await lifecycle.submit(
            TENANT,
            {"preferred_areas": ["Kilimani"], "min_rent": 30000, "max_rent": 60000, "property_type": "2BR"},
            tier,
        )
        await lifecycle.checkout(job.id, TENANT)
        return await lifecycle.pay_deposit(job.id, TENANT)

    return _factory


@pytest.fixture
def claimed_job(lifecycle, posted_job):
    """Factory: a job claimed by HUNTER.

    Usage:
        job = await claimed_job(tier="STANDARD")
    """
    async def _factory(tier: str = "PREMIUM"):
        job = await posted_job(tier)
        bid = await lifecycle.submit_bid(job.id, HUNTER, Decimal("3000"), 72)
        return await lifecycle.accept_bid(job.id, TENANT, bid.id)

    return _factory


def evidence(n: int, start: int = 1) -> list[dict]:
    return [
        {"photos": [f"https://img.example/{i}.jpg"], "description": f"Option {i}", "match_score": 80}
        for i in range(start, start + n)
    ]


def new_id() -> str:
    return str(uuid.uuid4())
