"""Races between two sessions acting on the same job or engagement at once.

Each test runs two services on separate sessions against one on-disk
database, sharing one lock registry the way the API process does.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from haunter_platform.infra.database import Base
import haunter_platform.domain.models  # noqa: F401

from haunter_platform.domain.enums import BidStatus, EngagementStatus, EscrowTransactionKind, SearchJobStatus
from haunter_platform.services.errors import AlreadyClaimedError, InvalidStateError
from haunter_platform.services.escrow_ledger import EscrowLedger
from haunter_platform.services.negotiation import NegotiationProtocol
from haunter_platform.services.search_job_lifecycle import SearchJobLifecycle

from conftest import HUNTER, HUNTER_2, PROPERTY, TENANT


@pytest.fixture
async def session_pair(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as first, factory() as second:
        yield first, second

    await engine.dispose()


async def test_only_one_bid_can_claim(session_pair, collaborators, settings):
    first, second = session_pair
    setup = SearchJobLifecycle(first, collaborators, settings)
    job = await setup.submit(TENANT, {"preferred_areas": ["Lavington"]}, "STANDARD")
    job_id = job.id
    await setup.pay_deposit(job_id, TENANT)
    bid_a = await setup.submit_bid(job_id, HUNTER, Decimal("3000"), 72)
    bid_b = await setup.submit_bid(job_id, HUNTER_2, Decimal("2800"), 48)
    bid_a_id, bid_b_id = bid_a.id, bid_b.id

    results = await asyncio.gather(
        SearchJobLifecycle(first, collaborators, settings).accept_bid(job_id, TENANT, bid_a_id),
        SearchJobLifecycle(second, collaborators, settings).accept_bid(job_id, TENANT, bid_b_id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyClaimedError)

    job = await SearchJobLifecycle(second, collaborators, settings).get(job_id)
    assert job.status == SearchJobStatus.IN_PROGRESS.value
    accepted = [b for b in job.bids if b.status == BidStatus.ACCEPTED.value]
    assert len(accepted) == 1
    assert accepted[0].hunter_ref == job.claimed_by_ref


async def test_accept_and_reject_race_settles_once(session_pair, collaborators):
    first, second = session_pair
    engagement = await NegotiationProtocol(first, collaborators).open_request(
        property_ref=PROPERTY,
        tenant_ref=TENANT,
        hunter_ref=HUNTER,
        amount=Decimal("1500"),
        slots=[("2025-01-10", "10:00")],
    )
    engagement_id = engagement.id

    results = await asyncio.gather(
        NegotiationProtocol(first, collaborators).accept(engagement_id, HUNTER),
        NegotiationProtocol(second, collaborators).reject(engagement_id, TENANT, "Too late"),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidStateError)

    engagement = await NegotiationProtocol(second, collaborators).get(engagement_id)
    assert engagement.status in (EngagementStatus.ACCEPTED.value, EngagementStatus.REJECTED.value)
    settled = [
        e for e in await EscrowLedger(second, collaborators).entries(engagement_id)
        if e.kind != EscrowTransactionKind.HOLD.value
    ]
    assert len(settled) == 1
