"""Tests for admin arbitration of disputed search jobs."""

from decimal import Decimal

import pytest

from haunter_platform.domain.enums import AdminDecision, EscrowTransactionKind, SearchJobStatus
from haunter_platform.services.arbitration import compute_split
from haunter_platform.services.errors import (
    AlreadyReviewedError,
    InvalidSplitPercentageError,
    InvalidStateError,
    MissingFieldError,
    ValidationFailure,
)

from conftest import ADMIN, HUNTER, TENANT, evidence


@pytest.fixture
def disputed_job(claimed_job, lifecycle):
    """Factory: a job in PENDING_REVIEW with an open dispute."""
    async def _factory(tier: str = "PREMIUM"):
        job = await claimed_job(tier)
        await lifecycle.submit_evidence(job.id, HUNTER, evidence(3))
        return await lifecycle.raise_dispute(job.id, TENANT, "Only one listing matched the budget")

    return _factory


class TestComputeSplit:
    def test_percentage_of_balance(self):
        assert compute_split(Decimal("8000.00"), 60) == (Decimal("4800.00"), Decimal("3200.00"))

    def test_hunter_share_rounds_down_tenant_gets_remainder(self):
        hunter, tenant = compute_split(Decimal("100.01"), 50)
        assert hunter == Decimal("50.00")
        assert tenant == Decimal("50.01")

    @pytest.mark.parametrize("pct", [0, 33, 99, 100])
    def test_shares_always_sum_to_balance(self, pct):
        hunter, tenant = compute_split(Decimal("12000.00"), pct)
        assert hunter + tenant == Decimal("12000.00")

    @pytest.mark.parametrize("pct", [-1, 101, 50.5, "60", True])
    def test_invalid_percentage(self, pct):
        with pytest.raises(InvalidSplitPercentageError):
            compute_split(Decimal("100"), pct)


class TestDecide:
    async def test_split_payment_records_both_legs(self, disputed_job, arbitration, ledger, gateway):
        """Dispute in review, 60% to the hunter."""
        job = await disputed_job("PREMIUM")
        job_id = job.id

        job = await arbitration.decide(job_id, "split_payment", "Partial delivery", ADMIN, split_percentage=60)

        assert job.status == SearchJobStatus.COMPLETED.value
        assert job.admin_decision == AdminDecision.SPLIT_PAYMENT.value
        assert job.admin_split_percentage == 60
        assert job.reviewed_by == ADMIN

        settled = [e for e in await ledger.entries(job_id) if e.kind != EscrowTransactionKind.HOLD.value]
        assert len(settled) == 1
        assert settled[0].kind == EscrowTransactionKind.SPLIT.value
        shares = {leg["payee_ref"]: Decimal(leg["amount"]) for leg in settled[0].legs}
        assert shares == {HUNTER: Decimal("4800.00"), TENANT: Decimal("3200.00")}
        assert ("disburse", job_id, Decimal("4800.00"), HUNTER) in gateway.calls
        assert ("refund", job_id, Decimal("3200.00"), TENANT) in gateway.calls

    async def test_second_decision_fails(self, disputed_job, arbitration):
        job = await disputed_job()
        job_id = job.id
        await arbitration.decide(job_id, "split_payment", "Partial delivery", ADMIN, split_percentage=60)

        with pytest.raises(AlreadyReviewedError):
            await arbitration.decide(job_id, "full_refund", "Changed my mind", ADMIN)

    async def test_full_refund_cancels(self, disputed_job, arbitration, ledger):
        job = await disputed_job()
        job = await arbitration.decide(job.id, AdminDecision.FULL_REFUND, "Nothing matched", ADMIN)

        assert job.status == SearchJobStatus.CANCELLED.value
        assert job.admin_split_percentage is None
        settled = [e for e in await ledger.entries(job.id) if e.kind != EscrowTransactionKind.HOLD.value]
        assert [(e.kind, e.counterparty_ref) for e in settled] == [(EscrowTransactionKind.REFUND.value, TENANT)]

    async def test_full_payment_completes(self, disputed_job, arbitration, ledger):
        job = await disputed_job()
        job = await arbitration.decide(job.id, "full_payment", "Delivery was fine", ADMIN)

        assert job.status == SearchJobStatus.COMPLETED.value
        settled = [e for e in await ledger.entries(job.id) if e.kind != EscrowTransactionKind.HOLD.value]
        assert [(e.kind, e.counterparty_ref) for e in settled] == [(EscrowTransactionKind.RELEASE.value, HUNTER)]

    async def test_split_requires_percentage(self, disputed_job, arbitration):
        job = await disputed_job()
        with pytest.raises(MissingFieldError):
            await arbitration.decide(job.id, "split_payment", "Partial delivery", ADMIN)

    async def test_out_of_range_percentage_leaves_job_undecided(self, disputed_job, arbitration, lifecycle):
        job = await disputed_job()
        job_id = job.id
        with pytest.raises(InvalidSplitPercentageError):
            await arbitration.decide(job_id, "split_payment", "Partial delivery", ADMIN, split_percentage=120)

        job = await lifecycle.get(job_id)
        assert job.admin_decision is None
        assert job.status == SearchJobStatus.PENDING_REVIEW.value

    async def test_reasoning_required(self, disputed_job, arbitration):
        job = await disputed_job()
        with pytest.raises(MissingFieldError):
            await arbitration.decide(job.id, "full_refund", "  ", ADMIN)

    async def test_unknown_decision(self, disputed_job, arbitration):
        job = await disputed_job()
        with pytest.raises(ValidationFailure):
            await arbitration.decide(job.id, "half_and_half", "Meh", ADMIN)

    async def test_requires_open_dispute(self, claimed_job, lifecycle, arbitration):
        job = await claimed_job()
        await lifecycle.submit_evidence(job.id, HUNTER, evidence(3))

        with pytest.raises(InvalidStateError):
            await arbitration.decide(job.id, "full_payment", "No dispute here", ADMIN)


class TestPendingDisputes:
    async def test_lists_only_undecided(self, disputed_job, arbitration):
        first = await disputed_job()
        second = await disputed_job()
        first_id, second_id = first.id, second.id
        await arbitration.decide(first_id, "full_payment", "Fine", ADMIN)

        assert [j.id for j in await arbitration.pending_disputes()] == [second_id]
