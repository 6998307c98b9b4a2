"""Arbitration engine - admin-only final resolution of disputed search jobs.

A decision is recorded once, together with the settlement it triggers, and
can never be revised.
"""

import logging
from decimal import ROUND_DOWN, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from haunter_platform.domain.enums import (
    AdminDecision,
    SearchJobStatus,
    SubjectType,
    TransitionEventType,
)
from haunter_platform.domain.models import SearchJob
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.errors import (
    AlreadyReviewedError,
    InvalidSplitPercentageError,
    InvalidStateError,
    MissingFieldError,
    ValidationFailure,
)
from haunter_platform.services.escrow_ledger import CENT, EscrowLedger, to_money
from haunter_platform.services.transitions import load_job, publish_events, record_event, unit_of_work

logger = logging.getLogger(__name__)

# Terminal status each decision leads to
DECISION_OUTCOMES: dict[AdminDecision, SearchJobStatus] = {
    AdminDecision.FULL_REFUND: SearchJobStatus.CANCELLED,
    AdminDecision.FULL_PAYMENT: SearchJobStatus.COMPLETED,
    AdminDecision.SPLIT_PAYMENT: SearchJobStatus.COMPLETED,
}


def compute_split(balance, split_percentage: int) -> tuple[Decimal, Decimal]:
    """Return (hunter_share, tenant_share) for a percentage of ``balance`` to the hunter.

    The hunter share is rounded down to the cent and the tenant gets the
    remainder, so the two always sum to the balance exactly.
    """
    if isinstance(split_percentage, bool) or not isinstance(split_percentage, int):
        raise InvalidSplitPercentageError(f"Split percentage must be a whole number, got {split_percentage!r}")
    if not 0 <= split_percentage <= 100:
        raise InvalidSplitPercentageError(
            f"Split percentage must be between 0 and 100, got {split_percentage}",
            split_percentage=split_percentage,
        )
    balance = to_money(balance)
    hunter_share = (balance * split_percentage / Decimal(100)).quantize(CENT, rounding=ROUND_DOWN)
    return hunter_share, balance - hunter_share


class ArbitrationEngine:
    """Decides disputes and settles the escrow accordingly."""

    def __init__(self, db: AsyncSession, collaborators: Optional[Collaborators] = None):
        self.db = db
        self.collaborators = collaborators or default_collaborators()
        self.ledger = EscrowLedger(db, self.collaborators)

    async def pending_disputes(self) -> list[SearchJob]:
        """Disputed jobs still waiting for a decision, oldest dispute first."""
        result = await self.db.execute(
            select(SearchJob)
            .where(SearchJob.dispute_reason.isnot(None), SearchJob.admin_decision.is_(None))
            .options(selectinload(SearchJob.bids), selectinload(SearchJob.extensions))
            .order_by(SearchJob.refund_requested_at.asc())
        )
        return list(result.scalars().all())

    async def decide(
        self,
        job_id: str,
        decision,
        reasoning: str,
        admin_ref: str,
        split_percentage: Optional[int] = None,
    ) -> SearchJob:
        """Record the final decision and execute the matching ledger settlement."""
        try:
            decision = AdminDecision(decision)
        except ValueError as e:
            raise ValidationFailure(f"Unknown decision {decision!r}", field="decision") from e
        if not reasoning or not reasoning.strip():
            raise MissingFieldError("reasoning")
        if decision == AdminDecision.SPLIT_PAYMENT and split_percentage is None:
            raise MissingFieldError("split_percentage")

        events = []
        async with unit_of_work(self.db, self.collaborators.locks, "search_job", job_id):
            job = await load_job(self.db, job_id)
            if job.has_admin_review:
                raise AlreadyReviewedError(
                    f"Job {job.id} was already decided ({job.admin_decision})",
                    admin_decision=job.admin_decision,
                )
            if job.dispute_reason is None:
                raise InvalidStateError(job.status, "arbitrate", reason="Job has no open dispute")
            current = job.status
            if current != SearchJobStatus.PENDING_REVIEW.value:
                raise InvalidStateError(current, "arbitrate")

            balance = await self.ledger.balance(job.id)
            if decision == AdminDecision.FULL_REFUND:
                entry = await self.ledger.refund(job.id, job.tenant_ref)
                hunter_share, tenant_share = Decimal("0.00"), balance
            elif decision == AdminDecision.FULL_PAYMENT:
                entry = await self.ledger.release(job.id, job.claimed_by_ref)
                hunter_share, tenant_share = balance, Decimal("0.00")
            else:
                hunter_share, tenant_share = compute_split(balance, split_percentage)
                entry = await self.ledger.split(
                    job.id, hunter_share, tenant_share,
                    hunter_ref=job.claimed_by_ref, tenant_ref=job.tenant_ref,
                )

            now = self.collaborators.clock()
            target = DECISION_OUTCOMES[decision]
            job.admin_decision = decision.value
            job.admin_split_percentage = split_percentage if decision == AdminDecision.SPLIT_PAYMENT else None
            job.admin_reasoning = reasoning.strip()
            job.reviewed_by = admin_ref
            job.reviewed_at = now
            job.status = target.value
            if target == SearchJobStatus.COMPLETED:
                job.completed_at = now
            else:
                job.cancelled_at = now
            events.append(record_event(
                self.db, SubjectType.SEARCH_JOB, job.id, TransitionEventType.ARBITRATED,
                admin_ref, from_status=current, to_status=target.value,
                data={
                    "decision": decision.value,
                    "split_percentage": job.admin_split_percentage,
                    "hunter_share": str(hunter_share),
                    "tenant_share": str(tenant_share),
                },
            ))

        logger.info(
            "Search job %s: %s -> %s (arbitrated %s by %s; hunter %s, tenant %s)",
            job_id, current, job.status, decision.value, admin_ref, hunter_share, tenant_share,
        )
        await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        return job
