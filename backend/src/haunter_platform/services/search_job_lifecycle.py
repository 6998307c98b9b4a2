"""Search job lifecycle - deposit, competitive bids, exclusive claim, evidence, outcome.

    DRAFT -> PENDING_PAYMENT -> PENDING_BIDS -> IN_PROGRESS -> PENDING_REVIEW -> COMPLETED
      |            |               |               |               |
      +------------+---- CANCELLED +               +-- FORFEITED --+

A dispute raised in PENDING_REVIEW leaves the status alone and hands the
job to the arbitration engine; from then on only arbitration settles it.
"""

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from haunter_platform.app.config import Settings, get_settings
from haunter_platform.domain.enums import (
    BidStatus,
    ExtensionStatus,
    SearchJobStatus,
    ServiceTier,
    SubjectType,
    TransitionEventType,
)
from haunter_platform.domain.models import Bid, SearchJob
from haunter_platform.infra.clock import as_utc
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.deadline_tracker import CLOCKED_STATUSES, is_expired
from haunter_platform.services.errors import (
    AlreadyClaimedError,
    BidNotFoundError,
    DeadlinePassedError,
    DuplicateBidError,
    EvidenceCapExceededError,
    InvalidAmountError,
    InvalidStateError,
    MissingFieldError,
    NotAuthorizedError,
    ValidationFailure,
)
from haunter_platform.services.escrow_ledger import EscrowLedger, to_money
from haunter_platform.services.transitions import load_job, publish_events, record_event, unit_of_work

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition map: from_status -> allowed to_statuses
# ---------------------------------------------------------------------------

S = SearchJobStatus

TRANSITION_MAP: dict[SearchJobStatus, set[SearchJobStatus]] = {
    S.DRAFT: {S.PENDING_PAYMENT, S.PENDING_BIDS, S.CANCELLED},
    S.PENDING_PAYMENT: {S.PENDING_BIDS, S.CANCELLED},
    S.PENDING_BIDS: {S.IN_PROGRESS, S.CANCELLED},
    S.IN_PROGRESS: {S.PENDING_REVIEW, S.FORFEITED},
    S.PENDING_REVIEW: {S.COMPLETED, S.CANCELLED, S.FORFEITED},
}

TERMINAL_STATES: set[SearchJobStatus] = {S.COMPLETED, S.CANCELLED, S.FORFEITED}

# Before any claim, the tenant may walk away
CANCELLABLE_STATES: set[SearchJobStatus] = {S.DRAFT, S.PENDING_PAYMENT, S.PENDING_BIDS}


def validate_transition(current: str, target: SearchJobStatus, operation: str) -> None:
    if target not in TRANSITION_MAP.get(SearchJobStatus(current), set()):
        raise InvalidStateError(current, operation)


def _require_tenant(job: SearchJob, actor_ref: str) -> None:
    if actor_ref != job.tenant_ref:
        raise NotAuthorizedError(f"Only the tenant who posted job {job.id} can do this", actor_ref=actor_ref)


def _normalize_evidence(item: Any, now_iso: str) -> dict:
    if not isinstance(item, dict):
        raise ValidationFailure("Each evidence item must be an object", field="evidence")
    description = (item.get("description") or "").strip()
    if not description:
        raise MissingFieldError("description")
    photos = item.get("photos") or []
    if not isinstance(photos, list):
        raise ValidationFailure("photos must be a list", field="photos")
    match_score = item.get("match_score", item.get("matchScore"))
    if match_score is not None:
        try:
            match_score = float(match_score)
        except (TypeError, ValueError) as e:
            raise ValidationFailure("match_score must be a number", field="match_score") from e
        if not 0 <= match_score <= 100:
            raise ValidationFailure("match_score must be between 0 and 100", field="match_score")
    return {
        "photos": list(photos),
        "description": description,
        "match_score": match_score,
        "property_ref": item.get("property_ref"),
        "submitted_at": now_iso,
    }


class SearchJobLifecycle:
    """Runs search job operations as locked, committed units of work."""

    def __init__(
        self,
        db: AsyncSession,
        collaborators: Optional[Collaborators] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.collaborators = collaborators or default_collaborators()
        self.settings = settings or get_settings()
        self.ledger = EscrowLedger(db, self.collaborators)

    async def get(self, job_id: str) -> SearchJob:
        return await load_job(self.db, job_id)

    def _uow(self, job_id: str):
        return unit_of_work(self.db, self.collaborators.locks, "search_job", job_id)

    def _event(self, job: SearchJob, event_type: TransitionEventType, actor_ref: str,
               from_status: Optional[str], data: Optional[dict] = None):
        return record_event(
            self.db, SubjectType.SEARCH_JOB, job.id, event_type, actor_ref,
            from_status=from_status, to_status=job.status, data=data,
        )

    def _log(self, job: SearchJob, from_status: Optional[str], actor_ref: str) -> None:
        logger.info("Search job %s: %s -> %s (actor=%s)", job.id, from_status or "-", job.status, actor_ref)

    # -- queries --------------------------------------------------------

    async def list_open_jobs(self) -> list[SearchJob]:
        """Jobs hunters can bid on, oldest first."""
        result = await self.db.execute(
            select(SearchJob)
            .where(SearchJob.status == S.PENDING_BIDS.value)
            .options(selectinload(SearchJob.bids), selectinload(SearchJob.extensions))
            .order_by(SearchJob.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_for_tenant(self, tenant_ref: str) -> list[SearchJob]:
        result = await self.db.execute(
            select(SearchJob)
            .where(SearchJob.tenant_ref == tenant_ref)
            .options(selectinload(SearchJob.bids), selectinload(SearchJob.extensions))
            .order_by(SearchJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_bids(self, job_id: str) -> list[Bid]:
        """Bids on a job, cheapest first, then fastest."""
        job = await load_job(self.db, job_id)
        return sorted(job.bids, key=lambda b: (to_money(b.price), b.promised_delivery_hours))

    # -- posting and paying ---------------------------------------------

    async def submit(self, tenant_ref: str, requirements: dict, tier: str) -> SearchJob:
        """Create a DRAFT job; the tier fixes deposit and option count."""
        try:
            service_tier = tier if isinstance(tier, ServiceTier) else ServiceTier(str(tier).upper())
        except ValueError as e:
            raise ValidationFailure(f"Unknown service tier {tier!r}", field="service_tier") from e
        if not isinstance(requirements, dict) or not requirements:
            raise MissingFieldError("requirements")
        terms = self.settings.tier_terms(service_tier.value)

        job = SearchJob(
            id=str(uuid.uuid4()),
            tenant_ref=tenant_ref,
            requirements=dict(requirements),
            service_tier=service_tier.value,
            number_of_options=terms.number_of_options,
            status=S.DRAFT.value,
            deposit_amount=to_money(terms.deposit_amount),
            deposit_paid=False,
            uploaded_evidence=[],
            bids=[],
            extensions=[],
        )
        events = []
        async with self._uow(job.id):
            self.db.add(job)
            events.append(self._event(
                job, TransitionEventType.JOB_SUBMITTED, tenant_ref, None,
                data={"service_tier": service_tier.value, "deposit_amount": str(job.deposit_amount)},
            ))

        self._log(job, None, tenant_ref)
        await publish_events(self.collaborators.notifier, events)
        return job

    async def checkout(self, job_id: str, tenant_ref: str) -> SearchJob:
        """DRAFT -> PENDING_PAYMENT: requirements are final, the deposit is due."""
        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            current = job.status
            validate_transition(current, S.PENDING_PAYMENT, "check out")
            job.status = S.PENDING_PAYMENT.value
            events.append(self._event(job, TransitionEventType.CHECKOUT_STARTED, tenant_ref, current))

        self._log(job, current, tenant_ref)
        await publish_events(self.collaborators.notifier, events)
        return job

    async def pay_deposit(self, job_id: str, tenant_ref: str) -> SearchJob:
        """Hold the tier deposit in escrow and open the job for bids."""
        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            current = job.status
            validate_transition(current, S.PENDING_BIDS, "pay deposit")

            await self.ledger.hold(job.id, job.deposit_amount, tenant_ref)
            job.deposit_paid = True
            job.deposit_paid_at = self.collaborators.clock()
            job.status = S.PENDING_BIDS.value
            events.append(self._event(
                job, TransitionEventType.DEPOSIT_PAID, tenant_ref, current,
                data={"amount": str(to_money(job.deposit_amount))},
            ))

        self._log(job, current, tenant_ref)
        await self.ledger.dispatch_pending(job.id)
        await publish_events(self.collaborators.notifier, events)
        return job

    # -- bidding and claiming -------------------------------------------

    async def submit_bid(
        self,
        job_id: str,
        hunter_ref: str,
        price: Decimal,
        promised_delivery_hours: int,
        bonus_offer: Optional[str] = None,
        message: Optional[str] = None,
    ) -> Bid:
        price = to_money(price)
        if price <= 0:
            raise InvalidAmountError(f"Bid price must be positive, got {price}")
        if not isinstance(promised_delivery_hours, int) or promised_delivery_hours <= 0:
            raise ValidationFailure("Promised delivery hours must be a positive integer", field="hours")

        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            if job.status != S.PENDING_BIDS.value:
                raise InvalidStateError(job.status, "submit bid")
            if hunter_ref == job.tenant_ref:
                raise NotAuthorizedError("A tenant cannot bid on their own job", actor_ref=hunter_ref)
            if any(b.hunter_ref == hunter_ref for b in job.bids):
                raise DuplicateBidError(f"{hunter_ref} already bid on job {job.id}", hunter_ref=hunter_ref)

            bid = Bid(
                id=str(uuid.uuid4()),
                job_id=job.id,
                hunter_ref=hunter_ref,
                price=price,
                promised_delivery_hours=promised_delivery_hours,
                bonus_offer=bonus_offer,
                message=message,
                status=BidStatus.PENDING.value,
                created_at=self.collaborators.clock(),
            )
            job.bids.append(bid)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise DuplicateBidError(f"{hunter_ref} already bid on job {job.id}", hunter_ref=hunter_ref) from e
            events.append(self._event(
                job, TransitionEventType.BID_SUBMITTED, hunter_ref, job.status,
                data={"bid_id": bid.id, "price": str(price), "hours": promised_delivery_hours},
            ))

        logger.info("Search job %s: bid %s from %s at %s", job_id, bid.id, hunter_ref, price)
        await publish_events(self.collaborators.notifier, events)
        return bid

    async def accept_bid(self, job_id: str, tenant_ref: str, bid_id: str) -> SearchJob:
        """Claim the job for one bidder; every other pending bid is rejected in the same commit."""
        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            if job.claimed_by_ref is not None:
                raise AlreadyClaimedError(
                    f"Job {job.id} is already claimed", claimed_by=job.claimed_by_ref
                )
            current = job.status
            validate_transition(current, S.IN_PROGRESS, "accept bid")

            chosen = next((b for b in job.bids if b.id == bid_id), None)
            if chosen is None:
                raise BidNotFoundError(bid_id)
            if chosen.status != BidStatus.PENDING.value:
                raise InvalidStateError(chosen.status, "accept bid")

            now = self.collaborators.clock()
            terms = self.settings.tier_terms(job.service_tier)
            rejected = []
            for bid in job.bids:
                if bid.id == chosen.id:
                    bid.status = BidStatus.ACCEPTED.value
                elif bid.status == BidStatus.PENDING.value:
                    bid.status = BidStatus.REJECTED.value
                    rejected.append(bid.id)

            job.selected_bid_id = chosen.id
            job.claimed_by_ref = chosen.hunter_ref
            job.claimed_at = now
            job.deadline = now + timedelta(days=terms.deadline_days)
            job.status = S.IN_PROGRESS.value
            events.append(self._event(
                job, TransitionEventType.CLAIMED, tenant_ref, current,
                data={
                    "bid_id": chosen.id,
                    "hunter_ref": chosen.hunter_ref,
                    "deadline": job.deadline.isoformat(),
                    "rejected_bids": rejected,
                },
            ))

        self._log(job, current, tenant_ref)
        await publish_events(self.collaborators.notifier, events)
        return job

    # -- delivery -------------------------------------------------------

    async def submit_evidence(self, job_id: str, hunter_ref: str, items: Iterable[dict]) -> SearchJob:
        """Append delivered properties; reaching the option count moves the job to review.

        A batch that would overflow the cap is rejected whole.
        """
        items = list(items or [])
        if not items:
            raise MissingFieldError("evidence")

        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            if hunter_ref != job.claimed_by_ref:
                raise NotAuthorizedError("Only the claiming hunter can submit evidence", actor_ref=hunter_ref)
            current = job.status
            if current != S.IN_PROGRESS.value:
                raise InvalidStateError(current, "submit evidence")
            now = self.collaborators.clock()
            if as_utc(now) > as_utc(job.deadline):
                raise DeadlinePassedError(f"Deadline for job {job.id} has passed", job_id=job.id)

            existing = list(job.uploaded_evidence or [])
            cap = job.number_of_options
            if len(existing) + len(items) > cap:
                raise EvidenceCapExceededError(
                    f"Job {job.id} takes {cap} options; {len(existing)} already delivered",
                    cap=cap,
                    delivered=len(existing),
                )
            added = [_normalize_evidence(item, as_utc(now).isoformat()) for item in items]
            job.uploaded_evidence = existing + added
            events.append(self._event(
                job, TransitionEventType.EVIDENCE_SUBMITTED, hunter_ref, current,
                data={"added": len(added), "total": len(job.uploaded_evidence)},
            ))
            if len(job.uploaded_evidence) == cap:
                validate_transition(current, S.PENDING_REVIEW, "request review")
                job.status = S.PENDING_REVIEW.value
                events.append(self._event(
                    job, TransitionEventType.REVIEW_REQUESTED, hunter_ref, current,
                    data={"total": cap},
                ))

        self._log(job, current, hunter_ref)
        await publish_events(self.collaborators.notifier, events)
        return job

    async def confirm_satisfied(self, job_id: str, tenant_ref: str) -> SearchJob:
        """Tenant accepts the delivery: the deposit goes to the hunter."""
        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            current = job.status
            validate_transition(current, S.COMPLETED, "confirm")
            if job.dispute_reason is not None:
                raise InvalidStateError(
                    current, "confirm", reason="Job is under dispute and can only be settled by arbitration"
                )

            entry = await self.ledger.release(job.id, job.claimed_by_ref)
            job.status = S.COMPLETED.value
            job.completed_at = self.collaborators.clock()
            events.append(self._event(
                job, TransitionEventType.COMPLETED, tenant_ref, current,
                data={"released_to": job.claimed_by_ref, "amount": str(to_money(entry.amount))},
            ))

        self._log(job, current, tenant_ref)
        await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        return job

    async def raise_dispute(self, job_id: str, tenant_ref: str, reason: str) -> SearchJob:
        """Refer a reviewed delivery to arbitration. The status stays PENDING_REVIEW."""
        if not reason or not reason.strip():
            raise MissingFieldError("reason")

        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            if job.status != S.PENDING_REVIEW.value:
                raise InvalidStateError(job.status, "raise dispute")
            if job.dispute_reason is not None:
                raise InvalidStateError(job.status, "raise dispute", reason="A dispute is already open")

            job.dispute_reason = reason.strip()
            job.refund_requested_at = self.collaborators.clock()
            events.append(self._event(
                job, TransitionEventType.DISPUTED, tenant_ref, job.status,
                data={"reason": job.dispute_reason},
            ))

        logger.info("Search job %s: disputed by %s", job_id, tenant_ref)
        await publish_events(self.collaborators.notifier, events)
        return job

    # -- expiry and cancellation ----------------------------------------

    async def check_expiry(self, job_id: str, now=None) -> bool:
        """Forfeit a claimed job whose deadline passed unresolved; refund the tenant.

        Disputed or reviewed jobs are left to arbitration. Returns True when
        the job was forfeited by this call.
        """
        now = as_utc(now or self.collaborators.clock())
        grace = self.settings.extension_grace_hours
        events = []
        entry = None
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            current = job.status
            if (
                current not in CLOCKED_STATUSES
                or job.has_admin_review
                or job.dispute_reason is not None
                or not is_expired(job, now, grace)
            ):
                return False

            validate_transition(current, S.FORFEITED, "forfeit")
            entry = await self.ledger.refund(job.id, job.tenant_ref)
            job.status = S.FORFEITED.value
            job.forfeited_at = now
            for extension in job.extensions:
                if extension.status == ExtensionStatus.PENDING.value:
                    extension.status = ExtensionStatus.REJECTED.value
                    extension.resolved_by = "system"
                    extension.resolved_at = now
                    events.append(self._event(
                        job, TransitionEventType.EXTENSION_REJECTED, "system", current,
                        data={"extension_id": extension.id, "reason": "deadline passed"},
                    ))
            events.append(self._event(
                job, TransitionEventType.FORFEITED, "system", current,
                data={"deadline": as_utc(job.deadline).isoformat(), "refunded_to": job.tenant_ref},
            ))

        self._log(job, current, "system")
        await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        return True

    async def cancel(self, job_id: str, tenant_ref: str, reason: Optional[str] = None) -> SearchJob:
        """Withdraw an unclaimed job; refunds the deposit if one was held."""
        events = []
        entry = None
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            _require_tenant(job, tenant_ref)
            current = job.status
            if SearchJobStatus(current) not in CANCELLABLE_STATES:
                raise InvalidStateError(current, "cancel")

            if job.deposit_paid:
                entry = await self.ledger.refund(job.id, job.tenant_ref)
            for bid in job.bids:
                if bid.status == BidStatus.PENDING.value:
                    bid.status = BidStatus.REJECTED.value
            job.status = S.CANCELLED.value
            job.cancelled_at = self.collaborators.clock()
            events.append(self._event(
                job, TransitionEventType.CANCELLED, tenant_ref, current,
                data={"reason": reason, "refunded": entry is not None},
            ))

        self._log(job, current, tenant_ref)
        if entry is not None:
            await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        return job
