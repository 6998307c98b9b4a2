"""Search job API endpoints: posting, bidding, delivery, extensions."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.app.identity import Actor, get_current_actor, require_role
from haunter_platform.domain.enums import ActorRole, SearchJobStatus
from haunter_platform.domain.models import SearchJob
from haunter_platform.domain.schemas import (
    BidAccept,
    BidCreate,
    BidResponse,
    CancelRequest,
    DeadlineStatus,
    DisputeRequest,
    EvidenceSubmit,
    ExtensionCreate,
    ExtensionResolve,
    ExtensionResponse,
    SearchJobCreate,
    SearchJobResponse,
)
from haunter_platform.infra.database import get_db
from haunter_platform.services import deadline_tracker
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.deadline_tracker import DeadlineTracker
from haunter_platform.services.search_job_lifecycle import SearchJobLifecycle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search-jobs", tags=["search-jobs"])

tenant_only = require_role(ActorRole.TENANT)
hunter_only = require_role(ActorRole.HUNTER)


def _check_visible(job: SearchJob, actor: Actor) -> None:
    """Tenant owner, claiming hunter, admins, and any hunter while bids are open."""
    if actor.role == ActorRole.ADMIN or actor.ref in (job.tenant_ref, job.claimed_by_ref):
        return
    if actor.role == ActorRole.HUNTER and any(b.hunter_ref == actor.ref for b in job.bids):
        return
    if actor.role == ActorRole.HUNTER and job.status == SearchJobStatus.PENDING_BIDS.value:
        return
    raise HTTPException(status_code=403, detail="Not allowed to view this job")


@router.post("", status_code=201, response_model=SearchJobResponse)
async def create_job(
    body: SearchJobCreate,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).submit(actor.ref, body.requirements, body.service_tier)


@router.get("", response_model=list[SearchJobResponse])
async def list_jobs(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Tenants see their own jobs; hunters see jobs open for bids."""
    lifecycle = SearchJobLifecycle(db)
    if actor.role == ActorRole.TENANT:
        return await lifecycle.list_for_tenant(actor.ref)
    return await lifecycle.list_open_jobs()


@router.get("/{job_id}", response_model=SearchJobResponse)
async def get_job(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    job = await SearchJobLifecycle(db).get(job_id)
    _check_visible(job, actor)
    return job


@router.get("/{job_id}/deadline", response_model=DeadlineStatus)
async def get_deadline(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    """Countdown for a claimed job."""
    job = await SearchJobLifecycle(db, collaborators).get(job_id)
    _check_visible(job, actor)
    now = collaborators.clock()
    remaining = deadline_tracker.time_remaining(job, now)
    return DeadlineStatus(
        job_id=job.id,
        deadline=job.deadline,
        remaining_fraction=round(deadline_tracker.remaining_fraction(job, now), 4),
        seconds_remaining=int(remaining.total_seconds()) if remaining is not None else None,
        urgency=deadline_tracker.urgency(job, now).value,
    )


@router.post("/{job_id}/checkout", response_model=SearchJobResponse)
async def checkout_job(
    job_id: str,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).checkout(job_id, actor.ref)


@router.post("/{job_id}/deposit", response_model=SearchJobResponse)
async def pay_deposit(
    job_id: str,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).pay_deposit(job_id, actor.ref)


@router.get("/{job_id}/bids", response_model=list[BidResponse])
async def list_bids(
    job_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    lifecycle = SearchJobLifecycle(db)
    job = await lifecycle.get(job_id)
    _check_visible(job, actor)
    return await lifecycle.list_bids(job_id)


@router.post("/{job_id}/bids", status_code=201, response_model=BidResponse)
async def submit_bid(
    job_id: str,
    body: BidCreate,
    actor: Actor = Depends(hunter_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).submit_bid(
        job_id, actor.ref, body.price, body.promised_delivery_hours, body.bonus_offer, body.message
    )


@router.post("/{job_id}/accept-bid", response_model=SearchJobResponse)
async def accept_bid(
    job_id: str,
    body: BidAccept,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).accept_bid(job_id, actor.ref, body.bid_id)


@router.post("/{job_id}/evidence", response_model=SearchJobResponse)
async def submit_evidence(
    job_id: str,
    body: EvidenceSubmit,
    actor: Actor = Depends(hunter_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).submit_evidence(
        job_id, actor.ref, [item.model_dump() for item in body.items]
    )


@router.post("/{job_id}/confirm", response_model=SearchJobResponse)
async def confirm_satisfied(
    job_id: str,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).confirm_satisfied(job_id, actor.ref)


@router.post("/{job_id}/dispute", response_model=SearchJobResponse)
async def raise_dispute(
    job_id: str,
    body: DisputeRequest,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).raise_dispute(job_id, actor.ref, body.reason)


@router.post("/{job_id}/cancel", response_model=SearchJobResponse)
async def cancel_job(
    job_id: str,
    body: CancelRequest,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await SearchJobLifecycle(db, collaborators).cancel(job_id, actor.ref, body.reason)


@router.post("/{job_id}/extensions", status_code=201, response_model=ExtensionResponse)
async def request_extension(
    job_id: str,
    body: ExtensionCreate,
    actor: Actor = Depends(hunter_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await DeadlineTracker(db, collaborators).request_extension(job_id, actor.ref, body.hours, body.reason)


@router.post("/{job_id}/extensions/{extension_id}/resolve", response_model=ExtensionResponse)
async def resolve_extension(
    job_id: str,
    extension_id: str,
    body: ExtensionResolve,
    actor: Actor = Depends(tenant_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    return await DeadlineTracker(db, collaborators).resolve_extension(
        job_id, extension_id, actor.ref, body.approve
    )
