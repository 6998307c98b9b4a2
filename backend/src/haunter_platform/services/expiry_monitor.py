"""Background sweeps: deadline forfeiture, deadline warnings and side-effect retries."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from haunter_platform.app.config import Settings, get_settings
from haunter_platform.domain.enums import (
    EngagementStatus,
    GatewayStatus,
    SearchJobStatus,
    SubjectType,
    TransitionEventType,
    Urgency,
)
from haunter_platform.domain.models import EngagementRequest, EscrowTransaction, SearchJob, TransitionEvent
from haunter_platform.infra.clock import as_utc
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.deadline_tracker import CLOCKED_STATUSES, is_expired, time_remaining, urgency
from haunter_platform.services.errors import EngineError
from haunter_platform.services.escrow_ledger import EscrowLedger
from haunter_platform.services.negotiation import NegotiationProtocol
from haunter_platform.services.search_job_lifecycle import SearchJobLifecycle
from haunter_platform.services.transitions import publish_events, record_event

logger = logging.getLogger(__name__)

# One event per threshold per job
_WARNING_EVENTS = {
    Urgency.WARNING: TransitionEventType.DEADLINE_WARNING,
    Urgency.URGENT: TransitionEventType.DEADLINE_URGENT,
}


async def _clocked_jobs(db: AsyncSession) -> list[SearchJob]:
    result = await db.execute(
        select(SearchJob)
        .where(
            SearchJob.status.in_(list(CLOCKED_STATUSES)),
            SearchJob.deadline.isnot(None),
            SearchJob.admin_decision.is_(None),
            SearchJob.dispute_reason.is_(None),
        )
        .options(selectinload(SearchJob.extensions))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def sweep_expired_jobs(
    db: AsyncSession,
    collaborators: Optional[Collaborators] = None,
    settings: Optional[Settings] = None,
    now=None,
) -> int:
    """Forfeit every claimed job past its deadline. Returns how many were forfeited."""
    collaborators = collaborators or default_collaborators()
    settings = settings or get_settings()
    now = as_utc(now or collaborators.clock())

    candidates = [
        job.id for job in await _clocked_jobs(db)
        if is_expired(job, now, settings.extension_grace_hours)
    ]
    lifecycle = SearchJobLifecycle(db, collaborators, settings)
    forfeited = 0
    for job_id in candidates:
        try:
            if await lifecycle.check_expiry(job_id, now):
                forfeited += 1
        except EngineError as e:
            logger.warning("Expiry check failed for job %s: %s", job_id, e.reason)

    if forfeited:
        logger.info("Expiry sweep: forfeited %d jobs", forfeited)
    return forfeited


async def emit_deadline_warnings(
    db: AsyncSession,
    collaborators: Optional[Collaborators] = None,
    now=None,
) -> int:
    """Record a WARNING and an URGENT event once per in-progress job as its window runs down."""
    collaborators = collaborators or default_collaborators()
    now = as_utc(now or collaborators.clock())

    jobs = [j for j in await _clocked_jobs(db) if j.status == SearchJobStatus.IN_PROGRESS.value]
    if not jobs:
        return 0

    result = await db.execute(
        select(TransitionEvent.subject_id, TransitionEvent.event_type).where(
            TransitionEvent.subject_id.in_([j.id for j in jobs]),
            TransitionEvent.event_type.in_([e.value for e in _WARNING_EVENTS.values()]),
        )
    )
    already_sent = {(row.subject_id, row.event_type) for row in result.all()}

    events = []
    for job in jobs:
        level = urgency(job, now)
        event_type = _WARNING_EVENTS.get(level)
        if event_type is None or (job.id, event_type.value) in already_sent:
            continue
        remaining = time_remaining(job, now)
        events.append(record_event(
            db, SubjectType.SEARCH_JOB, job.id, event_type, "system",
            from_status=job.status, to_status=job.status,
            data={"hours_remaining": round(remaining.total_seconds() / 3600, 1)},
        ))
        logger.info("Deadline %s: job=%s, deadline=%s", level.value, job.id, as_utc(job.deadline))

    if events:
        await db.commit()
        await publish_events(collaborators.notifier, events)
    return len(events)


async def retry_pending_disbursements(
    db: AsyncSession,
    collaborators: Optional[Collaborators] = None,
    settings: Optional[Settings] = None,
) -> int:
    """Re-dispatch ledger entries the gateway has not acknowledged yet."""
    collaborators = collaborators or default_collaborators()
    settings = settings or get_settings()

    result = await db.execute(
        select(EscrowTransaction)
        .where(
            EscrowTransaction.gateway_status != GatewayStatus.SENT.value,
            EscrowTransaction.gateway_attempts < settings.gateway_max_attempts,
        )
        .order_by(EscrowTransaction.created_at.asc())
    )
    entries = list(result.scalars().all())

    ledger = EscrowLedger(db, collaborators)
    sent = 0
    for entry in entries:
        if await ledger.dispatch(entry):
            sent += 1
        elif entry.gateway_attempts >= settings.gateway_max_attempts:
            logger.error(
                "Escrow %s: %s gave up after %d gateway attempts; needs manual reconciliation",
                entry.engagement_id, entry.kind, entry.gateway_attempts,
            )

    if entries:
        logger.info("Gateway retry: %d of %d entries acknowledged", sent, len(entries))
    return sent


async def retry_missing_bookings(db: AsyncSession, collaborators: Optional[Collaborators] = None) -> int:
    """Materialize bookings for accepted engagements whose first attempt failed."""
    result = await db.execute(
        select(EngagementRequest.id).where(
            EngagementRequest.status == EngagementStatus.ACCEPTED.value,
            EngagementRequest.booking_ref.is_(None),
        )
    )
    engagement_ids = list(result.scalars().all())

    negotiation = NegotiationProtocol(db, collaborators)
    created = 0
    for engagement_id in engagement_ids:
        try:
            if await negotiation.materialize_booking(engagement_id):
                created += 1
        except EngineError as e:
            logger.warning("Booking retry failed for engagement %s: %s", engagement_id, e.reason)

    if engagement_ids:
        logger.info("Booking retry: %d of %d bookings materialized", created, len(engagement_ids))
    return created


async def run_sweeps(db: AsyncSession, collaborators: Optional[Collaborators] = None) -> dict[str, int]:
    """One pass of every sweep, in dependency order."""
    return {
        "forfeited": await sweep_expired_jobs(db, collaborators),
        "warnings": await emit_deadline_warnings(db, collaborators),
        "disbursements": await retry_pending_disbursements(db, collaborators),
        "bookings": await retry_missing_bookings(db, collaborators),
    }
