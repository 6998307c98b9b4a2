"""Deadline tracking and timeframe extensions for claimed search jobs.

The module-level functions are pure reads over a loaded SearchJob and a
``now``; they never mutate. ``DeadlineTracker`` owns the two mutating
operations: a claiming hunter requesting more time and the tenant
answering that request.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.app.config import Settings, get_settings
from haunter_platform.domain.enums import (
    ExtensionStatus,
    SearchJobStatus,
    SubjectType,
    TransitionEventType,
    Urgency,
)
from haunter_platform.domain.models import SearchJob, TimeframeExtension
from haunter_platform.infra.clock import as_utc
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.errors import (
    DeadlinePassedError,
    ExtensionAlreadyResolvedError,
    ExtensionNotFoundError,
    InvalidStateError,
    MissingFieldError,
    NotAuthorizedError,
    ValidationFailure,
)
from haunter_platform.services.transitions import load_job, publish_events, record_event, unit_of_work

logger = logging.getLogger(__name__)

# Fraction of the window left below which a job is flagged
URGENT_THRESHOLD = 0.20
WARNING_THRESHOLD = 0.40

# Statuses in which the deadline is running
CLOCKED_STATUSES = {SearchJobStatus.IN_PROGRESS.value, SearchJobStatus.PENDING_REVIEW.value}


def remaining_fraction(job: SearchJob, now: datetime) -> float:
    """1 - clamp((now - claimed_at) / (deadline - claimed_at), 0, 1).

    An unclaimed job has its whole window ahead of it (1.0).
    """
    claimed_at = as_utc(job.claimed_at)
    deadline = as_utc(job.deadline)
    if claimed_at is None or deadline is None:
        return 1.0
    window = (deadline - claimed_at).total_seconds()
    if window <= 0:
        return 0.0
    elapsed = (as_utc(now) - claimed_at).total_seconds() / window
    return 1.0 - min(max(elapsed, 0.0), 1.0)


def time_remaining(job: SearchJob, now: datetime) -> Optional[timedelta]:
    """Time left before the deadline, never negative; None when unclaimed."""
    deadline = as_utc(job.deadline)
    if deadline is None:
        return None
    return max(deadline - as_utc(now), timedelta(0))


def urgency(job: SearchJob, now: datetime) -> Urgency:
    deadline = as_utc(job.deadline)
    if deadline is not None and as_utc(now) > deadline:
        return Urgency.EXPIRED
    fraction = remaining_fraction(job, now)
    if fraction < URGENT_THRESHOLD:
        return Urgency.URGENT
    if fraction < WARNING_THRESHOLD:
        return Urgency.WARNING
    return Urgency.NORMAL


def pending_extension(job: SearchJob) -> Optional[TimeframeExtension]:
    for extension in job.extensions:
        if extension.status == ExtensionStatus.PENDING.value:
            return extension
    return None


def is_expired(job: SearchJob, now: datetime, grace_hours: int) -> bool:
    """True once ``now`` is past the deadline and no pending extension holds the job open.

    An extension requested before the deadline and still unanswered keeps the
    job open for ``grace_hours`` past the deadline.
    """
    deadline = as_utc(job.deadline)
    now = as_utc(now)
    if deadline is None or now <= deadline:
        return False
    extension = pending_extension(job)
    if extension is not None and as_utc(extension.created_at) <= deadline:
        return now > deadline + timedelta(hours=grace_hours)
    return True


class DeadlineTracker:
    """Extension requests and their resolution."""

    def __init__(
        self,
        db: AsyncSession,
        collaborators: Optional[Collaborators] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.collaborators = collaborators or default_collaborators()
        self.settings = settings or get_settings()

    def _uow(self, job_id: str):
        return unit_of_work(self.db, self.collaborators.locks, "search_job", job_id)

    async def request_extension(
        self, job_id: str, hunter_ref: str, hours: int, reason: str
    ) -> TimeframeExtension:
        """Claiming hunter asks for ``hours`` more, before the deadline passes."""
        if not reason or not reason.strip():
            raise MissingFieldError("reason")
        if not isinstance(hours, int) or not 1 <= hours <= self.settings.max_extension_hours:
            raise ValidationFailure(
                f"Extension must be between 1 and {self.settings.max_extension_hours} hours",
                field="hours",
            )

        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            if job.status != SearchJobStatus.IN_PROGRESS.value:
                raise InvalidStateError(job.status, "request extension")
            if hunter_ref != job.claimed_by_ref:
                raise NotAuthorizedError("Only the claiming hunter can request more time", actor_ref=hunter_ref)
            now = self.collaborators.clock()
            if as_utc(now) > as_utc(job.deadline):
                raise DeadlinePassedError(
                    f"Deadline {job.deadline.isoformat()} has passed", job_id=job.id
                )
            if pending_extension(job) is not None:
                raise InvalidStateError(
                    job.status, "request extension", reason="An extension request is already pending"
                )

            extension = TimeframeExtension(
                id=str(uuid.uuid4()),
                job_id=job.id,
                requested_by=hunter_ref,
                requested_hours=hours,
                reason=reason.strip(),
                status=ExtensionStatus.PENDING.value,
                created_at=now,
            )
            job.extensions.append(extension)
            events.append(record_event(
                self.db, SubjectType.SEARCH_JOB, job.id, TransitionEventType.EXTENSION_REQUESTED,
                hunter_ref, from_status=job.status, to_status=job.status,
                data={"extension_id": extension.id, "hours": hours, "reason": extension.reason},
            ))

        logger.info("Search job %s: extension of %dh requested by %s", job_id, hours, hunter_ref)
        await publish_events(self.collaborators.notifier, events)
        return extension

    async def resolve_extension(
        self, job_id: str, extension_id: str, tenant_ref: str, approve: bool
    ) -> TimeframeExtension:
        """Tenant approves (deadline += hours) or rejects (deadline unchanged). Final either way."""
        events = []
        async with self._uow(job_id):
            job = await load_job(self.db, job_id)
            if tenant_ref != job.tenant_ref:
                raise NotAuthorizedError("Only the tenant can resolve extension requests", actor_ref=tenant_ref)
            extension = next((e for e in job.extensions if e.id == extension_id), None)
            if extension is None:
                raise ExtensionNotFoundError(extension_id)
            if extension.status != ExtensionStatus.PENDING.value:
                raise ExtensionAlreadyResolvedError(
                    f"Extension {extension_id} was already {extension.status}", extension_id=extension_id
                )
            if job.status not in CLOCKED_STATUSES:
                raise InvalidStateError(job.status, "resolve extension")

            previous_deadline = as_utc(job.deadline)
            extension.resolved_by = tenant_ref
            extension.resolved_at = self.collaborators.clock()
            if approve:
                extension.status = ExtensionStatus.APPROVED.value
                job.deadline = previous_deadline + timedelta(hours=extension.requested_hours)
                event_type = TransitionEventType.EXTENSION_APPROVED
            else:
                extension.status = ExtensionStatus.REJECTED.value
                event_type = TransitionEventType.EXTENSION_REJECTED
            events.append(record_event(
                self.db, SubjectType.SEARCH_JOB, job.id, event_type,
                tenant_ref, from_status=job.status, to_status=job.status,
                data={
                    "extension_id": extension.id,
                    "hours": extension.requested_hours,
                    "deadline": as_utc(job.deadline).isoformat(),
                },
            ))

        logger.info(
            "Search job %s: extension %s %s (deadline %s)",
            job_id, extension_id, extension.status, as_utc(job.deadline).isoformat(),
        )
        await publish_events(self.collaborators.notifier, events)
        return extension
