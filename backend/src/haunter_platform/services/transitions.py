"""Shared plumbing for committed state transitions.

- ``unit_of_work``: lock the entity, run the mutation, commit or roll back
- ``record_event``: add an immutable TransitionEvent to the session
- ``publish_events``: hand committed events to the notifier, never raising
- ``load_job``: fresh read of a search job with its bids and extensions
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from haunter_platform.domain.enums import SubjectType, TransitionEventType
from haunter_platform.domain.models import SearchJob, TransitionEvent
from haunter_platform.services.errors import ConcurrentModificationError, JobNotFoundError
from haunter_platform.services.locks import EntityLocks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(db: AsyncSession, locks: EntityLocks, kind: str, entity_id: str):
    """Hold the entity lock for the whole read-validate-write-commit cycle.

    Any exception rolls the session back so nothing partially applies.
    """
    async with locks.hold(kind, entity_id):
        try:
            yield
            await db.commit()
        except StaleDataError as e:
            await db.rollback()
            raise ConcurrentModificationError(
                f"{kind} {entity_id} was modified concurrently; reload and retry",
                entity_id=entity_id,
            ) from e
        except BaseException:
            await db.rollback()
            raise


def record_event(
    db: AsyncSession,
    subject_type: SubjectType,
    subject_id: str,
    event_type: TransitionEventType,
    actor_ref: str,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    data: Optional[dict] = None,
) -> TransitionEvent:
    event = TransitionEvent(
        id=str(uuid.uuid4()),
        subject_type=subject_type.value,
        subject_id=subject_id,
        event_type=event_type.value,
        actor_ref=actor_ref,
        from_status=from_status,
        to_status=to_status,
        data=data,
    )
    db.add(event)
    return event


async def publish_events(notifier, events: Iterable[TransitionEvent]) -> None:
    """Deliver committed events; a failing notifier is logged, not raised."""
    for event in events:
        try:
            await notifier.publish(event)
        except Exception:
            logger.exception(
                "Notifier failed for %s %s (%s)", event.subject_type, event.subject_id, event.event_type
            )


async def load_job(db: AsyncSession, job_id: str) -> SearchJob:
    """Load a search job with bids and extensions, overwriting any stale identity-map copy."""
    result = await db.execute(
        select(SearchJob)
        .where(SearchJob.id == job_id)
        .options(selectinload(SearchJob.bids), selectinload(SearchJob.extensions))
        .execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if job is None:
        raise JobNotFoundError(job_id)
    return job
