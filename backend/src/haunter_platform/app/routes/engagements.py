"""Viewing negotiation API endpoints.

Every mutation goes through NegotiationProtocol; engine failures are turned
into HTTP responses by the app-level EngineError handler.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.app.identity import Actor, get_current_actor, require_role
from haunter_platform.domain.enums import ActorRole, SubjectType
from haunter_platform.domain.models import EngagementRequest, TransitionEvent
from haunter_platform.domain.schemas import (
    CounterProposal,
    EngagementCreate,
    EngagementResponse,
    ProposeSlots,
    RejectRequest,
)
from haunter_platform.infra.database import get_db
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.negotiation import NegotiationProtocol, allowed_actions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/engagements", tags=["engagements"])


def serialize_engagement(engagement: EngagementRequest, actor: Actor) -> EngagementResponse:
    response = EngagementResponse.model_validate(engagement)
    response.allowed_actions = [a.value for a in allowed_actions(engagement, actor.ref)]
    return response


def _check_access(engagement: EngagementRequest, actor: Actor) -> None:
    if actor.role == ActorRole.ADMIN:
        return
    if actor.ref not in (engagement.tenant_ref, engagement.hunter_ref):
        raise HTTPException(status_code=403, detail="Not a party to this engagement")


@router.post("", status_code=201, response_model=EngagementResponse)
async def create_engagement(
    body: EngagementCreate,
    actor: Actor = Depends(require_role(ActorRole.TENANT)),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    """Tenant proposes viewing slots; the fee goes into escrow."""
    engagement = await NegotiationProtocol(db, collaborators).open_request(
        property_ref=body.property_ref,
        tenant_ref=actor.ref,
        hunter_ref=body.hunter_ref,
        amount=body.amount,
        slots=[slot.model_dump() for slot in body.slots],
        location=body.location,
        message=body.message,
    )
    return serialize_engagement(engagement, actor)


@router.get("", response_model=list[EngagementResponse])
async def list_engagements(
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Engagements the caller is a party to, newest first."""
    query = select(EngagementRequest).order_by(EngagementRequest.created_at.desc())
    if actor.role != ActorRole.ADMIN:
        query = query.where(
            or_(EngagementRequest.tenant_ref == actor.ref, EngagementRequest.hunter_ref == actor.ref)
        )
    result = await db.execute(query)
    return [serialize_engagement(e, actor) for e in result.scalars().all()]


@router.get("/{engagement_id}", response_model=EngagementResponse)
async def get_engagement(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    engagement = await NegotiationProtocol(db).get(engagement_id)
    _check_access(engagement, actor)
    return serialize_engagement(engagement, actor)


@router.get("/{engagement_id}/timeline")
async def get_timeline(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Audit trail of an engagement, oldest first."""
    engagement = await NegotiationProtocol(db).get(engagement_id)
    _check_access(engagement, actor)
    result = await db.execute(
        select(TransitionEvent)
        .where(
            TransitionEvent.subject_type == SubjectType.ENGAGEMENT.value,
            TransitionEvent.subject_id == engagement_id,
        )
        .order_by(TransitionEvent.created_at.asc())
    )
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "actor_ref": e.actor_ref,
            "from_status": e.from_status,
            "to_status": e.to_status,
            "data": e.data,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in result.scalars().all()
    ]


@router.post("/{engagement_id}/propose", response_model=EngagementResponse)
async def propose_slots(
    engagement_id: str,
    body: ProposeSlots,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    engagement = await NegotiationProtocol(db, collaborators).propose(
        engagement_id, actor.ref, [slot.model_dump() for slot in body.slots], body.location
    )
    return serialize_engagement(engagement, actor)


@router.post("/{engagement_id}/counter", response_model=EngagementResponse)
async def counter_engagement(
    engagement_id: str,
    body: CounterProposal,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    engagement = await NegotiationProtocol(db, collaborators).counter(
        engagement_id, actor.ref, body.date, body.time_slot, body.location, body.reason
    )
    return serialize_engagement(engagement, actor)


@router.post("/{engagement_id}/edit", response_model=EngagementResponse)
async def edit_engagement(
    engagement_id: str,
    body: CounterProposal,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    engagement = await NegotiationProtocol(db, collaborators).edit(
        engagement_id, actor.ref, body.date, body.time_slot, body.location, body.reason
    )
    return serialize_engagement(engagement, actor)


@router.post("/{engagement_id}/accept", response_model=EngagementResponse)
async def accept_engagement(
    engagement_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    protocol = NegotiationProtocol(db, collaborators)
    await protocol.accept(engagement_id, actor.ref)
    # Reload: booking materialization commits after the accept itself
    return serialize_engagement(await protocol.get(engagement_id), actor)


@router.post("/{engagement_id}/reject", response_model=EngagementResponse)
async def reject_engagement(
    engagement_id: str,
    body: RejectRequest,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    engagement = await NegotiationProtocol(db, collaborators).reject(engagement_id, actor.ref, body.reason)
    return serialize_engagement(engagement, actor)
