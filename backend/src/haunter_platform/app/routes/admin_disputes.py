"""Admin arbitration endpoints for disputed search jobs."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.app.identity import Actor, require_role
from haunter_platform.domain.enums import ActorRole
from haunter_platform.domain.schemas import AdminDecisionRequest, SearchJobResponse
from haunter_platform.infra.database import get_db
from haunter_platform.services.arbitration import ArbitrationEngine
from haunter_platform.services.collaborators import Collaborators, default_collaborators

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/disputes", tags=["admin-disputes"])

admin_only = require_role(ActorRole.ADMIN)


@router.get("", response_model=list[SearchJobResponse])
async def list_pending_disputes(
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    """Disputed jobs awaiting a decision, oldest first."""
    return await ArbitrationEngine(db).pending_disputes()


@router.post("/{job_id}/decision", response_model=SearchJobResponse)
async def decide_dispute(
    job_id: str,
    body: AdminDecisionRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(default_collaborators),
):
    """Final, non-revisable decision; settles the escrow."""
    return await ArbitrationEngine(db, collaborators).decide(
        job_id,
        body.decision,
        reasoning=body.reasoning,
        admin_ref=actor.ref,
        split_percentage=body.split_percentage,
    )
