"""Negotiation protocol - turn-based agreement on one viewing's schedule and place.

Encodes the EngagementRequest lifecycle:

    PENDING --counter--> COUNTERED --counter--> COUNTERED ...
       |                     |
       +--accept / reject----+--> ACCEPTED | REJECTED (terminal)

Whose turn it is comes from ``last_actor_ref`` alone (see ``check_turn``).
Reject is never turn-gated, so no engagement can deadlock.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.domain.enums import (
    EngagementStatus,
    NegotiationAction,
    PaymentState,
    SubjectType,
    TransitionEventType,
)
from haunter_platform.domain.location import parse_location
from haunter_platform.domain.models import EngagementRequest
from haunter_platform.services.collaborators import BookingRequest, Collaborators, default_collaborators
from haunter_platform.services.errors import (
    DuplicateRequestError,
    EngagementNotFoundError,
    InvalidAmountError,
    InvalidStateError,
    MissingFieldError,
    NotAuthorizedError,
    NotEscrowedError,
    NotYourTurnError,
    ValidationFailure,
)
from haunter_platform.services.escrow_ledger import EscrowLedger, to_money
from haunter_platform.services.transitions import publish_events, record_event, unit_of_work

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition map: from_status -> {action: to_status}
# ---------------------------------------------------------------------------

S = EngagementStatus
A = NegotiationAction

TRANSITION_MAP: dict[EngagementStatus, dict[NegotiationAction, EngagementStatus]] = {
    S.PENDING: {
        A.PROPOSE: S.PENDING,
        A.EDIT: S.PENDING,
        A.COUNTER: S.COUNTERED,
        A.ACCEPT: S.ACCEPTED,
        A.REJECT: S.REJECTED,
    },
    S.COUNTERED: {
        A.EDIT: S.COUNTERED,
        A.COUNTER: S.COUNTERED,
        A.ACCEPT: S.ACCEPTED,
        A.REJECT: S.REJECTED,
    },
}

TERMINAL_STATES: set[EngagementStatus] = {S.ACCEPTED, S.REJECTED}

OPEN_STATES: set[EngagementStatus] = set(TRANSITION_MAP)

# Actions only the party who did NOT act last may take
RESPONDER_ACTIONS: set[NegotiationAction] = {A.COUNTER, A.ACCEPT}

# Actions only the party who DID act last may take (revising their own proposal)
PROPOSER_ACTIONS: set[NegotiationAction] = {A.PROPOSE, A.EDIT}


def next_status(current: EngagementStatus, action: NegotiationAction) -> EngagementStatus:
    """Return the status ``action`` leads to, or raise InvalidStateError."""
    target = TRANSITION_MAP.get(current, {}).get(action)
    if target is None:
        raise InvalidStateError(current.value, action.value)
    return target


def check_turn(engagement: EngagementRequest, actor_ref: str, action: NegotiationAction) -> None:
    """The single authoritative turn check.

    Raises NotAuthorizedError for a non-party and NotYourTurnError when the
    actor is on the wrong side of ``last_actor_ref`` for ``action``.
    """
    if actor_ref not in (engagement.tenant_ref, engagement.hunter_ref):
        raise NotAuthorizedError(
            f"{actor_ref} is not a party to engagement {engagement.id}", actor_ref=actor_ref
        )
    if action == A.REJECT:
        return
    if action == A.PROPOSE and actor_ref != engagement.tenant_ref:
        raise NotAuthorizedError("Only the tenant proposes viewing slots", actor_ref=actor_ref)

    acted_last = actor_ref == engagement.last_actor_ref
    if action in RESPONDER_ACTIONS and acted_last:
        raise NotYourTurnError(actor_ref)
    if action in PROPOSER_ACTIONS and not acted_last:
        raise InvalidStateError(
            engagement.status,
            action.value,
            reason="Only the party who made the current proposal can revise it",
        )


def allowed_actions(engagement: EngagementRequest, actor_ref: str) -> list[NegotiationAction]:
    """Actions ``actor_ref`` may take on ``engagement`` right now."""
    status = EngagementStatus(engagement.status)
    if status in TERMINAL_STATES:
        return []
    actions = []
    for action in TRANSITION_MAP[status]:
        if action == A.PROPOSE and engagement.counter_date is not None:
            continue
        if action == A.ACCEPT and engagement.payment_state != PaymentState.ESCROW.value:
            continue
        try:
            check_turn(engagement, actor_ref, action)
        except (NotAuthorizedError, NotYourTurnError, InvalidStateError):
            continue
        actions.append(action)
    return actions


def active_schedule(engagement: EngagementRequest) -> tuple[str, str, Optional[dict]]:
    """(date, time, location) currently on the table: the counter if present, else the first slot."""
    if engagement.counter_date:
        return engagement.counter_date, engagement.counter_time, engagement.counter_location
    first = engagement.proposed_slots[0]
    return first["date"], first["time_slot"], engagement.proposed_location


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


def _normalize_slot(date: Optional[str], time_slot: Optional[str]) -> dict:
    if not date:
        raise MissingFieldError("date")
    if not time_slot:
        raise MissingFieldError("time")
    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError as e:
        raise ValidationFailure(f"Date must be YYYY-MM-DD, got {date!r}", field="date") from e
    try:
        datetime.strptime(time_slot, "%H:%M")
    except ValueError as e:
        raise ValidationFailure(f"Time must be HH:MM, got {time_slot!r}", field="time") from e
    return {"date": date, "time_slot": time_slot}


def _normalize_slots(slots: Iterable[Any]) -> list[dict]:
    normalized = []
    for slot in slots or []:
        if isinstance(slot, dict):
            normalized.append(_normalize_slot(slot.get("date"), slot.get("time_slot") or slot.get("time")))
        else:
            date, time_slot = slot
            normalized.append(_normalize_slot(date, time_slot))
    if not normalized:
        raise MissingFieldError("slots")
    return normalized


def _normalize_location(raw: Any, required: bool) -> Optional[dict]:
    try:
        location = parse_location(raw)
    except ValueError as e:
        raise ValidationFailure(str(e), field="location") from e
    if location is None:
        if required:
            raise MissingFieldError("location")
        return None
    return location.to_dict()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class NegotiationProtocol:
    """Runs negotiation actions as locked, committed units of work."""

    def __init__(self, db: AsyncSession, collaborators: Optional[Collaborators] = None):
        self.db = db
        self.collaborators = collaborators or default_collaborators()
        self.ledger = EscrowLedger(db, self.collaborators)

    async def get(self, engagement_id: str) -> EngagementRequest:
        result = await self.db.execute(
            select(EngagementRequest)
            .where(EngagementRequest.id == engagement_id)
            .execution_options(populate_existing=True)
        )
        engagement = result.scalar_one_or_none()
        if engagement is None:
            raise EngagementNotFoundError(engagement_id)
        return engagement

    def _uow(self, engagement_id: str):
        return unit_of_work(self.db, self.collaborators.locks, "engagement", engagement_id)

    def _log(self, engagement: EngagementRequest, from_status: str, actor_ref: str) -> None:
        logger.info(
            "Engagement %s: %s -> %s (actor=%s)", engagement.id, from_status, engagement.status, actor_ref
        )

    # -- creation -------------------------------------------------------

    async def open_request(
        self,
        *,
        property_ref: str,
        tenant_ref: str,
        hunter_ref: str,
        amount: Decimal,
        slots: Iterable[Any],
        location: Any = None,
        message: Optional[str] = None,
    ) -> EngagementRequest:
        """Create a PENDING engagement with the tenant's slots and escrow the fee."""
        if not property_ref:
            raise MissingFieldError("property_ref")
        if tenant_ref == hunter_ref:
            raise ValidationFailure("Tenant and hunter must be different parties")
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Viewing fee must be positive, got {amount}")
        proposed_slots = _normalize_slots(slots)
        proposed_location = _normalize_location(location, required=False)

        events = []
        async with unit_of_work(
            self.db, self.collaborators.locks, "engagement-open", f"{tenant_ref}:{property_ref}"
        ):
            result = await self.db.execute(
                select(EngagementRequest.id).where(
                    EngagementRequest.tenant_ref == tenant_ref,
                    EngagementRequest.property_ref == property_ref,
                    EngagementRequest.status.in_([s.value for s in OPEN_STATES]),
                )
            )
            existing = result.scalars().first()
            if existing is not None:
                raise DuplicateRequestError(
                    f"An open viewing request already exists for property {property_ref}",
                    engagement_id=existing,
                )

            engagement = EngagementRequest(
                id=str(uuid.uuid4()),
                property_ref=property_ref,
                tenant_ref=tenant_ref,
                hunter_ref=hunter_ref,
                status=S.PENDING.value,
                payment_state=PaymentState.ESCROW.value,
                amount=amount,
                proposed_slots=proposed_slots,
                proposed_location=proposed_location,
                message=message,
                last_actor_ref=tenant_ref,
            )
            self.db.add(engagement)
            await self.ledger.hold(engagement.id, amount, tenant_ref)
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.PROPOSAL_MADE,
                tenant_ref, to_status=S.PENDING.value,
                data={"slots": proposed_slots, "amount": str(amount)},
            ))

        self._log(engagement, "-", tenant_ref)
        await self.ledger.dispatch_pending(engagement.id)
        await publish_events(self.collaborators.notifier, events)
        return engagement

    # -- proposals ------------------------------------------------------

    async def propose(
        self, engagement_id: str, actor_ref: str, slots: Iterable[Any], location: Any = None
    ) -> EngagementRequest:
        """Replace the tenant's opening slots before anyone has countered."""
        proposed_slots = _normalize_slots(slots)
        proposed_location = _normalize_location(location, required=False)

        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            current = EngagementStatus(engagement.status)
            next_status(current, A.PROPOSE)
            if engagement.counter_date is not None:
                raise InvalidStateError(
                    current.value, A.PROPOSE.value, reason="Slots cannot be re-proposed after a counter"
                )
            check_turn(engagement, actor_ref, A.PROPOSE)

            engagement.proposed_slots = proposed_slots
            if proposed_location is not None:
                engagement.proposed_location = proposed_location
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.PROPOSAL_EDITED,
                actor_ref, from_status=current.value, to_status=engagement.status,
                data={"slots": proposed_slots},
            ))

        self._log(engagement, current.value, actor_ref)
        await publish_events(self.collaborators.notifier, events)
        return engagement

    async def counter(
        self,
        engagement_id: str,
        actor_ref: str,
        date: Optional[str],
        time_slot: Optional[str],
        location: Any,
        reason: Optional[str] = None,
    ) -> EngagementRequest:
        """Answer the other party with a new (date, time, location); replaces any prior counter."""
        slot = _normalize_slot(date, time_slot)
        counter_location = _normalize_location(location, required=True)

        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            current = EngagementStatus(engagement.status)
            target = next_status(current, A.COUNTER)
            check_turn(engagement, actor_ref, A.COUNTER)

            self._apply_counter(engagement, actor_ref, slot, counter_location, reason)
            engagement.status = target.value
            engagement.last_actor_ref = actor_ref
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.COUNTERED,
                actor_ref, from_status=current.value, to_status=target.value,
                data={**slot, "location": counter_location, "reason": reason},
            ))

        self._log(engagement, current.value, actor_ref)
        await publish_events(self.collaborators.notifier, events)
        return engagement

    async def edit(
        self,
        engagement_id: str,
        actor_ref: str,
        date: Optional[str],
        time_slot: Optional[str],
        location: Any,
        reason: Optional[str] = None,
    ) -> EngagementRequest:
        """Revise your own still-unanswered proposal in place.

        The turn does not pass: ``last_actor_ref`` stays the editor.
        """
        slot = _normalize_slot(date, time_slot)

        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            current = EngagementStatus(engagement.status)
            next_status(current, A.EDIT)
            check_turn(engagement, actor_ref, A.EDIT)

            if current == S.COUNTERED:
                counter_location = _normalize_location(location, required=True)
                self._apply_counter(engagement, actor_ref, slot, counter_location, reason)
            else:
                engagement.proposed_slots = [slot]
                new_location = _normalize_location(location, required=False)
                if new_location is not None:
                    engagement.proposed_location = new_location
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.PROPOSAL_EDITED,
                actor_ref, from_status=current.value, to_status=current.value,
                data={**slot, "reason": reason},
            ))

        self._log(engagement, current.value, actor_ref)
        await publish_events(self.collaborators.notifier, events)
        return engagement

    @staticmethod
    def _apply_counter(
        engagement: EngagementRequest,
        actor_ref: str,
        slot: dict,
        location: dict,
        reason: Optional[str],
    ) -> None:
        engagement.counter_date = slot["date"]
        engagement.counter_time = slot["time_slot"]
        engagement.counter_location = location
        engagement.countered_by = actor_ref
        engagement.counter_reason = reason

    # -- terminal actions -----------------------------------------------

    async def accept(self, engagement_id: str, actor_ref: str) -> EngagementRequest:
        """Accept the active proposal: release the fee to the hunter and book the viewing."""
        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            current = EngagementStatus(engagement.status)
            target = next_status(current, A.ACCEPT)
            check_turn(engagement, actor_ref, A.ACCEPT)
            if engagement.payment_state != PaymentState.ESCROW.value:
                raise NotEscrowedError(
                    f"Viewing fee is {engagement.payment_state}, not held in escrow",
                    payment_state=engagement.payment_state,
                )

            entry = await self.ledger.release(engagement.id, engagement.hunter_ref)
            date, time_slot, location = active_schedule(engagement)
            engagement.status = target.value
            engagement.payment_state = PaymentState.RELEASED.value
            engagement.resolved_at = self.collaborators.clock()
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.ACCEPTED,
                actor_ref, from_status=current.value, to_status=target.value,
                data={"date": date, "time_slot": time_slot, "location": location},
            ))

        self._log(engagement, current.value, actor_ref)
        await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        await self.materialize_booking(engagement.id)
        return engagement

    async def reject(self, engagement_id: str, actor_ref: str, reason: Optional[str] = None) -> EngagementRequest:
        """Close the engagement and refund the tenant. Either party, any turn."""
        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            current = EngagementStatus(engagement.status)
            target = next_status(current, A.REJECT)
            check_turn(engagement, actor_ref, A.REJECT)

            entry = await self.ledger.refund(engagement.id, engagement.tenant_ref)
            engagement.status = target.value
            engagement.payment_state = PaymentState.REFUNDED.value
            engagement.reject_reason = reason
            engagement.rejected_by = actor_ref
            engagement.resolved_at = self.collaborators.clock()
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.REJECTED,
                actor_ref, from_status=current.value, to_status=target.value,
                data={"reason": reason},
            ))

        self._log(engagement, current.value, actor_ref)
        await self.ledger.dispatch(entry)
        await publish_events(self.collaborators.notifier, events)
        return engagement

    # -- booking --------------------------------------------------------

    async def materialize_booking(self, engagement_id: str) -> Optional[str]:
        """Create the booking for an ACCEPTED engagement and record its id.

        Returns the booking id, or None when the materializer failed; the
        retry sweep picks those up later.
        """
        engagement = await self.get(engagement_id)
        if engagement.status != S.ACCEPTED.value:
            raise InvalidStateError(engagement.status, "materialize booking")
        if engagement.booking_ref:
            return engagement.booking_ref

        date, time_slot, location = active_schedule(engagement)
        request = BookingRequest(
            engagement_id=engagement.id,
            property_ref=engagement.property_ref,
            tenant_ref=engagement.tenant_ref,
            hunter_ref=engagement.hunter_ref,
            scheduled_date=date,
            scheduled_time=time_slot,
            location=location,
        )
        try:
            booking_id = await self.collaborators.bookings.materialize(request)
        except Exception as e:
            logger.error("Booking materialization failed for engagement %s: %s", engagement_id, e)
            return None

        events = []
        async with self._uow(engagement_id):
            engagement = await self.get(engagement_id)
            engagement.booking_ref = booking_id
            events.append(record_event(
                self.db, SubjectType.ENGAGEMENT, engagement.id, TransitionEventType.BOOKING_MATERIALIZED,
                "system", from_status=engagement.status, to_status=engagement.status,
                data={"booking_id": booking_id, "date": date, "time_slot": time_slot},
            ))

        await publish_events(self.collaborators.notifier, events)
        return booking_id
