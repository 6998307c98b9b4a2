"""Boundary collaborators the engine drives after a transition commits.

The engine never talks to a payment rail, booking store or messaging
service directly. It hands work to the three collaborators below, always
after the state transition has been committed. Any object with the same
async methods can be swapped in (tests use in-memory fakes).

- PaymentGateway: initiate_hold / disburse / refund
- BookingMaterializer: materialize(BookingRequest) -> booking id
- Notifier: publish(TransitionEvent)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select

from haunter_platform.app.config import get_settings
from haunter_platform.domain.models import Booking
from haunter_platform.infra.clock import Clock, utcnow
from haunter_platform.services.locks import EntityLocks, entity_locks

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised by a payment gateway when a call is not acknowledged."""


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


class SimulatedPaymentGateway:
    """Gateway that acknowledges every call with a synthetic receipt.

    Used in development, where no mobile-money or card rail is wired up.
    """

    def _receipt(self) -> str:
        return f"SIM{uuid.uuid4().hex[:10].upper()}"

    async def initiate_hold(self, escrow_id: str, amount: Decimal, payer_ref: str) -> str:
        receipt = self._receipt()
        logger.info("Gateway hold: escrow=%s amount=%s payer=%s receipt=%s", escrow_id, amount, payer_ref, receipt)
        return receipt

    async def disburse(self, escrow_id: str, amount: Decimal, payee_ref: str) -> str:
        receipt = self._receipt()
        logger.info("Gateway disburse: escrow=%s amount=%s payee=%s receipt=%s", escrow_id, amount, payee_ref, receipt)
        return receipt

    async def refund(self, escrow_id: str, amount: Decimal, payer_ref: str) -> str:
        receipt = self._receipt()
        logger.info("Gateway refund: escrow=%s amount=%s payer=%s receipt=%s", escrow_id, amount, payer_ref, receipt)
        return receipt


# ---------------------------------------------------------------------------
# Booking materializer
# ---------------------------------------------------------------------------


@dataclass
class BookingRequest:
    """Everything the booking store needs to create a confirmed viewing."""

    engagement_id: str
    property_ref: str
    tenant_ref: str
    hunter_ref: str
    scheduled_date: str
    scheduled_time: str
    location: Optional[dict] = None

    def end_time(self, duration_minutes: int) -> str:
        """Return the HH:MM the viewing ends, wrapping past midnight."""
        start = datetime.strptime(self.scheduled_time, "%H:%M")
        return (start + timedelta(minutes=duration_minutes)).strftime("%H:%M")


class SqlBookingMaterializer:
    """Writes a Booking row in its own transaction and returns its id.

    Materializing twice for the same engagement returns the existing booking.
    """

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _factory(self):
        if self._session_factory is None:
            from haunter_platform.infra.database import async_session
            self._session_factory = async_session
        return self._session_factory

    async def materialize(self, request: BookingRequest) -> str:
        duration = get_settings().viewing_duration_minutes
        async with self._factory()() as db:
            result = await db.execute(
                select(Booking).where(Booking.engagement_id == request.engagement_id)
            )
            existing = result.scalar_one_or_none()
            if existing is not None:
                return existing.id

            booking = Booking(
                id=str(uuid.uuid4()),
                engagement_id=request.engagement_id,
                property_ref=request.property_ref,
                tenant_ref=request.tenant_ref,
                hunter_ref=request.hunter_ref,
                scheduled_date=request.scheduled_date,
                scheduled_time=request.scheduled_time,
                scheduled_end_time=request.end_time(duration),
                location=request.location,
            )
            db.add(booking)
            await db.commit()
            logger.info(
                "Booking %s materialized for engagement %s on %s %s",
                booking.id, request.engagement_id, request.scheduled_date, request.scheduled_time,
            )
            return booking.id


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class LogNotifier:
    """Notifier that only logs; delivery and formatting live elsewhere."""

    async def publish(self, event: Any) -> None:
        logger.info(
            "Notify: %s %s %s (actor=%s, %s -> %s)",
            event.subject_type, event.subject_id, event.event_type,
            event.actor_ref, event.from_status, event.to_status,
        )


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@dataclass
class Collaborators:
    """Everything an engine service needs beyond its database session."""

    gateway: Any = field(default_factory=SimulatedPaymentGateway)
    bookings: Any = field(default_factory=SqlBookingMaterializer)
    notifier: Any = field(default_factory=LogNotifier)
    clock: Clock = utcnow
    locks: EntityLocks = entity_locks


_default: Optional[Collaborators] = None


def default_collaborators() -> Collaborators:
    """Return the process-wide default collaborators."""
    global _default
    if _default is None:
        _default = Collaborators()
    return _default
