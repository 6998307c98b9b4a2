"""SQLAlchemy ORM models for the Haunter engagement and escrow engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps (no TIMESTAMPTZ)

Identity references (tenant, hunter, admin) and property references are
opaque strings owned by external collaborators, so they carry no foreign keys.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from haunter_platform.infra.clock import utcnow
from haunter_platform.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Viewing negotiation
# ---------------------------------------------------------------------------


class EngagementRequest(Base):
    """A tenant/hunter negotiation over one property viewing."""

    __tablename__ = "engagement_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    property_ref = Column(String(64), nullable=False, index=True)
    tenant_ref = Column(String(64), nullable=False, index=True)
    hunter_ref = Column(String(64), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="PENDING", index=True)  # EngagementStatus
    payment_state = Column(String(20), nullable=False, default="ESCROW")  # PaymentState
    amount = Column(Numeric(12, 2), nullable=False)

    # Tenant's opening proposal: [{"date": "2025-01-10", "time_slot": "10:00"}, ...]
    proposed_slots = Column(JSON, nullable=False, default=list)
    proposed_location = Column(JSON, nullable=True)  # Location.to_dict()
    message = Column(Text, nullable=True)

    # Active counter-proposal, replaced wholesale on every counter
    counter_date = Column(String(10), nullable=True)
    counter_time = Column(String(5), nullable=True)
    counter_location = Column(JSON, nullable=True)
    countered_by = Column(String(64), nullable=True)
    counter_reason = Column(String(500), nullable=True)

    # Turn-taking: whoever made the most recent proposal waits for the other party
    last_actor_ref = Column(String(64), nullable=False)

    # Outcome
    booking_ref = Column(String(64), nullable=True)
    reject_reason = Column(String(500), nullable=True)
    rejected_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}


class Booking(Base):
    """Viewing appointment materialized from an accepted engagement."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    engagement_id = Column(String(36), ForeignKey("engagement_requests.id"), nullable=False, unique=True)
    property_ref = Column(String(64), nullable=False)
    tenant_ref = Column(String(64), nullable=False)
    hunter_ref = Column(String(64), nullable=False)
    scheduled_date = Column(String(10), nullable=False)
    scheduled_time = Column(String(5), nullable=False)
    scheduled_end_time = Column(String(5), nullable=False)
    location = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Search jobs
# ---------------------------------------------------------------------------


class SearchJob(Base):
    """A deposit-backed, deadline-bound "find N properties" job."""

    __tablename__ = "search_jobs"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_ref = Column(String(64), nullable=False, index=True)

    # {"preferred_areas": [...], "min_rent": ..., "max_rent": ..., "property_type": ...,
    #  "must_have": [...], "deal_breakers": [...], ...}
    requirements = Column(JSON, nullable=False, default=dict)
    service_tier = Column(String(20), nullable=False)  # ServiceTier
    number_of_options = Column(Integer, nullable=False, default=3)

    status = Column(String(30), nullable=False, default="DRAFT", index=True)  # SearchJobStatus

    # Deposit
    deposit_amount = Column(Numeric(12, 2), nullable=False)
    deposit_paid = Column(Boolean, default=False)
    deposit_paid_at = Column(DateTime, nullable=True)

    # Claim
    claimed_by_ref = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    selected_bid_id = Column(String(36), nullable=True)
    deadline = Column(DateTime, nullable=True, index=True)

    # [{"photos": [...], "description": ..., "match_score": ..., "submitted_at": ...}, ...]
    uploaded_evidence = Column(JSON, nullable=False, default=list)

    # Dispute
    dispute_reason = Column(String(1000), nullable=True)
    refund_requested_at = Column(DateTime, nullable=True)

    # Arbitration (all set together, once)
    admin_decision = Column(String(20), nullable=True)  # AdminDecision
    admin_split_percentage = Column(Integer, nullable=True)
    admin_reasoning = Column(Text, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)
    forfeited_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    bids = relationship("Bid", back_populates="job", order_by="Bid.created_at")
    extensions = relationship(
        "TimeframeExtension", back_populates="job", order_by="TimeframeExtension.created_at"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def has_admin_review(self) -> bool:
        return self.admin_decision is not None


class Bid(Base):
    """A hunter's offer to fulfil a search job."""

    __tablename__ = "bids"
    __table_args__ = (UniqueConstraint("job_id", "hunter_ref", name="uq_bid_job_hunter"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey("search_jobs.id"), nullable=False, index=True)
    hunter_ref = Column(String(64), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    promised_delivery_hours = Column(Integer, nullable=False)
    bonus_offer = Column(String(500), nullable=True)
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="PENDING")  # BidStatus
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    job = relationship("SearchJob", back_populates="bids")


class TimeframeExtension(Base):
    """Hunter request for more time on a claimed job; tenant approves or rejects."""

    __tablename__ = "timeframe_extensions"

    id = Column(String(36), primary_key=True, default=_uuid)
    job_id = Column(String(36), ForeignKey("search_jobs.id"), nullable=False, index=True)
    requested_by = Column(String(64), nullable=False)
    requested_hours = Column(Integer, nullable=False)
    reason = Column(String(1000), nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # ExtensionStatus
    resolved_by = Column(String(64), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    job = relationship("SearchJob", back_populates="extensions")


# ---------------------------------------------------------------------------
# Escrow ledger
# ---------------------------------------------------------------------------


class EscrowTransaction(Base):
    """Append-only escrow ledger entry.

    ``engagement_id`` is the escrow id: an EngagementRequest id or a SearchJob
    id. The ``(engagement_id, phase)`` constraint allows exactly one HOLD and
    at most one disbursement (RELEASE, REFUND or SPLIT) per escrow id.
    """

    __tablename__ = "escrow_transactions"
    __table_args__ = (UniqueConstraint("engagement_id", "phase", name="uq_escrow_phase"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    engagement_id = Column(String(36), nullable=False, index=True)
    kind = Column(String(10), nullable=False)  # EscrowTransactionKind
    phase = Column(String(12), nullable=False)  # EscrowPhase
    amount = Column(Numeric(12, 2), nullable=False)
    counterparty_ref = Column(String(64), nullable=False)
    # SPLIT only: [{"payee_ref": ..., "role": "hunter"|"tenant", "amount": "600.00"}, ...]
    legs = Column(JSON, nullable=True)

    # Payment gateway delivery (at-least-once, retried by the expiry monitor)
    gateway_status = Column(String(10), nullable=False, default="pending")  # GatewayStatus
    gateway_ref = Column(String(100), nullable=True)
    gateway_attempts = Column(Integer, nullable=False, default=0)
    gateway_error = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=utcnow)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class TransitionEvent(Base):
    """Immutable audit trail entry for engagement and search job transitions."""

    __tablename__ = "transition_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    subject_type = Column(String(30), nullable=False)  # SubjectType
    subject_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # TransitionEventType
    actor_ref = Column(String(64), nullable=False)
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
