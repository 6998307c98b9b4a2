"""Pydantic v2 schemas for API request/response validation."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str


class ErrorResponse(BaseModel):
    """Body of every rejected engine operation."""

    code: str
    detail: str


# ---------------------------------------------------------------------------
# Engagements
# ---------------------------------------------------------------------------


class Slot(BaseModel):
    date: str = Field(..., description="YYYY-MM-DD")
    time_slot: str = Field(..., description="HH:MM")


class EngagementCreate(BaseModel):
    """Tenant opens a viewing negotiation with one or more candidate slots."""

    property_ref: str
    hunter_ref: str
    amount: Decimal
    slots: list[Slot]
    location: Any = None
    message: str | None = None


class ProposeSlots(BaseModel):
    slots: list[Slot]
    location: Any = None


class CounterProposal(BaseModel):
    """Counter or edit: one (date, time, location) plus an optional reason."""

    date: str | None = None
    time_slot: str | None = None
    location: Any = None
    reason: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = None


class EngagementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    property_ref: str
    tenant_ref: str
    hunter_ref: str
    status: str
    payment_state: str
    amount: Decimal
    proposed_slots: list[dict]
    proposed_location: dict | None = None
    message: str | None = None
    counter_date: str | None = None
    counter_time: str | None = None
    counter_location: dict | None = None
    countered_by: str | None = None
    counter_reason: str | None = None
    last_actor_ref: str
    booking_ref: str | None = None
    reject_reason: str | None = None
    rejected_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None
    allowed_actions: list[str] = []


# ---------------------------------------------------------------------------
# Search jobs
# ---------------------------------------------------------------------------


class SearchJobCreate(BaseModel):
    requirements: dict
    service_tier: str = "STANDARD"


class BidCreate(BaseModel):
    price: Decimal
    promised_delivery_hours: int
    bonus_offer: str | None = None
    message: str | None = None


class BidAccept(BaseModel):
    bid_id: str


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    hunter_ref: str
    price: Decimal
    promised_delivery_hours: int
    bonus_offer: str | None = None
    message: str | None = None
    status: str
    created_at: datetime | None = None


class EvidenceItem(BaseModel):
    photos: list[str] = []
    description: str
    match_score: float | None = None
    property_ref: str | None = None


class EvidenceSubmit(BaseModel):
    items: list[EvidenceItem]


class DisputeRequest(BaseModel):
    reason: str


class CancelRequest(BaseModel):
    reason: str | None = None


class ExtensionCreate(BaseModel):
    hours: int
    reason: str


class ExtensionResolve(BaseModel):
    approve: bool


class ExtensionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    requested_by: str
    requested_hours: int
    reason: str
    status: str
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


class SearchJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_ref: str
    requirements: dict
    service_tier: str
    number_of_options: int
    status: str
    deposit_amount: Decimal
    deposit_paid: bool
    deposit_paid_at: datetime | None = None
    claimed_by_ref: str | None = None
    claimed_at: datetime | None = None
    selected_bid_id: str | None = None
    deadline: datetime | None = None
    uploaded_evidence: list[dict] = []
    dispute_reason: str | None = None
    refund_requested_at: datetime | None = None
    admin_decision: str | None = None
    admin_split_percentage: int | None = None
    admin_reasoning: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    bids: list[BidResponse] = []
    extensions: list[ExtensionResponse] = []
    created_at: datetime | None = None


class DeadlineStatus(BaseModel):
    """Countdown view of a claimed job."""

    job_id: str
    deadline: datetime | None = None
    remaining_fraction: float
    seconds_remaining: int | None = None
    urgency: str


# ---------------------------------------------------------------------------
# Arbitration
# ---------------------------------------------------------------------------


class AdminDecisionRequest(BaseModel):
    decision: str
    reasoning: str
    split_percentage: int | None = None
