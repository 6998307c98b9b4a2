"""Domain enumerations for the Haunter engagement and escrow engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class ActorRole(str, Enum):
    """Role an identity reference acts under."""

    TENANT = "tenant"
    HUNTER = "hunter"
    ADMIN = "admin"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Viewing negotiation
# ---------------------------------------------------------------------------


class EngagementStatus(str, Enum):
    """Status of a direct viewing negotiation."""

    PENDING = "PENDING"
    COUNTERED = "COUNTERED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class PaymentState(str, Enum):
    """Where the viewing fee sits relative to escrow."""

    ESCROW = "ESCROW"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class NegotiationAction(str, Enum):
    """Actions a party may take on an open engagement."""

    PROPOSE = "propose"
    COUNTER = "counter"
    EDIT = "edit"
    ACCEPT = "accept"
    REJECT = "reject"


class LocationKind(str, Enum):
    """What a meeting location points at."""

    LANDMARK = "LANDMARK"
    PROPERTY = "PROPERTY"


# ---------------------------------------------------------------------------
# Search jobs
# ---------------------------------------------------------------------------


class ServiceTier(str, Enum):
    """Search job tier; fixes deadline window, deposit and option count."""

    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    URGENT = "URGENT"


class SearchJobStatus(str, Enum):
    """Status of a competitive multi-property search job."""

    DRAFT = "DRAFT"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_BIDS = "PENDING_BIDS"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_REVIEW = "PENDING_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FORFEITED = "FORFEITED"


class BidStatus(str, Enum):
    """Status of a hunter's bid on a search job."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ExtensionStatus(str, Enum):
    """Status of a timeframe extension request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Urgency(str, Enum):
    """Display classification of how much of a job's window is left."""

    NORMAL = "normal"
    WARNING = "warning"
    URGENT = "urgent"
    EXPIRED = "expired"


class AdminDecision(str, Enum):
    """Final arbitration outcome for a disputed search job."""

    FULL_REFUND = "full_refund"
    FULL_PAYMENT = "full_payment"
    SPLIT_PAYMENT = "split_payment"


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


class EscrowTransactionKind(str, Enum):
    """Kind of append-only escrow ledger entry."""

    HOLD = "HOLD"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    SPLIT = "SPLIT"


class EscrowPhase(str, Enum):
    """Ledger phase; at most one entry per phase per escrow id."""

    HOLD = "hold"
    SETTLEMENT = "settlement"


class GatewayStatus(str, Enum):
    """Delivery state of a ledger entry's payment gateway call."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class SubjectType(str, Enum):
    """Entity a transition event belongs to."""

    ENGAGEMENT = "engagement_request"
    SEARCH_JOB = "search_job"


class TransitionEventType(str, Enum):
    """Type of event in the transition audit trail."""

    PROPOSAL_MADE = "proposal_made"
    PROPOSAL_EDITED = "proposal_edited"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    BOOKING_MATERIALIZED = "booking_materialized"
    JOB_SUBMITTED = "job_submitted"
    CHECKOUT_STARTED = "checkout_started"
    DEPOSIT_PAID = "deposit_paid"
    BID_SUBMITTED = "bid_submitted"
    CLAIMED = "claimed"
    EVIDENCE_SUBMITTED = "evidence_submitted"
    REVIEW_REQUESTED = "review_requested"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    ARBITRATED = "arbitrated"
    FORFEITED = "forfeited"
    CANCELLED = "cancelled"
    EXTENSION_REQUESTED = "extension_requested"
    EXTENSION_APPROVED = "extension_approved"
    EXTENSION_REJECTED = "extension_rejected"
    DEADLINE_WARNING = "deadline_warning"
    DEADLINE_URGENT = "deadline_urgent"
