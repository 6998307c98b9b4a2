"""Typed failures raised by the engagement and escrow engine.

Every failure carries a stable ``code`` so callers can tell "wait for the
other party" apart from "this request is already closed". Nothing here is
retried internally: a turn or claim violation cannot succeed without new input.
"""


class EngineError(Exception):
    """Base class for all engine failures."""

    code = "engine_error"

    def __init__(self, reason: str, **context):
        self.reason = reason
        self.context = context
        super().__init__(reason)


# ---------------------------------------------------------------------------
# State errors: the operation is illegal for the entity's current state
# ---------------------------------------------------------------------------


class StateError(EngineError):
    code = "state_error"


class InvalidStateError(StateError):
    """Operation is not legal for the current status."""

    code = "invalid_state"

    def __init__(self, current_status: str, operation: str, reason: str | None = None):
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            reason or f"Cannot {operation} while status is {current_status}",
            current_status=current_status,
            operation=operation,
        )


class NotYourTurnError(StateError):
    code = "not_your_turn"

    def __init__(self, actor_ref: str):
        super().__init__(
            "You made the most recent proposal; wait for the other party to respond",
            actor_ref=actor_ref,
        )


class NotEscrowedError(StateError):
    code = "not_escrowed"


class AlreadyClaimedError(StateError):
    code = "already_claimed"


class AlreadySettledError(StateError):
    code = "already_settled"


class AlreadyReviewedError(StateError):
    code = "already_reviewed"


class DuplicateBidError(StateError):
    code = "duplicate_bid"


class DuplicateHoldError(StateError):
    code = "duplicate_hold"


class DuplicateRequestError(StateError):
    code = "duplicate_request"


class DeadlinePassedError(StateError):
    code = "deadline_passed"


class EvidenceCapExceededError(StateError):
    code = "evidence_cap_exceeded"


class ExtensionAlreadyResolvedError(StateError):
    code = "extension_already_resolved"


class ConcurrentModificationError(StateError):
    """Another writer committed a newer version of the entity first."""

    code = "concurrent_modification"


# ---------------------------------------------------------------------------
# Validation errors: the input itself is unacceptable
# ---------------------------------------------------------------------------


class ValidationFailure(EngineError):
    code = "validation_failed"


class SplitMismatchError(ValidationFailure):
    code = "split_mismatch"


class InvalidSplitPercentageError(ValidationFailure):
    code = "invalid_split_percentage"


class MissingFieldError(ValidationFailure):
    code = "missing_field"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"{field_name} is required", field=field_name)


class InvalidAmountError(ValidationFailure):
    code = "invalid_amount"


# ---------------------------------------------------------------------------
# Not-found errors
# ---------------------------------------------------------------------------


class NotFoundError(EngineError):
    code = "not_found"
    entity = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found", entity_id=entity_id)


class EngagementNotFoundError(NotFoundError):
    code = "engagement_not_found"
    entity = "Engagement"


class JobNotFoundError(NotFoundError):
    code = "job_not_found"
    entity = "Search job"


class BidNotFoundError(NotFoundError):
    code = "bid_not_found"
    entity = "Bid"


class ExtensionNotFoundError(NotFoundError):
    code = "extension_not_found"
    entity = "Extension"


class EscrowNotFoundError(NotFoundError):
    code = "escrow_not_found"
    entity = "Escrow"


# ---------------------------------------------------------------------------
# Ownership
# ---------------------------------------------------------------------------


class NotAuthorizedError(EngineError):
    """Actor is not a party allowed to perform this operation."""

    code = "not_authorized"
