"""Escrow Ledger - funds held against an engagement or search job.

The ledger is append-only. Per escrow id there is exactly one HOLD and at
most one disbursement (RELEASE, REFUND or SPLIT), which always moves the
entire remaining balance. Once disbursed, every further disbursement fails
with AlreadySettledError: callers must treat that as a bug, not a retry.

Ledger methods add rows to the caller's session and flush; the caller owns
the commit (normally through ``transitions.unit_of_work``). Gateway calls
happen afterwards in ``dispatch``, once the entry is durable.
"""

import logging
import uuid
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from haunter_platform.domain.enums import EscrowPhase, EscrowTransactionKind, GatewayStatus
from haunter_platform.domain.models import EscrowTransaction
from haunter_platform.services.collaborators import Collaborators, default_collaborators
from haunter_platform.services.errors import (
    AlreadySettledError,
    DuplicateHoldError,
    EscrowNotFoundError,
    InvalidAmountError,
    SplitMismatchError,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce ``value`` to a Decimal rounded to the smallest currency unit."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmountError(f"Not a monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmountError(f"Not a monetary amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class EscrowLedger:
    """Hold / release / refund / split with conservation guarantees."""

    def __init__(self, db: AsyncSession, collaborators: Optional[Collaborators] = None):
        self.db = db
        self.collaborators = collaborators or default_collaborators()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def entries(self, escrow_id: str) -> list[EscrowTransaction]:
        result = await self.db.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.engagement_id == escrow_id)
            .order_by(EscrowTransaction.phase.asc())
        )
        return list(result.scalars().all())

    async def _hold_and_settlement(self, escrow_id: str):
        hold = settlement = None
        for entry in await self.entries(escrow_id):
            if entry.phase == EscrowPhase.HOLD.value:
                hold = entry
            else:
                settlement = entry
        return hold, settlement

    async def balance(self, escrow_id: str) -> Decimal:
        """Amount still held for ``escrow_id`` (zero once settled)."""
        hold, settlement = await self._hold_and_settlement(escrow_id)
        if hold is None:
            raise EscrowNotFoundError(escrow_id)
        disbursed = to_money(settlement.amount) if settlement is not None else Decimal("0.00")
        return to_money(hold.amount) - disbursed

    async def is_settled(self, escrow_id: str) -> bool:
        _, settlement = await self._hold_and_settlement(escrow_id)
        return settlement is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def hold(self, escrow_id: str, amount, payer_ref: str) -> Decimal:
        """Record the single HOLD for ``escrow_id``; returns the new balance."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Hold amount must be positive, got {amount}")

        async with self.collaborators.locks.hold("escrow", escrow_id):
            hold, _ = await self._hold_and_settlement(escrow_id)
            if hold is not None:
                raise DuplicateHoldError(f"Escrow {escrow_id} already holds funds", escrow_id=escrow_id)

            self.db.add(EscrowTransaction(
                id=str(uuid.uuid4()),
                engagement_id=escrow_id,
                kind=EscrowTransactionKind.HOLD.value,
                phase=EscrowPhase.HOLD.value,
                amount=amount,
                counterparty_ref=payer_ref,
                gateway_status=GatewayStatus.PENDING.value,
                gateway_attempts=0,
            ))
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise DuplicateHoldError(f"Escrow {escrow_id} already holds funds", escrow_id=escrow_id) from e

        logger.info("Escrow %s: HOLD %s from %s", escrow_id, amount, payer_ref)
        return amount

    async def release(self, escrow_id: str, to_ref: str) -> EscrowTransaction:
        """Pay the whole remaining balance to ``to_ref`` (the hunter)."""
        return await self._disburse(escrow_id, EscrowTransactionKind.RELEASE, to_ref)

    async def refund(self, escrow_id: str, to_ref: str) -> EscrowTransaction:
        """Return the whole remaining balance to ``to_ref`` (the tenant)."""
        return await self._disburse(escrow_id, EscrowTransactionKind.REFUND, to_ref)

    async def split(
        self,
        escrow_id: str,
        hunter_share,
        tenant_share,
        *,
        hunter_ref: str,
        tenant_ref: str,
    ) -> EscrowTransaction:
        """Settle with one SPLIT entry carrying both legs.

        ``hunter_share + tenant_share`` must equal the balance exactly.
        """
        hunter_share = to_money(hunter_share)
        tenant_share = to_money(tenant_share)
        if hunter_share < 0 or tenant_share < 0:
            raise InvalidAmountError("Split shares cannot be negative")

        legs = [
            {"payee_ref": hunter_ref, "role": "hunter", "amount": str(hunter_share)},
            {"payee_ref": tenant_ref, "role": "tenant", "amount": str(tenant_share)},
        ]
        return await self._disburse(
            escrow_id,
            EscrowTransactionKind.SPLIT,
            hunter_ref,
            expected_total=hunter_share + tenant_share,
            legs=legs,
        )

    async def _disburse(
        self,
        escrow_id: str,
        kind: EscrowTransactionKind,
        counterparty_ref: str,
        expected_total: Optional[Decimal] = None,
        legs: Optional[list[dict]] = None,
    ) -> EscrowTransaction:
        async with self.collaborators.locks.hold("escrow", escrow_id):
            hold, settlement = await self._hold_and_settlement(escrow_id)
            if hold is None:
                raise EscrowNotFoundError(escrow_id)
            if settlement is not None:
                raise AlreadySettledError(
                    f"Escrow {escrow_id} was already settled by {settlement.kind}",
                    escrow_id=escrow_id,
                )

            balance = to_money(hold.amount)
            if expected_total is not None and expected_total != balance:
                raise SplitMismatchError(
                    f"Shares sum to {expected_total} but the balance is {balance}",
                    escrow_id=escrow_id,
                    balance=str(balance),
                )

            entry = EscrowTransaction(
                id=str(uuid.uuid4()),
                engagement_id=escrow_id,
                kind=kind.value,
                phase=EscrowPhase.SETTLEMENT.value,
                amount=balance,
                counterparty_ref=counterparty_ref,
                legs=legs,
                gateway_status=GatewayStatus.PENDING.value,
                gateway_attempts=0,
            )
            self.db.add(entry)
            try:
                await self.db.flush()
            except IntegrityError as e:
                raise AlreadySettledError(
                    f"Escrow {escrow_id} was settled concurrently", escrow_id=escrow_id
                ) from e

        logger.info("Escrow %s: %s %s to %s", escrow_id, kind.value, balance, counterparty_ref)
        return entry

    # ------------------------------------------------------------------
    # Gateway delivery
    # ------------------------------------------------------------------

    async def dispatch(self, entry: EscrowTransaction) -> bool:
        """Push a committed ledger entry to the payment gateway and commit the outcome.

        Returns True when the gateway acknowledged. A failure is recorded on
        the entry for the retry sweep and never raised.
        """
        if entry.gateway_status == GatewayStatus.SENT.value:
            return True

        gateway = self.collaborators.gateway
        amount = to_money(entry.amount)
        entry.gateway_attempts = (entry.gateway_attempts or 0) + 1
        try:
            if entry.kind == EscrowTransactionKind.HOLD.value:
                receipt = await gateway.initiate_hold(entry.engagement_id, amount, entry.counterparty_ref)
            elif entry.kind == EscrowTransactionKind.RELEASE.value:
                receipt = await gateway.disburse(entry.engagement_id, amount, entry.counterparty_ref)
            elif entry.kind == EscrowTransactionKind.REFUND.value:
                receipt = await gateway.refund(entry.engagement_id, amount, entry.counterparty_ref)
            else:
                receipts = []
                for leg in entry.legs or []:
                    leg_amount = to_money(leg["amount"])
                    if leg_amount == 0:
                        continue
                    if leg["role"] == "hunter":
                        receipts.append(await gateway.disburse(entry.engagement_id, leg_amount, leg["payee_ref"]))
                    else:
                        receipts.append(await gateway.refund(entry.engagement_id, leg_amount, leg["payee_ref"]))
                receipt = ",".join(r for r in receipts if r)
        except Exception as e:
            entry.gateway_status = GatewayStatus.FAILED.value
            entry.gateway_error = str(e)[:500]
            await self.db.commit()
            logger.error(
                "Gateway %s failed for escrow %s (attempt %d): %s",
                entry.kind, entry.engagement_id, entry.gateway_attempts, e,
            )
            return False

        entry.gateway_status = GatewayStatus.SENT.value
        entry.gateway_ref = receipt
        entry.gateway_error = None
        await self.db.commit()
        return True

    async def dispatch_pending(self, escrow_id: str) -> int:
        """Dispatch every unacknowledged entry for ``escrow_id``; returns how many succeeded."""
        sent = 0
        for entry in await self.entries(escrow_id):
            if entry.gateway_status != GatewayStatus.SENT.value and await self.dispatch(entry):
                sent += 1
        return sent
