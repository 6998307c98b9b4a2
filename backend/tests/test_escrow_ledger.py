"""Tests for EscrowLedger: single hold, settle-once, split conservation, gateway dispatch."""

from decimal import Decimal

import pytest

from haunter_platform.domain.enums import EscrowTransactionKind, GatewayStatus
from haunter_platform.services.errors import (
    AlreadySettledError,
    DuplicateHoldError,
    EscrowNotFoundError,
    InvalidAmountError,
    SplitMismatchError,
)
from haunter_platform.services.escrow_ledger import to_money

from conftest import HUNTER, TENANT

ESCROW = "escrow-1"


async def _held(ledger, db_session, amount="1000.00"):
    await ledger.hold(ESCROW, Decimal(amount), TENANT)
    await db_session.commit()


class TestToMoney:
    def test_rounds_to_cents(self):
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(7) == Decimal("7.00")

    @pytest.mark.parametrize("bad", ["abc", "NaN", "Infinity"])
    def test_rejects_non_amounts(self, bad):
        with pytest.raises(InvalidAmountError):
            to_money(bad)


class TestHold:
    async def test_hold_returns_balance(self, ledger, db_session):
        balance = await ledger.hold(ESCROW, Decimal("1000"), TENANT)
        await db_session.commit()

        assert balance == Decimal("1000.00")
        assert await ledger.balance(ESCROW) == Decimal("1000.00")
        assert not await ledger.is_settled(ESCROW)

    async def test_second_hold_fails(self, ledger, db_session):
        await _held(ledger, db_session)
        with pytest.raises(DuplicateHoldError):
            await ledger.hold(ESCROW, Decimal("5"), TENANT)

    async def test_hold_must_be_positive(self, ledger):
        with pytest.raises(InvalidAmountError):
            await ledger.hold(ESCROW, Decimal("0"), TENANT)

    async def test_balance_of_unknown_escrow(self, ledger):
        with pytest.raises(EscrowNotFoundError):
            await ledger.balance("missing")


class TestSettlement:
    async def test_release_moves_entire_balance(self, ledger, db_session):
        await _held(ledger, db_session)

        entry = await ledger.release(ESCROW, HUNTER)
        await db_session.commit()

        assert entry.kind == EscrowTransactionKind.RELEASE.value
        assert entry.amount == Decimal("1000.00")
        assert entry.counterparty_ref == HUNTER
        assert await ledger.balance(ESCROW) == Decimal("0.00")
        assert await ledger.is_settled(ESCROW)

    async def test_refund_records_refund(self, ledger, db_session):
        await _held(ledger, db_session)

        entry = await ledger.refund(ESCROW, TENANT)
        await db_session.commit()

        assert entry.kind == EscrowTransactionKind.REFUND.value
        assert entry.counterparty_ref == TENANT

    @pytest.mark.parametrize("second", ["release", "refund", "split"])
    async def test_any_second_disbursement_fails(self, ledger, db_session, second):
        await _held(ledger, db_session)
        await ledger.release(ESCROW, HUNTER)
        await db_session.commit()

        with pytest.raises(AlreadySettledError):
            if second == "release":
                await ledger.release(ESCROW, HUNTER)
            elif second == "refund":
                await ledger.refund(ESCROW, TENANT)
            else:
                await ledger.split(ESCROW, Decimal("500"), Decimal("500"), hunter_ref=HUNTER, tenant_ref=TENANT)

    async def test_disbursed_total_never_exceeds_hold(self, ledger, db_session):
        await _held(ledger, db_session)
        await ledger.refund(ESCROW, TENANT)
        await db_session.commit()
        with pytest.raises(AlreadySettledError):
            await ledger.release(ESCROW, HUNTER)
        await db_session.rollback()

        entries = await ledger.entries(ESCROW)
        hold = [e for e in entries if e.kind == EscrowTransactionKind.HOLD.value]
        disbursed = [e for e in entries if e.kind != EscrowTransactionKind.HOLD.value]
        assert len(hold) == 1
        assert len(disbursed) == 1
        assert sum(e.amount for e in disbursed) <= hold[0].amount

    async def test_release_without_hold(self, ledger):
        with pytest.raises(EscrowNotFoundError):
            await ledger.release("missing", HUNTER)


class TestSplit:
    async def test_split_records_one_entry_with_two_legs(self, ledger, db_session):
        await _held(ledger, db_session)

        entry = await ledger.split(ESCROW, Decimal("600"), Decimal("400"), hunter_ref=HUNTER, tenant_ref=TENANT)
        await db_session.commit()

        assert entry.kind == EscrowTransactionKind.SPLIT.value
        assert entry.amount == Decimal("1000.00")
        assert {(leg["payee_ref"], leg["amount"]) for leg in entry.legs} == {
            (HUNTER, "600.00"),
            (TENANT, "400.00"),
        }
        assert await ledger.is_settled(ESCROW)

    async def test_split_must_sum_to_balance(self, ledger, db_session):
        await _held(ledger, db_session)

        with pytest.raises(SplitMismatchError):
            await ledger.split(ESCROW, Decimal("600"), Decimal("399.99"), hunter_ref=HUNTER, tenant_ref=TENANT)
        assert not await ledger.is_settled(ESCROW)

    async def test_negative_share_rejected(self, ledger, db_session):
        await _held(ledger, db_session)

        with pytest.raises(InvalidAmountError):
            await ledger.split(ESCROW, Decimal("1100"), Decimal("-100"), hunter_ref=HUNTER, tenant_ref=TENANT)


class TestDispatch:
    async def test_dispatch_marks_entry_sent(self, ledger, db_session, gateway):
        await _held(ledger, db_session)
        entry = await ledger.release(ESCROW, HUNTER)
        await db_session.commit()

        assert await ledger.dispatch(entry) is True
        assert entry.gateway_status == GatewayStatus.SENT.value
        assert entry.gateway_attempts == 1
        assert gateway.calls == [("disburse", ESCROW, Decimal("1000.00"), HUNTER)]

    async def test_split_dispatches_both_legs(self, ledger, db_session, gateway):
        await _held(ledger, db_session)
        entry = await ledger.split(ESCROW, Decimal("600"), Decimal("400"), hunter_ref=HUNTER, tenant_ref=TENANT)
        await db_session.commit()

        await ledger.dispatch(entry)

        assert ("disburse", ESCROW, Decimal("600.00"), HUNTER) in gateway.calls
        assert ("refund", ESCROW, Decimal("400.00"), TENANT) in gateway.calls

    async def test_gateway_failure_is_recorded_not_raised(self, ledger, db_session, gateway):
        await _held(ledger, db_session)
        entry = await ledger.refund(ESCROW, TENANT)
        await db_session.commit()
        gateway.failing = True

        assert await ledger.dispatch(entry) is False
        assert entry.gateway_status == GatewayStatus.FAILED.value
        assert "gateway unavailable" in entry.gateway_error
        # State stays settled regardless of delivery
        assert await ledger.is_settled(ESCROW)

    async def test_dispatch_pending_sends_hold(self, ledger, db_session, gateway):
        await _held(ledger, db_session)

        assert await ledger.dispatch_pending(ESCROW) == 1
        assert gateway.calls == [("hold", ESCROW, Decimal("1000.00"), TENANT)]
        assert await ledger.dispatch_pending(ESCROW) == 0
