"""Tests for refund adjustment — proves commission reversal is proportional and exact."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Tuple

from marketledger.config import LedgerConfig
from marketledger.errors import DuplicateRefund, RecordNotFound, RefundExceedsAvailable
from marketledger.finance.escrow import EscrowAllocator
from marketledger.finance.payouts import PayoutAggregator, PayoutExecutor
from marketledger.finance.rates import CommissionRateBook
from marketledger.finance.refunds import RefundAdjuster
from marketledger.models.commission import CommissionRate, CommissionTransactionType
from marketledger.models.escrow import (
    EscrowStatus,
    OrderLine,
    PaymentConfirmation,
    PaymentStatus,
    SubOrder,
)
from marketledger.persistence.store import InMemoryLedgerStore
from marketledger.rails import ManualTransferRail, PayoutRailRegistry


def _now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def _setup(gross: str = "100.00") -> Tuple[InMemoryLedgerStore, EscrowAllocator, str]:
    """Allocate one escrow of the given gross at 10% + 0.50."""
    book = CommissionRateBook()
    book.publish_global(
        CommissionRate(Decimal("10"), Decimal("0.50")),
        datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    store = InMemoryLedgerStore()
    allocator = EscrowAllocator(store, book, LedgerConfig())
    payment = PaymentConfirmation(
        payment_id="pay_1",
        order_id="order_1",
        amount=Decimal(gross),
        currency="USD",
        status=PaymentStatus.CAPTURED,
    )
    sub = SubOrder(
        sub_order_id="so_1",
        order_id="order_1",
        store_id="store_a",
        ordered_at=_now() - timedelta(days=12),
        lines=[OrderLine("line_1", "books", Decimal(gross))],
        delivered_at=_now() - timedelta(days=10),
    )
    escrow = allocator.allocate(payment, [sub], now=_now() - timedelta(days=12))[0]
    return store, allocator, escrow.escrow_id


class TestPartialRefunds:
    def test_proportional_reversal(self) -> None:
        store, _, escrow_id = _setup()
        outcome = RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        assert outcome.refund.commission_reversal == Decimal("4.20")
        escrow = store.get_escrow(escrow_id)
        assert escrow.refunded_amount == Decimal("40.00")
        assert escrow.remaining_commission == Decimal("6.30")
        assert escrow.payable_amount == Decimal("53.70")
        assert escrow.status == EscrowStatus.PARTIALLY_REFUNDED
        assert not outcome.refund.after_payout

    def test_half_refund_reverses_half(self) -> None:
        store, _, escrow_id = _setup()
        outcome = RefundAdjuster(store).apply_refund(escrow_id, "50.00", "rr_1", now=_now())
        assert outcome.refund.commission_reversal == Decimal("5.25")

    def test_adjustment_transaction(self) -> None:
        store, _, escrow_id = _setup()
        outcome = RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        adjustment = outcome.commission_adjustment
        assert adjustment.transaction_type == CommissionTransactionType.REFUND_ADJUSTMENT
        assert adjustment.commission_amount == Decimal("-4.20")
        assert adjustment.gross_amount == Decimal("-40.00")
        assert adjustment.percentage == Decimal("10")
        assert adjustment.fixed_amount == Decimal("0.00")
        assert adjustment.refund_request_id == "rr_1"
        txs = store.commission_transactions(escrow_id=escrow_id)
        assert sum(tx.commission_amount for tx in txs) == Decimal("6.30")

    def test_original_figures_untouched(self) -> None:
        store, _, escrow_id = _setup()
        RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        escrow = store.get_escrow(escrow_id)
        assert escrow.gross_amount == Decimal("100.00")
        assert escrow.commission_amount == Decimal("10.50")
        assert escrow.net_amount == Decimal("89.50")

    def test_refund_recorded(self) -> None:
        store, _, escrow_id = _setup()
        RefundAdjuster(store).apply_refund(
            escrow_id, "40.00", "rr_1", now=_now(), reason="damaged",
        )
        record = store.get_refund("rr_1")
        assert record is not None
        assert record.amount == Decimal("40.00")
        assert record.reason == "damaged"
        assert store.refunds_for_store("store_a") == [record]


class TestFullRefunds:
    def test_single_full_refund(self) -> None:
        store, _, escrow_id = _setup()
        outcome = RefundAdjuster(store).apply_refund(escrow_id, "100.00", "rr_1", now=_now())
        assert outcome.refund.commission_reversal == Decimal("10.50")
        escrow = store.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RETURNED_TO_BUYER
        assert escrow.returned_at == _now()
        assert escrow.remaining_commission == Decimal("0.00")
        assert escrow.payable_amount == Decimal("0.00")

    def test_split_refunds_reverse_exactly(self) -> None:
        store, _, escrow_id = _setup()
        adjuster = RefundAdjuster(store)
        reversals = [
            adjuster.apply_refund(escrow_id, amount, f"rr_{i}", now=_now())
            .refund.commission_reversal
            for i, amount in enumerate(["33.33", "33.33", "33.34"])
        ]
        assert reversals == [Decimal("3.50"), Decimal("3.50"), Decimal("3.50")]
        assert sum(reversals) == Decimal("10.50")
        assert store.get_escrow(escrow_id).status == EscrowStatus.RETURNED_TO_BUYER

    def test_last_refund_absorbs_rounding(self) -> None:
        store, _, escrow_id = _setup("10.00")
        adjuster = RefundAdjuster(store)
        # commission 1.50; thirds of 10.00 each round to 0.50
        total = Decimal("0.00")
        for i, amount in enumerate(["3.33", "3.33", "3.34"]):
            total += adjuster.apply_refund(
                escrow_id, amount, f"rr_{i}", now=_now(),
            ).refund.commission_reversal
        assert total == Decimal("1.50")


class TestRefundGuards:
    def test_duplicate_request(self) -> None:
        store, _, escrow_id = _setup()
        adjuster = RefundAdjuster(store)
        adjuster.apply_refund(escrow_id, "10.00", "rr_1", now=_now())
        with pytest.raises(DuplicateRefund, match="rr_1"):
            adjuster.apply_refund(escrow_id, "10.00", "rr_1", now=_now())
        assert store.get_escrow(escrow_id).refunded_amount == Decimal("10.00")

    def test_exceeds_gross(self) -> None:
        store, _, escrow_id = _setup()
        with pytest.raises(RefundExceedsAvailable, match="exceeds available"):
            RefundAdjuster(store).apply_refund(escrow_id, "100.01", "rr_1", now=_now())

    def test_exceeds_remaining(self) -> None:
        store, _, escrow_id = _setup()
        adjuster = RefundAdjuster(store)
        adjuster.apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        with pytest.raises(RefundExceedsAvailable):
            adjuster.apply_refund(escrow_id, "60.01", "rr_2", now=_now())
        assert store.get_escrow(escrow_id).refunded_amount == Decimal("40.00")

    def test_non_positive_amount(self) -> None:
        store, _, escrow_id = _setup()
        adjuster = RefundAdjuster(store)
        with pytest.raises(ValueError, match="positive"):
            adjuster.apply_refund(escrow_id, "0.00", "rr_1", now=_now())
        with pytest.raises(ValueError, match="positive"):
            adjuster.apply_refund(escrow_id, "-5.00", "rr_2", now=_now())

    def test_float_amount_rejected(self) -> None:
        store, _, escrow_id = _setup()
        with pytest.raises(TypeError):
            RefundAdjuster(store).apply_refund(escrow_id, 4.2, "rr_1", now=_now())

    def test_unknown_escrow(self) -> None:
        store, _, _ = _setup()
        with pytest.raises(RecordNotFound):
            RefundAdjuster(store).apply_refund("escrow_missing", "1.00", "rr_1", now=_now())

    def test_returned_escrow_has_nothing_left(self) -> None:
        store, _, escrow_id = _setup()
        adjuster = RefundAdjuster(store)
        adjuster.apply_refund(escrow_id, "100.00", "rr_1", now=_now())
        with pytest.raises(RefundExceedsAvailable):
            adjuster.apply_refund(escrow_id, "0.01", "rr_2", now=_now())


class TestRefundLifecycle:
    def test_refund_during_dispute(self) -> None:
        store, allocator, escrow_id = _setup()
        allocator.open_dispute(escrow_id)
        RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        escrow = store.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.IN_DISPUTE
        assert escrow.status_before_dispute == EscrowStatus.PARTIALLY_REFUNDED
        assert allocator.resolve_dispute(escrow_id).status == EscrowStatus.PARTIALLY_REFUNDED

    def test_full_refund_ends_dispute(self) -> None:
        store, allocator, escrow_id = _setup()
        allocator.open_dispute(escrow_id)
        RefundAdjuster(store).apply_refund(escrow_id, "100.00", "rr_1", now=_now())
        escrow = store.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RETURNED_TO_BUYER
        assert escrow.status_before_dispute is None

    def test_refund_after_payout(self) -> None:
        store, _, escrow_id = _setup()
        config = LedgerConfig()
        rails = PayoutRailRegistry()
        rails.register_rail(ManualTransferRail())
        payout = PayoutAggregator(store, config).aggregate_eligible("store_a", as_of=_now())
        assert payout is not None
        PayoutExecutor(store, rails, config).execute(payout.payout_id, now=_now())
        assert store.get_escrow(escrow_id).status == EscrowStatus.RELEASED

        outcome = RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())
        assert outcome.refund.after_payout is True
        assert outcome.refund.commission_reversal == Decimal("4.20")
        escrow = store.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.refunded_amount == Decimal("40.00")

    def test_refund_while_in_payout(self) -> None:
        store, _, escrow_id = _setup()
        config = LedgerConfig()
        payout = PayoutAggregator(store, config).aggregate_eligible("store_a", as_of=_now())
        assert payout is not None
        assert payout.amount == Decimal("89.50")

        outcome = RefundAdjuster(store).apply_refund(escrow_id, "10.00", "rr_1", now=_now())
        assert outcome.refund.after_payout is False
        assert store.get_escrow(escrow_id).status == EscrowStatus.PARTIALLY_REFUNDED

        rails = PayoutRailRegistry()
        rails.register_rail(ManualTransferRail())
        paid = PayoutExecutor(store, rails, config).execute(payout.payout_id, now=_now())
        assert paid.amount == Decimal("80.55")
        assert store.get_payout(payout.payout_id).amount == Decimal("80.55")
        escrow = store.get_escrow(escrow_id)
        assert escrow.status == EscrowStatus.RELEASED
        assert escrow.payable_amount == paid.amount
