"""Tests for the ledger stores — proves both backends honour the same contract and guards."""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from marketledger.config import CommissionDefaults, LedgerConfig
from marketledger.errors import (
    ConcurrencyConflict,
    DuplicateAllocation,
    DuplicateRefund,
    RecordNotFound,
)
from marketledger.finance.escrow import EscrowAllocator
from marketledger.finance.payouts import PayoutAggregator, PayoutExecutor
from marketledger.finance.rates import CommissionRateBook
from marketledger.finance.refunds import RefundAdjuster
from marketledger.finance.settlement import SettlementBuilder, month_period
from marketledger.models.commission import (
    CommissionRate,
    CommissionSource,
    CommissionTransactionType,
    RateEntry,
)
from marketledger.models.escrow import (
    EscrowStatus,
    OrderLine,
    PaymentConfirmation,
    PaymentStatus,
    SubOrder,
)
from marketledger.models.payout import PayoutFrequency, PayoutStatus
from marketledger.models.settlement import SettlementAdjustmentType, SettlementStatus
from marketledger.persistence.sql import SqlLedgerStore
from marketledger.persistence.store import InMemoryLedgerStore, LedgerStore
from marketledger.rails import ManualTransferRail, PayoutRailRegistry


def _now() -> datetime:
    return datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


MARCH = month_period(2026, 3)


@pytest.fixture(params=["memory", "sqlite"])
def store(request) -> LedgerStore:
    if request.param == "memory":
        return InMemoryLedgerStore()
    sql_store = SqlLedgerStore.from_url("sqlite://")
    sql_store.create_schema()
    return sql_store


@pytest.fixture
def allocator(store: LedgerStore) -> EscrowAllocator:
    book = CommissionRateBook()
    book.publish_global(
        CommissionRate(Decimal("10"), Decimal("0.50")),
        datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    return EscrowAllocator(store, book, LedgerConfig())


def _allocate(allocator: EscrowAllocator, gross: str = "100.00", n: int = 1) -> str:
    payment = PaymentConfirmation(
        payment_id=f"pay_{n}",
        order_id=f"order_{n}",
        amount=Decimal(gross),
        currency="USD",
        status=PaymentStatus.CAPTURED,
    )
    sub = SubOrder(
        sub_order_id=f"so_{n}",
        order_id=f"order_{n}",
        store_id="store_a",
        ordered_at=_now() - timedelta(days=9),
        lines=[OrderLine(f"line_{n}", "books", Decimal(gross))],
        delivered_at=_now() - timedelta(days=8),
    )
    return allocator.allocate(payment, [sub], now=_now() - timedelta(days=9))[0].escrow_id


class TestStoreContract:
    def test_implements_protocol(self, store: LedgerStore) -> None:
        assert isinstance(store, LedgerStore)

    def test_escrow_round_trip(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        escrow_id = _allocate(allocator)
        escrow = store.get_escrow(escrow_id)
        assert escrow.gross_amount == Decimal("100.00")
        assert escrow.commission_amount == Decimal("10.50")
        assert escrow.net_amount == Decimal("89.50")
        assert escrow.status == EscrowStatus.HELD
        assert escrow.eligible_at == _now() - timedelta(days=1)
        assert escrow.eligible_at.tzinfo is not None
        assert escrow.version == 0
        assert [e.escrow_id for e in store.escrows_for_payment("pay_1")] == [escrow_id]
        assert store.store_ids() == ["store_a"]

    def test_commission_transaction_round_trip(
        self, store: LedgerStore, allocator: EscrowAllocator,
    ) -> None:
        escrow_id = _allocate(allocator)
        [tx] = store.commission_transactions(store_id="store_a")
        assert tx.escrow_id == escrow_id
        assert tx.transaction_type == CommissionTransactionType.INITIAL
        assert tx.percentage == Decimal("10")
        assert tx.commission_amount == Decimal("10.50")
        assert tx.created_at == _now() - timedelta(days=9)

    def test_unknown_records(self, store: LedgerStore) -> None:
        with pytest.raises(RecordNotFound):
            store.get_escrow("escrow_missing")
        with pytest.raises(RecordNotFound):
            store.get_payout("payout_missing")
        with pytest.raises(RecordNotFound):
            store.get_settlement("settlement_missing")
        assert store.get_refund("rr_missing") is None
        assert store.get_schedule("store_missing") is None

    def test_halted_payment(self, store: LedgerStore) -> None:
        assert not store.is_payment_halted("pay_1")
        store.halt_payment("pay_1", "mismatch")
        store.halt_payment("pay_1", "mismatch again")
        assert store.is_payment_halted("pay_1")

    def test_schedule_round_trip(self, store: LedgerStore) -> None:
        aggregator = PayoutAggregator(store, LedgerConfig())
        saved = aggregator.set_schedule(
            "store_a", PayoutFrequency.MONTHLY, minimum_threshold="25.00",
            day_of_month=15, today=_now().date(),
        )
        loaded = store.get_schedule("store_a")
        assert loaded == saved
        assert loaded.next_payout_date == date(2026, 3, 15)
        assert store.schedules() == [saved]


class TestStoreGuards:
    def test_duplicate_allocation(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        _allocate(allocator)
        escrows = store.escrows_for_payment("pay_1")
        with pytest.raises(DuplicateAllocation):
            store.add_escrows("pay_1", escrows, [])

    def test_stale_escrow_write(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        escrow_id = _allocate(allocator)
        first = store.get_escrow(escrow_id)
        second = store.get_escrow(escrow_id)
        first.eligible_at = _now()
        store.save_escrow(first)
        assert first.version == 1
        second.eligible_at = _now() + timedelta(days=1)
        with pytest.raises(ConcurrencyConflict, match="modified concurrently"):
            store.save_escrow(second)
        assert store.get_escrow(escrow_id).eligible_at == _now()

    def test_duplicate_refund(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        escrow_id = _allocate(allocator)
        adjuster = RefundAdjuster(store)
        adjuster.apply_refund(escrow_id, "10.00", "rr_1", now=_now())
        with pytest.raises(DuplicateRefund):
            adjuster.apply_refund(escrow_id, "10.00", "rr_1", now=_now())

    def test_double_claim(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        _allocate(allocator)
        payout = PayoutAggregator(store, LedgerConfig()).aggregate_eligible(
            "store_a", as_of=_now(),
        )
        assert payout is not None
        payout.payout_id = "payout_rival"
        payout.payout_number = "PO-RIVAL"
        with pytest.raises(ConcurrencyConflict):
            store.claim_escrows(payout)
        with pytest.raises(RecordNotFound):
            store.get_payout("payout_rival")

    def test_stale_payout_write(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        _allocate(allocator)
        payout = PayoutAggregator(store, LedgerConfig()).aggregate_eligible(
            "store_a", as_of=_now(),
        )
        first = store.get_payout(payout.payout_id)
        second = store.get_payout(payout.payout_id)
        first.transition_to(PayoutStatus.PROCESSING)
        store.save_payout(first)
        second.transition_to(PayoutStatus.PROCESSING)
        with pytest.raises(ConcurrencyConflict):
            store.save_payout(second)

    def test_stale_settlement_replace(self, store: LedgerStore) -> None:
        builder = SettlementBuilder(store, LedgerConfig())
        first = builder.build("store_a", *MARCH, now=_now())
        second = builder.build("store_a", *MARCH, now=_now())
        second.settlement_id = "settlement_stale"
        with pytest.raises(ConcurrencyConflict, match="regenerated concurrently"):
            store.replace_current_settlement(second, expected=first)
        current = store.current_settlement("store_a", *MARCH)
        assert current is not None
        assert current.version == 2

    def test_stale_finalize_after_rebuild(self, store: LedgerStore) -> None:
        builder = SettlementBuilder(store, LedgerConfig())
        first = builder.build("store_a", *MARCH, now=_now())
        stale = store.get_settlement(first.settlement_id)
        builder.build("store_a", *MARCH, now=_now())

        stale.transition_to(SettlementStatus.FINALIZED)
        stale.finalized_at = _now()
        with pytest.raises(ConcurrencyConflict, match="modified concurrently"):
            store.save_settlement(stale, expected_status=SettlementStatus.DRAFT)

        reloaded = store.get_settlement(first.settlement_id)
        assert reloaded.status == SettlementStatus.SUPERSEDED
        assert reloaded.is_current_version is False
        current = [s for s in store.settlements_for_store("store_a") if s.is_current_version]
        assert len(current) == 1
        assert current[0].version == 2
        assert current[0].status == SettlementStatus.DRAFT

    def test_finalize_wrong_expected_status(self, store: LedgerStore) -> None:
        builder = SettlementBuilder(store, LedgerConfig())
        draft = builder.build("store_a", *MARCH, now=_now())
        builder.finalize(draft.settlement_id, now=_now())
        stale = store.get_settlement(draft.settlement_id)
        with pytest.raises(ConcurrencyConflict, match="expected draft, found finalized"):
            store.save_settlement(stale, expected_status=SettlementStatus.DRAFT)

    def test_save_unknown_settlement(self, store: LedgerStore) -> None:
        builder = SettlementBuilder(store, LedgerConfig())
        draft = builder.build("store_a", *MARCH, now=_now())
        draft.settlement_id = "settlement_missing"
        with pytest.raises(RecordNotFound):
            store.save_settlement(draft, expected_status=SettlementStatus.DRAFT)


class TestEndToEnd:
    def test_full_cycle(self, store: LedgerStore, allocator: EscrowAllocator) -> None:
        config = LedgerConfig()
        escrow_id = _allocate(allocator)
        _allocate(allocator, gross="50.00", n=2)
        RefundAdjuster(store).apply_refund(escrow_id, "40.00", "rr_1", now=_now())

        rails = PayoutRailRegistry()
        rails.register_rail(ManualTransferRail())
        payout = PayoutAggregator(store, config).aggregate_eligible("store_a", as_of=_now())
        assert payout is not None
        assert payout.amount == Decimal("98.20")
        paid = PayoutExecutor(store, rails, config).execute(payout.payout_id, now=_now())
        assert paid.status == PayoutStatus.PAID
        assert store.get_escrow(escrow_id).status == EscrowStatus.RELEASED
        assert store.get_payout(payout.payout_id).completed_at == _now()

        builder = SettlementBuilder(store, config)
        builder.add_adjustment(
            "store_a", *MARCH, SettlementAdjustmentType.FEE, "2.00", "Listing fee", now=_now(),
        )
        settlement = builder.build("store_a", *MARCH, now=_now())
        assert settlement.gross_sales == Decimal("150.00")
        assert settlement.refunds == Decimal("40.00")
        assert settlement.commission == Decimal("11.80")
        assert settlement.adjustments == Decimal("-2.00")
        assert settlement.net_amount == Decimal("96.20")
        assert settlement.total_payouts == Decimal("98.20")
        assert settlement.reconciles()

        loaded = store.get_settlement(settlement.settlement_id)
        assert loaded.net_amount == settlement.net_amount
        assert len(loaded.items) == 2
        assert loaded.period_end == MARCH[1]

        finalized = builder.finalize(settlement.settlement_id, now=_now())
        assert store.get_settlement(finalized.settlement_id).status == SettlementStatus.FINALIZED


class _FailingRateStore(InMemoryLedgerStore):
    def save_rate_entry(self, entry: RateEntry) -> None:
        raise OSError("database unavailable")


def _defaults() -> CommissionDefaults:
    return CommissionDefaults(
        effective_from=datetime(2026, 1, 1, tzinfo=timezone.utc),
        global_rate=CommissionRate(Decimal("10"), Decimal("0.50")),
        categories={"handmade": CommissionRate(Decimal("12"))},
    )


class TestRatePersistence:
    def test_seeded_once(self, store: LedgerStore) -> None:
        book = CommissionRateBook.load(store, _defaults())
        assert book.revision == 2
        assert len(store.rate_entries()) == 2

        reloaded = CommissionRateBook.load(store, _defaults())
        assert reloaded.revision == 2
        assert len(reloaded.history(CommissionSource.GLOBAL)) == 1
        assert len(store.rate_entries()) == 2

    def test_published_rates_survive_reload(self, store: LedgerStore) -> None:
        book = CommissionRateBook.load(store, _defaults())
        book.publish_global(CommissionRate(Decimal("9")), _now() - timedelta(days=1))
        book.set_seller_override("store_a", CommissionRate(Decimal("5")), _now() - timedelta(days=1))
        book.deactivate_category_override("handmade", _now() - timedelta(hours=1))
        assert book.revision == 5

        reloaded = CommissionRateBook.load(store, _defaults())
        assert reloaded.revision == 5
        assert reloaded.history(CommissionSource.GLOBAL) == book.history(CommissionSource.GLOBAL)
        [first, second] = reloaded.history(CommissionSource.GLOBAL)
        assert first.effective_to == second.effective_from
        assert second.rate.percentage == Decimal("9")
        [handmade] = reloaded.history(CommissionSource.CATEGORY, "handmade")
        assert handmade.effective_to == _now() - timedelta(hours=1)

        snapshot = reloaded.snapshot(_now())
        assert snapshot.revision == 5
        assert snapshot.sellers["store_a"].rate.percentage == Decimal("5")
        assert "handmade" not in snapshot.categories

    def test_failed_write_leaves_book_unchanged(self) -> None:
        book = CommissionRateBook(_FailingRateStore())
        with pytest.raises(OSError, match="database unavailable"):
            book.publish_global(CommissionRate(Decimal("10")), _now())
        assert book.revision == 0
        assert book.history(CommissionSource.GLOBAL) == []

    def test_unbound_book_keeps_rates_in_memory(self, store: LedgerStore) -> None:
        book = CommissionRateBook.from_defaults(_defaults())
        assert book.revision == 2
        assert store.rate_entries() == []
