"""Tests for the ledger service facade — proves results, audit events and failure reporting."""

import pytest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import List, Set

from marketledger.config import LedgerConfig
from marketledger.finance.settlement import month_period
from marketledger.models.commission import CommissionSource
from marketledger.models.escrow import (
    EscrowStatus,
    OrderLine,
    PaymentConfirmation,
    PaymentStatus,
    SubOrder,
)
from marketledger.errors import ConcurrencyConflict
from marketledger.models.payout import Payout, PayoutFrequency, PayoutStatus, TransferResult
from marketledger.models.settlement import SettlementAdjustmentType
from marketledger.persistence.audit_log import AuditEvent, AuditEventKind, AuditLog
from marketledger.persistence.store import InMemoryLedgerStore
from marketledger.rails import PayoutRailRegistry
from marketledger.service import LedgerService

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
MARCH = month_period(2026, 3)


class _Clock:
    """Settable clock, Tuesday 2026-03-10 12:00 UTC by default."""

    def __init__(self) -> None:
        self.now = datetime(2026, 3, 10, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class _DecliningRail:
    rail_id = "declining"

    def __init__(self) -> None:
        self.calls = 0

    def transfer(self, payout: Payout) -> TransferResult:
        self.calls += 1
        return TransferResult(success=False, error_message="account closed")


class _BrokenAuditLog(AuditLog):
    def append(self, event: AuditEvent) -> None:
        raise OSError("disk full")


class _ConflictingStore(InMemoryLedgerStore):
    def __init__(self) -> None:
        super().__init__()
        self.conflict_on: Set[str] = set()

    def save_payout(self, payout: Payout) -> None:
        if payout.payout_id in self.conflict_on:
            raise ConcurrencyConflict(f"Payout {payout.payout_id} was modified concurrently")
        super().save_payout(payout)


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def service(clock: _Clock) -> LedgerService:
    config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
    return LedgerService(InMemoryLedgerStore(), config, clock=clock)


def _payment(n: int = 1, amount: str = "100.00") -> PaymentConfirmation:
    return PaymentConfirmation(
        payment_id=f"pay_{n}",
        order_id=f"order_{n}",
        amount=Decimal(amount),
        currency="USD",
        status=PaymentStatus.CAPTURED,
    )


def _sub_order(
    clock: _Clock,
    n: int = 1,
    amount: str = "100.00",
    category: str = "books",
    store_id: str = "store_a",
) -> SubOrder:
    return SubOrder(
        sub_order_id=f"so_{n}",
        order_id=f"order_{n}",
        store_id=store_id,
        ordered_at=clock.now,
        lines=[OrderLine(f"line_{n}", category, Decimal(amount))],
        delivered_at=clock.now - timedelta(days=8),
    )


def _sell(service: LedgerService, clock: _Clock, n: int = 1, amount: str = "100.00") -> str:
    result = service.allocate_payment(_payment(n, amount), [_sub_order(clock, n, amount)])
    assert result.success, result.errors
    return result.data["escrows"][0]["escrow_id"]


class TestCommission:
    def test_quote_uses_config_rates(self, service: LedgerService) -> None:
        result = service.quote_commission("store_a", "books", "100.00")
        assert result.success
        assert result.data["source"] == "global"
        assert result.data["commission_amount"] == "10.50"
        assert result.data["net_amount"] == "89.50"

    def test_quote_category_override(self, service: LedgerService) -> None:
        result = service.quote_commission("store_a", "electronics", "100.00")
        assert result.data["source"] == "category"
        assert result.data["commission_amount"] == "8.00"

    def test_publish_seller_override(self, service: LedgerService, clock: _Clock) -> None:
        result = service.publish_commission_rate(
            CommissionSource.SELLER, "5", key="store_a", actor_id="admin_1",
        )
        assert result.success
        assert result.data["version"] == 1
        assert result.data["revision"] == 4
        quote = service.quote_commission("store_a", "books", "100.00")
        assert quote.data["source"] == "seller"
        assert quote.data["commission_amount"] == "5.00"
        [event] = service.audit_log.events(AuditEventKind.COMMISSION_CONFIG_PUBLISHED)
        assert event.actor_id == "admin_1"
        assert event.payload["percentage"] == "5"

    def test_override_needs_key(self, service: LedgerService) -> None:
        result = service.publish_commission_rate(CommissionSource.CATEGORY, "5")
        assert not result.success
        assert "needs a key" in result.errors[0]
        assert service.audit_log.count == 0

    def test_invalid_rate_rejected(self, service: LedgerService) -> None:
        result = service.publish_commission_rate(CommissionSource.GLOBAL, "150")
        assert not result.success

    def test_quote_without_rates_fails(self, clock: _Clock) -> None:
        service = LedgerService(InMemoryLedgerStore(), LedgerConfig(), clock=clock)
        result = service.quote_commission("store_a", None, "100.00")
        assert not result.success


class TestAllocation:
    def test_allocate(self, service: LedgerService, clock: _Clock) -> None:
        result = service.allocate_payment(_payment(), [_sub_order(clock)])
        assert result.success
        assert result.data["duplicate"] is False
        [escrow] = result.data["escrows"]
        assert escrow["commission_amount"] == "10.50"
        assert escrow["status"] == "held"
        [event] = service.audit_log.events(AuditEventKind.ESCROW_ALLOCATED)
        assert event.event_id == "EVT-00000001"
        assert event.payload["escrow_ids"] == [escrow["escrow_id"]]

    def test_duplicate_is_idempotent(self, service: LedgerService, clock: _Clock) -> None:
        first = service.allocate_payment(_payment(), [_sub_order(clock)])
        second = service.allocate_payment(_payment(), [_sub_order(clock)])
        assert second.success
        assert second.data["duplicate"] is True
        assert second.data["escrows"][0]["escrow_id"] == first.data["escrows"][0]["escrow_id"]
        assert len(service.audit_log.events(AuditEventKind.ESCROW_ALLOCATED)) == 1

    def test_mismatch_halts(self, service: LedgerService, clock: _Clock) -> None:
        result = service.allocate_payment(_payment(), [_sub_order(clock, amount="90.00")])
        assert not result.success
        [event] = service.audit_log.events(AuditEventKind.ALLOCATION_HALTED)
        assert event.payload["payment_id"] == "pay_1"

        retry = service.allocate_payment(_payment(), [_sub_order(clock)])
        assert not retry.success
        assert service.audit_log.events(AuditEventKind.ESCROW_ALLOCATED) == []

    def test_uncaptured_payment(self, service: LedgerService, clock: _Clock) -> None:
        payment = replace(_payment(), status=PaymentStatus.PENDING)
        result = service.allocate_payment(payment, [_sub_order(clock)])
        assert not result.success
        assert "not captured" in result.errors[0]

    def test_dispute_round_trip(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        assert service.open_dispute(escrow_id, actor_id="support_1").data["status"] == "in_dispute"
        assert service.resolve_dispute(escrow_id).data["status"] == "held"
        kinds = [e.kind for e in service.audit_log.events()]
        assert AuditEventKind.ESCROW_DISPUTED in kinds
        assert AuditEventKind.DISPUTE_RESOLVED in kinds

    def test_mark_delivered(self, service: LedgerService, clock: _Clock) -> None:
        sub = replace(_sub_order(clock), delivered_at=None)
        result = service.allocate_payment(_payment(), [sub])
        escrow_id = result.data["escrows"][0]["escrow_id"]
        delivered = service.mark_delivered(escrow_id)
        assert delivered.success
        assert delivered.data["eligible_at"] == (clock.now + timedelta(days=7)).isoformat()

    def test_unknown_escrow(self, service: LedgerService) -> None:
        assert service.get_escrow("escrow_missing") is None
        assert not service.open_dispute("escrow_missing").success


class TestRefunds:
    def test_apply_refund(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        result = service.apply_refund(escrow_id, "40.00", "rr_1", reason="damaged")
        assert result.success
        assert result.data["commission_reversal"] == "4.20"
        assert result.data["payable_amount"] == "53.70"
        assert result.data["status"] == "partially_refunded"
        assert result.data["after_payout"] is False
        [event] = service.audit_log.events(AuditEventKind.REFUND_APPLIED)
        assert event.payload["refund_request_id"] == "rr_1"

    def test_refund_rejected(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        result = service.apply_refund(escrow_id, "100.01", "rr_1")
        assert not result.success
        assert service.audit_log.events(AuditEventKind.REFUND_APPLIED) == []

    def test_float_refund_rejected(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        assert not service.apply_refund(escrow_id, 40.0, "rr_1").success


class TestPayouts:
    def test_payout_cycle(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        _sell(service, clock, n=2, amount="50.00")
        result = service.run_payout_cycle()
        assert result.success
        [payout] = result.data["payouts"]
        assert payout["amount"] == "134.00"
        assert payout["status"] == "scheduled"
        assert len(service.audit_log.events(AuditEventKind.ESCROW_ELIGIBLE)) == 2
        assert len(service.audit_log.events(AuditEventKind.PAYOUT_SCHEDULED)) == 1

    def test_below_threshold(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock, amount="40.00")
        result = service.aggregate_payout("store_a")
        assert result.success
        assert result.data["payout"] is None

    def test_process_due(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        service.run_payout_cycle()
        result = service.process_due_payouts()
        assert result.success
        assert result.data["paid"] == 1
        assert service.get_escrow(escrow_id).status == EscrowStatus.RELEASED
        assert len(service.audit_log.events(AuditEventKind.PAYOUT_PAID)) == 1

    def test_execute_payout(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]
        result = service.execute_payout(payout_id)
        assert result.success
        assert result.data["external_reference"].startswith("MAN-")
        assert not service.execute_payout(payout_id).success

    def test_retries_exhausted(self, clock: _Clock) -> None:
        exhausted: List[Payout] = []
        rail = _DecliningRail()
        rails = PayoutRailRegistry()
        rails.register_rail(rail)
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(
            InMemoryLedgerStore(), config, rails=rails, clock=clock,
            on_retries_exhausted=exhausted.append,
        )
        _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]

        first = service.execute_payout(payout_id)
        assert not first.success
        assert first.data["retry_count"] == 1
        clock.now += timedelta(hours=24)
        service.process_due_payouts()
        clock.now += timedelta(hours=48)
        result = service.process_due_payouts()
        assert result.data["failed"] == 1

        assert rail.calls == 3
        assert [p.payout_id for p in exhausted] == [payout_id]
        assert len(service.audit_log.events(AuditEventKind.PAYOUT_FAILED)) == 3
        [event] = service.audit_log.events(AuditEventKind.PAYOUT_RETRIES_EXHAUSTED)
        assert event.payload["retry_count"] == 3

        released = service.release_exhausted_payout(payout_id, actor_id="finance_1")
        assert released.success
        assert service.aggregate_payout("store_a").data["payout"] is not None

    def test_refund_after_claim_lowers_payout(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        _sell(service, clock, n=2)
        [payout] = service.run_payout_cycle().data["payouts"]
        assert payout["amount"] == "179.00"

        refund = service.apply_refund(escrow_id, "40.00", "rr_1")
        assert refund.data["after_payout"] is False
        result = service.process_due_payouts()

        [paid] = result.data["processed"]
        assert paid["status"] == "paid"
        assert paid["amount"] == "143.20"
        [event] = service.audit_log.events(AuditEventKind.PAYOUT_ADJUSTED)
        assert event.payload["previous_amount"] == "179.00"
        assert event.payload["amount"] == "143.20"
        [paid_event] = service.audit_log.events(AuditEventKind.PAYOUT_PAID)
        assert paid_event.payload["amount"] == "143.20"

    def test_fully_refunded_payout_cancelled(self, service: LedgerService, clock: _Clock) -> None:
        escrow_id = _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]
        service.apply_refund(escrow_id, "100.00", "rr_1")

        result = service.execute_payout(payout_id)
        assert result.success
        assert result.data["status"] == "cancelled"
        assert result.data["amount"] == "0.00"
        [event] = service.audit_log.events(AuditEventKind.PAYOUT_CANCELLED)
        assert event.payload["payout_id"] == payout_id
        [adjusted] = service.audit_log.events(AuditEventKind.PAYOUT_ADJUSTED)
        assert adjusted.payload["dropped_escrow_ids"] == [escrow_id]
        assert service.audit_log.events(AuditEventKind.PAYOUT_PAID) == []

    def test_process_due_records_paid_past_a_conflict(self, clock: _Clock) -> None:
        store = _ConflictingStore()
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(store, config, clock=clock)
        _sell(service, clock)
        service.allocate_payment(
            _payment(2), [_sub_order(clock, n=2, store_id="store_b")],
        )
        stale, fresh = service.run_payout_cycle().data["payouts"]
        store.conflict_on.add(stale["payout_id"])

        result = service.process_due_payouts()

        assert not result.success
        assert result.errors == [
            f"{stale['payout_id']}: Payout {stale['payout_id']} was modified concurrently",
        ]
        assert result.data["paid"] == 1
        assert [p["payout_id"] for p in result.data["processed"]] == [fresh["payout_id"]]
        [event] = service.audit_log.events(AuditEventKind.PAYOUT_PAID)
        assert event.payload["payout_id"] == fresh["payout_id"]

    def test_release_requires_exhaustion(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]
        assert not service.release_exhausted_payout(payout_id, actor_id="finance_1").success

    def test_schedule_and_balance(self, service: LedgerService, clock: _Clock) -> None:
        result = service.set_payout_schedule(
            "store_a", PayoutFrequency.WEEKLY, minimum_threshold="20.00", day_of_week=4,
        )
        assert result.success
        assert result.data["next_payout_date"] == "2026-03-13"
        _sell(service, clock, amount="30.00")
        balance = service.balance_summary("store_a")
        assert balance.data["available"] == "26.50"
        assert balance.data["meets_threshold"] is True

    def test_invalid_schedule(self, service: LedgerService) -> None:
        result = service.set_payout_schedule("store_a", PayoutFrequency.WEEKLY, day_of_week=9)
        assert not result.success


class TestSettlements:
    def test_build_and_finalize(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        built = service.build_settlement("store_a", *MARCH)
        assert built.success
        assert built.data["net_amount"] == "89.50"
        assert built.data["version"] == 1

        rebuilt = service.build_settlement("store_a", *MARCH)
        assert rebuilt.data["previous_settlement_id"] == built.data["settlement_id"]
        [superseded] = service.audit_log.events(AuditEventKind.SETTLEMENT_SUPERSEDED)
        assert superseded.payload["settlement_id"] == built.data["settlement_id"]

        finalized = service.finalize_settlement(rebuilt.data["settlement_id"], actor_id="fin_1")
        assert finalized.success
        assert finalized.data["status"] == "finalized"
        assert not service.build_settlement("store_a", *MARCH).success

    def test_adjustment_rebuilds(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        result = service.add_settlement_adjustment(
            "store_a", *MARCH, SettlementAdjustmentType.CREDIT, "5.00", "Launch credit",
            actor_id="fin_1",
        )
        assert result.success
        assert result.data["settlement"]["net_amount"] == "94.50"
        assert len(service.audit_log.events(AuditEventKind.SETTLEMENT_ADJUSTMENT_ADDED)) == 1

    def test_adjustment_needs_description(self, service: LedgerService) -> None:
        result = service.add_settlement_adjustment(
            "store_a", *MARCH, SettlementAdjustmentType.FEE, "5.00", "",
        )
        assert not result.success

    def test_summary_and_monthly(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        summary = service.settlement_summary("store_a", *MARCH)
        assert summary.data["gross_sales"] == "100.00"
        assert summary.data["current_settlement_id"] is None

        monthly = service.build_monthly_settlements(2026, 3)
        assert monthly.success
        [settlement] = monthly.data["settlements"]
        assert settlement["store_id"] == "store_a"

    def test_export_csv(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        settlement_id = service.build_settlement("store_a", *MARCH).data["settlement_id"]
        result = service.export_settlement_csv(settlement_id)
        assert result.success
        assert "Net Amount,89.50" in result.data["csv"]
        assert not service.export_settlement_csv("settlement_missing").success


class TestStatusAndAudit:
    def test_status(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        status = service.status()
        assert status["stores"] == 1
        assert status["escrows"]["held"] == 1
        assert status["payouts"]["scheduled"] == 0
        assert status["commission_revision"] == 3
        assert status["audit_events"] == 1

    def test_audit_failure_is_a_warning(self, clock: _Clock) -> None:
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(
            InMemoryLedgerStore(), config, audit_log=_BrokenAuditLog(), clock=clock,
        )
        result = service.allocate_payment(_payment(), [_sub_order(clock)])
        assert result.success
        assert "disk full" in result.data["warning"]

    def test_event_ids_continue_from_log(self, tmp_path: Path, clock: _Clock) -> None:
        path = tmp_path / "audit.jsonl"
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        first = LedgerService(InMemoryLedgerStore(), config, audit_log=AuditLog(path), clock=clock)
        _sell(first, clock)
        second = LedgerService(InMemoryLedgerStore(), config, audit_log=AuditLog(path), clock=clock)
        _sell(second, clock, n=2)
        assert [e.event_id for e in AuditLog(path).events()] == ["EVT-00000001", "EVT-00000002"]

    def test_payout_audit_failures_are_warnings(self, clock: _Clock) -> None:
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(
            InMemoryLedgerStore(), config, audit_log=_BrokenAuditLog(), clock=clock,
        )
        _sell(service, clock)
        cycle = service.run_payout_cycle()
        assert cycle.success
        # escrow_eligible + payout_scheduled
        assert cycle.data["warning"].count("disk full") == 2

        result = service.process_due_payouts()
        assert result.success
        assert result.data["paid"] == 1
        assert "disk full" in result.data["warning"]

    def test_superseded_audit_failure_is_a_warning(self, clock: _Clock) -> None:
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(
            InMemoryLedgerStore(), config, audit_log=_BrokenAuditLog(), clock=clock,
        )
        service.build_settlement("store_a", *MARCH)
        rebuilt = service.build_settlement("store_a", *MARCH)
        assert rebuilt.success
        # settlement_superseded + settlement_generated
        assert rebuilt.data["warning"].count("disk full") == 2

    def test_exhausted_audit_failure_is_a_warning(self, clock: _Clock) -> None:
        rails = PayoutRailRegistry()
        rails.register_rail(_DecliningRail())
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        service = LedgerService(
            InMemoryLedgerStore(), config, rails=rails,
            audit_log=_BrokenAuditLog(), clock=clock,
        )
        _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]
        service.execute_payout(payout_id)
        clock.now += timedelta(hours=24)
        service.execute_payout(payout_id)
        clock.now += timedelta(hours=48)
        last = service.execute_payout(payout_id)
        assert last.data["retry_count"] == 3
        # payout_retries_exhausted + payout_failed
        assert last.data["warning"].count("disk full") == 2


class TestQueries:
    def test_list_payouts(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        payout_id = service.run_payout_cycle().data["payouts"][0]["payout_id"]
        clock.now += timedelta(days=7)
        _sell(service, clock, n=2)
        service.run_payout_cycle()
        service.execute_payout(payout_id)

        listed = service.list_payouts("store_a")
        assert listed.success
        assert len(listed.data["payouts"]) == 2
        assert listed.data["payouts"][1]["payout_id"] == payout_id

        [paid] = service.list_payouts("store_a", status=PayoutStatus.PAID).data["payouts"]
        assert paid["payout_id"] == payout_id
        assert service.list_payouts("store_b").data["payouts"] == []

    def test_list_settlements_hides_superseded(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        first = service.build_settlement("store_a", *MARCH).data
        second = service.build_settlement("store_a", *MARCH).data

        [current] = service.list_settlements("store_a").data["settlements"]
        assert current["settlement_id"] == second["settlement_id"]

        versions = service.list_settlements("store_a", include_superseded=True).data["settlements"]
        assert [s["settlement_id"] for s in versions] == [
            second["settlement_id"], first["settlement_id"],
        ]
        assert versions[1]["status"] == "superseded"

    def test_list_settlements_all_stores(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        service.allocate_payment(_payment(2), [_sub_order(clock, n=2, store_id="store_b")])
        service.build_monthly_settlements(2026, 3)
        listed = service.list_settlements().data["settlements"]
        assert sorted(s["store_id"] for s in listed) == ["store_a", "store_b"]


class TestInvoices:
    def test_invoice_workflow(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        _sell(service, clock, n=2, amount="50.00")
        generated = service.generate_invoice("store_a", *MARCH, actor_id="admin_1")
        assert generated.success
        invoice = generated.data["invoice"]
        assert invoice["invoice_number"] == "INV-2026-000001"
        assert invoice["subtotal"] == "16.00"
        assert invoice["total_amount"] == "16.00"
        assert invoice["line_count"] == 2
        assert invoice["status"] == "draft"

        invoice_id = invoice["invoice_id"]
        assert service.issue_invoice(invoice_id).data["status"] == "issued"
        assert service.mark_invoice_paid(invoice_id).data["status"] == "paid"
        assert service.get_invoice(invoice_id).paid_at == clock.now
        kinds = [e.kind for e in service.audit_log.events()]
        assert kinds[-3:] == [
            AuditEventKind.INVOICE_GENERATED,
            AuditEventKind.INVOICE_ISSUED,
            AuditEventKind.INVOICE_PAID,
        ]
        [event] = service.audit_log.events(AuditEventKind.INVOICE_GENERATED)
        assert event.actor_id == "admin_1"

    def test_regenerate_returns_existing(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        first = service.generate_invoice("store_a", *MARCH).data["invoice"]
        again = service.generate_invoice("store_a", *MARCH)
        assert again.success
        assert again.data["existing"] is True
        assert again.data["invoice"]["invoice_id"] == first["invoice_id"]
        assert len(service.audit_log.events(AuditEventKind.INVOICE_GENERATED)) == 1

    def test_nothing_to_invoice(self, service: LedgerService) -> None:
        result = service.generate_invoice("store_a", *MARCH)
        assert result.success
        assert result.data["invoice"] is None
        assert service.audit_log.count == 0

    def test_credit_note_frees_period(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        original = service.generate_invoice("store_a", *MARCH).data["invoice"]
        credited = service.create_credit_note(original["invoice_id"], "wrong rate", actor_id="admin_1")
        assert credited.success
        assert credited.data["is_credit_note"]
        assert credited.data["total_amount"] == "-10.50"
        assert credited.data["corrects_invoice_id"] == original["invoice_id"]
        assert service.get_invoice(original["invoice_id"]).status.value == "superseded"
        [event] = service.audit_log.events(AuditEventKind.CREDIT_NOTE_ISSUED)
        assert event.payload["reason"] == "wrong rate"

        reissued = service.generate_invoice("store_a", *MARCH).data["invoice"]
        assert reissued["invoice_number"] == "INV-2026-000003"
        numbers = [i["invoice_number"] for i in service.list_invoices("store_a").data["invoices"]]
        assert sorted(numbers) == ["INV-2026-000002", "INV-2026-000003"]
        everything = service.list_invoices("store_a", include_superseded=True).data["invoices"]
        assert len(everything) == 3

    def test_invalid_transition_is_an_error(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        invoice_id = service.generate_invoice("store_a", *MARCH).data["invoice"]["invoice_id"]
        result = service.mark_invoice_paid(invoice_id)
        assert not result.success
        assert "draft → paid" in result.errors[0]
        assert service.audit_log.events(AuditEventKind.INVOICE_PAID) == []
        assert not service.cancel_invoice("invoice_missing").success
        assert not service.create_credit_note(invoice_id, "  ").success

    def test_monthly_and_export(self, service: LedgerService, clock: _Clock) -> None:
        _sell(service, clock)
        service.allocate_payment(_payment(2), [_sub_order(clock, n=2, store_id="store_b")])
        result = service.generate_monthly_invoices(2026, 3)
        assert result.success
        assert sorted(i["store_id"] for i in result.data["invoices"]) == ["store_a", "store_b"]
        assert result.data["failures"] == {}
        assert service.generate_monthly_invoices(2026, 3).data["invoices"] == []

        invoice_id = result.data["invoices"][0]["invoice_id"]
        exported = service.export_invoice_csv(invoice_id)
        assert exported.success
        assert "Total,10.50" in exported.data["csv"]
        assert not service.export_invoice_csv("invoice_missing").success


class TestRatePersistence:
    def test_published_rate_survives_restart(self, clock: _Clock) -> None:
        store = InMemoryLedgerStore()
        config = LedgerConfig.from_config_dir(CONFIG_DIR, environ={})
        first = LedgerService(store, config, clock=clock)
        published = first.publish_commission_rate(CommissionSource.SELLER, "5", key="store_a")
        assert published.data["revision"] == 4

        second = LedgerService(store, config, clock=clock)
        assert second.rate_book.revision == 4
        assert second.status()["commission_revision"] == 4
        quote = second.quote_commission("store_a", "books", "100.00")
        assert quote.data["source"] == "seller"
        assert quote.data["commission_amount"] == "5.00"
        assert len(second.rate_book.history(CommissionSource.GLOBAL)) == 1
