"""Ledger service — the single entry point for callers of the ledger.

Wires the rate book, resolver, allocator, refund adjuster, payout
aggregator/executor and settlement builder over one LedgerStore, records
an audit event for every monetary mutation and returns ServiceResult
objects instead of raising for business-rule failures.

Rule violations (LedgerError, and the ValueError raised when validating
inputs) become failed results. Infrastructure failures propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from marketledger import __version__
from marketledger.config import LedgerConfig
from marketledger.errors import DuplicateAllocation, LedgerError
from marketledger.finance.escrow import EscrowAllocator
from marketledger.finance.invoices import CommissionInvoiceBuilder
from marketledger.finance.payouts import PayoutAggregator, PayoutExecutor
from marketledger.finance.rates import CommissionRateBook
from marketledger.finance.refunds import RefundAdjuster
from marketledger.finance.resolver import CommissionResolver
from marketledger.finance.settlement import SettlementBuilder
from marketledger.models.commission import CommissionRate, CommissionSource, MultiCategoryPolicy
from marketledger.models.escrow import EscrowStatus, EscrowTransaction, PaymentConfirmation, SubOrder
from marketledger.models.invoice import CommissionInvoice
from marketledger.models.money import MoneyLike, to_money
from marketledger.models.payout import Payout, PayoutFrequency, PayoutStatus
from marketledger.models.settlement import Settlement, SettlementAdjustmentType
from marketledger.persistence.audit_log import AuditEventKind, AuditLog
from marketledger.persistence.store import LedgerStore
from marketledger.rails import ManualTransferRail, PayoutRailRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _with_warnings(data: dict[str, Any], warnings: Sequence[Optional[str]]) -> dict[str, Any]:
    found = [w for w in warnings if w]
    if not found:
        return data
    return {**data, "warning": "; ".join(found)}


def _escrow_data(escrow: EscrowTransaction) -> dict[str, Any]:
    return {
        "escrow_id": escrow.escrow_id,
        "store_id": escrow.store_id,
        "sub_order_id": escrow.sub_order_id,
        "status": escrow.status.value,
        "gross_amount": str(escrow.gross_amount),
        "commission_amount": str(escrow.commission_amount),
        "net_amount": str(escrow.net_amount),
        "refunded_amount": str(escrow.refunded_amount),
        "commission_reversed": str(escrow.commission_reversed),
        "payable_amount": str(escrow.payable_amount),
        "eligible_at": escrow.eligible_at.isoformat() if escrow.eligible_at else None,
        "payout_id": escrow.payout_id,
    }


def _payout_data(payout: Payout) -> dict[str, Any]:
    return {
        "payout_id": payout.payout_id,
        "payout_number": payout.payout_number,
        "store_id": payout.store_id,
        "status": payout.status.value,
        "amount": str(payout.amount),
        "currency": payout.currency,
        "escrow_ids": list(payout.escrow_ids),
        "scheduled_date": payout.scheduled_date.isoformat(),
        "retry_count": payout.retry_count,
        "next_retry_date": (
            payout.next_retry_date.isoformat() if payout.next_retry_date else None
        ),
        "external_reference": payout.external_reference,
        "error_message": payout.error_message,
    }


def _settlement_data(settlement: Settlement) -> dict[str, Any]:
    return {
        "settlement_id": settlement.settlement_id,
        "settlement_number": settlement.settlement_number,
        "store_id": settlement.store_id,
        "period_start": settlement.period_start.isoformat(),
        "period_end": settlement.period_end.isoformat(),
        "status": settlement.status.value,
        "version": settlement.version,
        "previous_settlement_id": settlement.previous_settlement_id,
        "gross_sales": str(settlement.gross_sales),
        "refunds": str(settlement.refunds),
        "commission": str(settlement.commission),
        "adjustments": str(settlement.adjustments),
        "net_amount": str(settlement.net_amount),
        "total_payouts": str(settlement.total_payouts),
        "item_count": len(settlement.items),
    }


def _invoice_data(invoice: CommissionInvoice) -> dict[str, Any]:
    return {
        "invoice_id": invoice.invoice_id,
        "invoice_number": invoice.invoice_number,
        "store_id": invoice.store_id,
        "period_start": invoice.period_start.isoformat(),
        "period_end": invoice.period_end.isoformat(),
        "status": invoice.status.value,
        "is_credit_note": invoice.is_credit_note,
        "corrects_invoice_id": invoice.corrects_invoice_id,
        "subtotal": str(invoice.subtotal),
        "tax_amount": str(invoice.tax_amount),
        "total_amount": str(invoice.total_amount),
        "currency": invoice.currency,
        "due_date": invoice.due_date.isoformat(),
        "line_count": len(invoice.lines),
    }


class LedgerService:
    """Marketplace ledger facade.

    Usage:
        config = LedgerConfig.from_config_dir(Path("config"))
        service = LedgerService(InMemoryLedgerStore(), config)

        result = service.allocate_payment(payment, sub_orders)
        result = service.mark_delivered(escrow_id, delivered_at)
        result = service.apply_refund(escrow_id, "40.00", "rr_1")
        result = service.run_payout_cycle()
        result = service.build_settlement("store_1", start, end)
        result = service.generate_invoice("store_1", start, end)

    Persistence (optional):
        service = LedgerService(SqlLedgerStore.from_url(url), config,
                                audit_log=AuditLog(Path("data/audit.jsonl")))
    """

    def __init__(
        self,
        store: LedgerStore,
        config: Optional[LedgerConfig] = None,
        rate_book: Optional[CommissionRateBook] = None,
        audit_log: Optional[AuditLog] = None,
        rails: Optional[PayoutRailRegistry] = None,
        clock: Optional[Clock] = None,
        on_retries_exhausted: Optional[Callable[[Payout], None]] = None,
    ) -> None:
        self._config = config or LedgerConfig()
        self._store = store
        if rate_book is None:
            rate_book = CommissionRateBook.load(store, self._config.commission)
        self._rate_book = rate_book
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock or _utc_now
        self._on_retries_exhausted = on_retries_exhausted

        if rails is None:
            rails = PayoutRailRegistry()
            rails.register_rail(ManualTransferRail())
        self._rails = rails

        self._allocator = EscrowAllocator(store, self._rate_book, self._config)
        self._refunds = RefundAdjuster(store)
        self._aggregator = PayoutAggregator(store, self._config)
        self._executor = PayoutExecutor(
            store, rails, self._config,
            on_retries_exhausted=self._retries_exhausted,
            on_adjusted=self._payout_adjusted,
        )
        self._hook_warnings: Dict[str, List[str]] = {}
        self._settlements = SettlementBuilder(store, self._config)
        self._invoices = CommissionInvoiceBuilder(store, self._config)
        self._event_counter = self._audit_log.count

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def rate_book(self) -> CommissionRateBook:
        return self._rate_book

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    # ------------------------------------------------------------------
    # Commission
    # ------------------------------------------------------------------

    def publish_commission_rate(
        self,
        source: CommissionSource,
        percentage: MoneyLike,
        fixed_amount: MoneyLike = "0",
        key: Optional[str] = None,
        effective_from: Optional[datetime] = None,
        actor_id: str = "system",
    ) -> ServiceResult:
        """Publish a new global rate or a category/seller override."""
        now = effective_from or self._clock()
        try:
            rate = CommissionRate(
                percentage=Decimal(str(percentage)),
                fixed_amount=to_money(fixed_amount),
            )
            if source == CommissionSource.GLOBAL:
                entry = self._rate_book.publish_global(rate, now, created_by=actor_id)
            elif key is None:
                return ServiceResult(
                    success=False, errors=[f"A {source.value} override needs a key"],
                )
            elif source == CommissionSource.CATEGORY:
                entry = self._rate_book.set_category_override(key, rate, now, created_by=actor_id)
            else:
                entry = self._rate_book.set_seller_override(key, rate, now, created_by=actor_id)
        except (TypeError, ValueError, ArithmeticError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {
            "entry_id": entry.entry_id,
            "source": source.value,
            "key": key,
            "version": entry.version,
            "revision": self._rate_book.revision,
        }
        return self._audited(
            AuditEventKind.COMMISSION_CONFIG_PUBLISHED,
            {**data, "percentage": str(rate.percentage), "fixed_amount": str(rate.fixed_amount)},
            data,
            actor_id=actor_id,
        )

    def quote_commission(
        self,
        seller_id: str,
        category_id: Optional[str],
        gross_amount: MoneyLike,
        as_of: Optional[datetime] = None,
    ) -> ServiceResult:
        """Resolve the commission a sale would be charged, without recording it."""
        try:
            resolver = CommissionResolver(
                self._rate_book.snapshot(as_of or self._clock()),
                strict=self._config.reject_commission_over_gross,
            )
            quote = resolver.resolve(seller_id, category_id, to_money(gross_amount))
        except (TypeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={
            "source": quote.source.value,
            "percentage": str(quote.percentage),
            "fixed_amount": str(quote.fixed_amount),
            "commission_amount": str(quote.commission_amount),
            "net_amount": str(quote.net_amount),
            "exceeds_gross": quote.exceeds_gross,
            "rate_revision": quote.rate_revision,
        })

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def allocate_payment(
        self,
        payment: PaymentConfirmation,
        sub_orders: Sequence[SubOrder],
        policy: Optional[MultiCategoryPolicy] = None,
    ) -> ServiceResult:
        """Split a captured payment into escrows.

        A repeated allocation succeeds with the existing escrows and
        data["duplicate"] set, so payment webhooks can be retried safely.
        """
        now = self._clock()
        try:
            escrows = self._allocator.allocate(payment, sub_orders, now=now, policy=policy)
        except DuplicateAllocation as e:
            return ServiceResult(success=True, data={
                "payment_id": payment.payment_id,
                "duplicate": True,
                "escrows": [_escrow_data(x) for x in e.existing],
            })
        except ValueError as e:
            errors = [str(e)]
            if self._store.is_payment_halted(payment.payment_id):
                warning = self._record(AuditEventKind.ALLOCATION_HALTED, {
                    "payment_id": payment.payment_id,
                    "reason": str(e),
                })
                if warning:
                    errors.append(warning)
            return ServiceResult(success=False, errors=errors)

        data = {
            "payment_id": payment.payment_id,
            "duplicate": False,
            "escrows": [_escrow_data(x) for x in escrows],
        }
        return self._audited(AuditEventKind.ESCROW_ALLOCATED, {
            "payment_id": payment.payment_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "escrow_ids": [x.escrow_id for x in escrows],
            "commission": [str(x.commission_amount) for x in escrows],
        }, data)

    def mark_delivered(
        self,
        escrow_id: str,
        delivered_at: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record delivery; the escrow becomes eligible after the hold period."""
        try:
            escrow = self._allocator.mark_delivered(escrow_id, delivered_at or self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data=_escrow_data(escrow))

    def open_dispute(self, escrow_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            escrow = self._allocator.open_dispute(escrow_id)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(
            AuditEventKind.ESCROW_DISPUTED,
            {"escrow_id": escrow_id},
            _escrow_data(escrow),
            actor_id=actor_id,
        )

    def resolve_dispute(self, escrow_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            escrow = self._allocator.resolve_dispute(escrow_id)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(
            AuditEventKind.DISPUTE_RESOLVED,
            {"escrow_id": escrow_id, "status": escrow.status.value},
            _escrow_data(escrow),
            actor_id=actor_id,
        )

    def get_escrow(self, escrow_id: str) -> Optional[EscrowTransaction]:
        try:
            return self._store.get_escrow(escrow_id)
        except LedgerError:
            return None

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def apply_refund(
        self,
        escrow_id: str,
        refund_amount: MoneyLike,
        refund_request_id: str,
        reason: str = "",
    ) -> ServiceResult:
        try:
            outcome = self._refunds.apply_refund(
                escrow_id, refund_amount, refund_request_id,
                now=self._clock(), reason=reason,
            )
        except (TypeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {
            **_escrow_data(outcome.escrow),
            "refund_request_id": refund_request_id,
            "refund_amount": str(outcome.refund.amount),
            "commission_reversal": str(outcome.refund.commission_reversal),
            "after_payout": outcome.refund.after_payout,
        }
        return self._audited(AuditEventKind.REFUND_APPLIED, {
            "escrow_id": escrow_id,
            "refund_request_id": refund_request_id,
            "amount": str(outcome.refund.amount),
            "commission_reversal": str(outcome.refund.commission_reversal),
            "after_payout": outcome.refund.after_payout,
            "status": outcome.escrow.status.value,
        }, data)

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def set_payout_schedule(
        self,
        store_id: str,
        frequency: PayoutFrequency,
        minimum_threshold: Optional[MoneyLike] = None,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        payout_method_id: Optional[str] = None,
        enabled: bool = True,
    ) -> ServiceResult:
        try:
            schedule = self._aggregator.set_schedule(
                store_id,
                frequency,
                minimum_threshold=minimum_threshold,
                day_of_week=day_of_week,
                day_of_month=day_of_month,
                payout_method_id=payout_method_id,
                enabled=enabled,
                today=self._clock().date(),
            )
        except (TypeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])
        data = {
            "store_id": store_id,
            "frequency": schedule.frequency.value,
            "minimum_threshold": str(schedule.minimum_threshold),
            "next_payout_date": (
                schedule.next_payout_date.isoformat() if schedule.next_payout_date else None
            ),
            "enabled": schedule.enabled,
        }
        return self._audited(AuditEventKind.PAYOUT_SCHEDULE_SET, data, data)

    def aggregate_payout(self, store_id: str) -> ServiceResult:
        """Batch one store's eligible escrows into a payout.

        data["payout"] is None when the store is below its threshold.
        """
        now = self._clock()
        warnings: List[Optional[str]] = []
        try:
            for escrow in self._aggregator.promote_eligible(store_id, now):
                warnings.append(self._record(AuditEventKind.ESCROW_ELIGIBLE, {
                    "escrow_id": escrow.escrow_id,
                    "store_id": store_id,
                }))
            payout = self._aggregator.aggregate_eligible(store_id, now)
        except LedgerError as e:
            return ServiceResult(success=False, errors=[str(e)])
        if payout is None:
            return ServiceResult(success=True, data=_with_warnings(
                {"store_id": store_id, "payout": None}, warnings,
            ))
        return self._audited(AuditEventKind.PAYOUT_SCHEDULED, {
            "payout_id": payout.payout_id,
            "store_id": store_id,
            "amount": str(payout.amount),
            "escrow_ids": list(payout.escrow_ids),
        }, {"store_id": store_id, "payout": _payout_data(payout)}, warnings=warnings)

    def run_payout_cycle(self, store_ids: Optional[Sequence[str]] = None) -> ServiceResult:
        """Aggregate payouts for every store, collecting per-store errors."""
        if store_ids is None:
            store_ids = self._store.store_ids()
        payouts: List[dict[str, Any]] = []
        errors: List[str] = []
        warnings: List[Optional[str]] = []
        for store_id in store_ids:
            result = self.aggregate_payout(store_id)
            if not result.success:
                errors.extend(f"{store_id}: {e}" for e in result.errors)
                continue
            warnings.append(result.data.get("warning"))
            if result.data["payout"] is not None:
                payouts.append(result.data["payout"])
        return ServiceResult(
            success=not errors,
            errors=errors,
            data=_with_warnings({"payouts": payouts}, warnings),
        )

    def execute_payout(self, payout_id: str) -> ServiceResult:
        try:
            payout = self._executor.execute(payout_id, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        warnings = self._record_payout_attempt(payout)
        return ServiceResult(
            success=payout.status in (PayoutStatus.PAID, PayoutStatus.CANCELLED),
            data=_with_warnings(_payout_data(payout), warnings),
        )

    def process_due_payouts(self) -> ServiceResult:
        """Send every payout due now and retry failed ones whose backoff elapsed.

        Every payout attempted is recorded even when others in the run
        could not be sent; those are reported in errors and data["failures"].
        """
        processed, failures = self._executor.process_due(self._clock())
        warnings: List[str] = []
        for payout in processed:
            warnings.extend(self._record_payout_attempt(payout))
        data = {
            "processed": [_payout_data(p) for p in processed],
            "paid": sum(1 for p in processed if p.status == PayoutStatus.PAID),
            "failed": sum(1 for p in processed if p.status == PayoutStatus.FAILED),
            "cancelled": sum(1 for p in processed if p.status == PayoutStatus.CANCELLED),
            "failures": failures,
        }
        return ServiceResult(
            success=not failures,
            errors=[f"{k}: {v}" for k, v in sorted(failures.items())],
            data=_with_warnings(data, warnings),
        )

    def release_exhausted_payout(self, payout_id: str, actor_id: str) -> ServiceResult:
        """Admin action: free the escrows of a payout that will not be retried."""
        try:
            payout = self._executor.release_exhausted(payout_id)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(
            AuditEventKind.PAYOUT_ESCROWS_RELEASED,
            {"payout_id": payout_id, "escrow_ids": list(payout.escrow_ids)},
            _payout_data(payout),
            actor_id=actor_id,
        )

    def balance_summary(self, store_id: str) -> ServiceResult:
        summary = self._aggregator.balance_summary(store_id, self._clock())
        return ServiceResult(success=True, data={
            "store_id": store_id,
            "currency": summary.currency,
            "available": str(summary.available),
            "pending": str(summary.pending),
            "in_payout": str(summary.in_payout),
            "eligible_escrow_count": summary.eligible_escrow_count,
            "minimum_threshold": str(summary.minimum_threshold),
            "meets_threshold": summary.meets_threshold,
            "next_payout_date": (
                summary.next_payout_date.isoformat() if summary.next_payout_date else None
            ),
        })

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    def build_settlement(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        force: bool = False,
        actor_id: str = "system",
    ) -> ServiceResult:
        try:
            settlement = self._settlements.build(
                store_id, period_start, period_end, force=force, now=self._clock(),
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._record_settlement(settlement, actor_id)

    def finalize_settlement(self, settlement_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            settlement = self._settlements.finalize(settlement_id, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(
            AuditEventKind.SETTLEMENT_FINALIZED,
            {"settlement_id": settlement_id, "net_amount": str(settlement.net_amount)},
            _settlement_data(settlement),
            actor_id=actor_id,
        )

    def add_settlement_adjustment(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        adjustment_type: SettlementAdjustmentType,
        amount: MoneyLike,
        description: str,
        actor_id: str = "system",
        related_settlement_id: Optional[str] = None,
    ) -> ServiceResult:
        """Record a manual adjustment, then rebuild the period's settlement."""
        try:
            adjustment = self._settlements.add_adjustment(
                store_id, period_start, period_end, adjustment_type, amount, description,
                created_by=actor_id,
                related_settlement_id=related_settlement_id,
                now=self._clock(),
            )
        except (TypeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])
        warning = self._record(AuditEventKind.SETTLEMENT_ADJUSTMENT_ADDED, {
            "adjustment_id": adjustment.adjustment_id,
            "store_id": store_id,
            "type": adjustment_type.value,
            "amount": str(adjustment.amount),
        }, actor_id=actor_id)

        rebuilt = self.build_settlement(store_id, period_start, period_end, actor_id=actor_id)
        if not rebuilt.success:
            return rebuilt
        return ServiceResult(success=True, data=_with_warnings({
            "adjustment_id": adjustment.adjustment_id,
            "amount": str(adjustment.amount),
            "settlement": rebuilt.data,
        }, [warning]))

    def settlement_summary(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> ServiceResult:
        try:
            summary = self._settlements.summary(store_id, period_start, period_end)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={
            "store_id": store_id,
            "gross_sales": str(summary.gross_sales),
            "refunds": str(summary.refunds),
            "commission": str(summary.commission),
            "adjustments": str(summary.adjustments),
            "net_amount": str(summary.net_amount),
            "total_payouts": str(summary.total_payouts),
            "order_count": summary.order_count,
            "current_settlement_id": summary.current_settlement_id,
        })

    def build_monthly_settlements(
        self,
        year: int,
        month: int,
        store_ids: Optional[Sequence[str]] = None,
    ) -> ServiceResult:
        try:
            built, failures = self._settlements.build_monthly(
                year, month, store_ids=store_ids, now=self._clock(),
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        data: Dict[str, Any] = {"settlements": []}
        for settlement in built:
            result = self._record_settlement(settlement, "system")
            data["settlements"].append(result.data)
        data["failures"] = failures
        return ServiceResult(
            success=not failures,
            errors=[f"{k}: {v}" for k, v in sorted(failures.items())],
            data=data,
        )

    def export_settlement_csv(self, settlement_id: str) -> ServiceResult:
        try:
            content = self._settlements.export_csv(settlement_id)
        except LedgerError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={"settlement_id": settlement_id, "csv": content})

    # ------------------------------------------------------------------
    # Commission invoices
    # ------------------------------------------------------------------

    def generate_invoice(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        actor_id: str = "system",
    ) -> ServiceResult:
        """Draft the commission invoice for a store and period.

        Succeeds with invoice None when no commission was posted in the period.
        """
        try:
            existing = self._invoices.open_invoice(store_id, period_start, period_end)
            invoice = self._invoices.generate(
                store_id, period_start, period_end, now=self._clock(),
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        if invoice is None:
            return ServiceResult(success=True, data={"store_id": store_id, "invoice": None})
        if existing is not None:
            return ServiceResult(success=True, data={
                "store_id": store_id,
                "invoice": _invoice_data(invoice),
                "existing": True,
            })
        return self._record_invoice(invoice, actor_id)

    def generate_monthly_invoices(
        self,
        year: int,
        month: int,
        store_ids: Optional[Sequence[str]] = None,
    ) -> ServiceResult:
        try:
            generated, failures = self._invoices.generate_monthly(
                year, month, store_ids=store_ids, now=self._clock(),
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        data: Dict[str, Any] = {"invoices": []}
        warnings: List[Optional[str]] = []
        for invoice in generated:
            result = self._record_invoice(invoice, "system")
            data["invoices"].append(result.data["invoice"])
            warnings.append(result.data.get("warning"))
        data["failures"] = failures
        return ServiceResult(
            success=not failures,
            errors=[f"{k}: {v}" for k, v in sorted(failures.items())],
            data=_with_warnings(data, warnings),
        )

    def issue_invoice(self, invoice_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            invoice = self._invoices.issue(invoice_id, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(AuditEventKind.INVOICE_ISSUED, {
            "invoice_id": invoice_id,
            "invoice_number": invoice.invoice_number,
            "total_amount": str(invoice.total_amount),
        }, _invoice_data(invoice), actor_id=actor_id)

    def mark_invoice_paid(self, invoice_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            invoice = self._invoices.mark_paid(invoice_id, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(AuditEventKind.INVOICE_PAID, {
            "invoice_id": invoice_id,
            "invoice_number": invoice.invoice_number,
            "total_amount": str(invoice.total_amount),
        }, _invoice_data(invoice), actor_id=actor_id)

    def cancel_invoice(self, invoice_id: str, actor_id: str = "system") -> ServiceResult:
        try:
            invoice = self._invoices.cancel(invoice_id, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(AuditEventKind.INVOICE_CANCELLED, {
            "invoice_id": invoice_id,
            "invoice_number": invoice.invoice_number,
        }, _invoice_data(invoice), actor_id=actor_id)

    def create_credit_note(
        self,
        invoice_id: str,
        reason: str,
        actor_id: str = "system",
    ) -> ServiceResult:
        """Credit an invoice in full; the period can then be invoiced again."""
        try:
            credit_note = self._invoices.create_credit_note(invoice_id, reason, now=self._clock())
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return self._audited(AuditEventKind.CREDIT_NOTE_ISSUED, {
            "invoice_id": credit_note.invoice_id,
            "invoice_number": credit_note.invoice_number,
            "corrects_invoice_id": invoice_id,
            "total_amount": str(credit_note.total_amount),
            "reason": reason,
        }, _invoice_data(credit_note), actor_id=actor_id)

    def get_invoice(self, invoice_id: str) -> Optional[CommissionInvoice]:
        try:
            return self._store.get_invoice(invoice_id)
        except LedgerError:
            return None

    def list_invoices(self, store_id: str, include_superseded: bool = False) -> ServiceResult:
        """A store's invoices and credit notes, newest first."""
        invoices = self._invoices.list_invoices(store_id, include_superseded=include_superseded)
        return ServiceResult(success=True, data={
            "store_id": store_id,
            "invoices": [_invoice_data(i) for i in invoices],
        })

    def export_invoice_csv(self, invoice_id: str) -> ServiceResult:
        try:
            content = self._invoices.export_csv(invoice_id)
        except LedgerError as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data={"invoice_id": invoice_id, "csv": content})

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Return a ledger-wide status summary."""
        store_ids = self._store.store_ids()
        escrow_counts: Dict[str, int] = {s.value: 0 for s in EscrowStatus}
        payout_counts = {s.value: len(self._store.payouts_by_status(s)) for s in PayoutStatus}
        for store_id in store_ids:
            for escrow in self._store.escrows_for_store(store_id):
                escrow_counts[escrow.status.value] += 1
        return {
            "version": __version__,
            "stores": len(store_ids),
            "escrows": escrow_counts,
            "payouts": payout_counts,
            "commission_revision": self._rate_book.revision,
            "audit_events": self._audit_log.count,
        }

    def list_payouts(
        self,
        store_id: str,
        status: Optional[PayoutStatus] = None,
    ) -> ServiceResult:
        """A store's payouts, newest first, optionally of one status."""
        payouts = [
            p for p in self._store.payouts_for_store(store_id)
            if status is None or p.status == status
        ]
        payouts.sort(key=lambda p: p.created_at, reverse=True)
        return ServiceResult(success=True, data={
            "store_id": store_id,
            "payouts": [_payout_data(p) for p in payouts],
        })

    def list_settlements(
        self,
        store_id: Optional[str] = None,
        include_superseded: bool = False,
    ) -> ServiceResult:
        """Settlements for one store, or every store when store_id is None.

        Latest period first. Superseded versions are left out unless asked for.
        """
        store_ids = [store_id] if store_id is not None else self._store.store_ids()
        settlements = [
            s for sid in store_ids for s in self._store.settlements_for_store(sid)
            if include_superseded or s.is_current_version
        ]
        settlements.sort(key=lambda s: (s.period_start, s.store_id, s.version), reverse=True)
        return ServiceResult(success=True, data={
            "settlements": [_settlement_data(s) for s in settlements],
        })

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _record_settlement(self, settlement: Settlement, actor_id: str) -> ServiceResult:
        warning = None
        if settlement.previous_settlement_id is not None:
            warning = self._record(AuditEventKind.SETTLEMENT_SUPERSEDED, {
                "settlement_id": settlement.previous_settlement_id,
                "superseded_by": settlement.settlement_id,
            }, actor_id=actor_id)
        return self._audited(AuditEventKind.SETTLEMENT_GENERATED, {
            "settlement_id": settlement.settlement_id,
            "store_id": settlement.store_id,
            "version": settlement.version,
            "net_amount": str(settlement.net_amount),
        }, _settlement_data(settlement), actor_id=actor_id, warnings=[warning])

    def _record_invoice(self, invoice: CommissionInvoice, actor_id: str) -> ServiceResult:
        return self._audited(AuditEventKind.INVOICE_GENERATED, {
            "invoice_id": invoice.invoice_id,
            "invoice_number": invoice.invoice_number,
            "store_id": invoice.store_id,
            "period_start": invoice.period_start.isoformat(),
            "total_amount": str(invoice.total_amount),
        }, {"store_id": invoice.store_id, "invoice": _invoice_data(invoice)}, actor_id=actor_id)

    def _record_payout_attempt(self, payout: Payout) -> List[str]:
        """Record the outcome of one attempt; returns audit warnings, hooks included."""
        warnings = self._hook_warnings.pop(payout.payout_id, [])
        warning = None
        if payout.status == PayoutStatus.PAID:
            warning = self._record(AuditEventKind.PAYOUT_PAID, {
                "payout_id": payout.payout_id,
                "amount": str(payout.amount),
                "external_reference": payout.external_reference,
            })
        elif payout.status == PayoutStatus.FAILED:
            warning = self._record(AuditEventKind.PAYOUT_FAILED, {
                "payout_id": payout.payout_id,
                "retry_count": payout.retry_count,
                "error_message": payout.error_message,
            })
        elif payout.status == PayoutStatus.CANCELLED:
            warning = self._record(AuditEventKind.PAYOUT_CANCELLED, {
                "payout_id": payout.payout_id,
                "store_id": payout.store_id,
            })
        if warning:
            warnings.append(warning)
        return warnings

    def _payout_adjusted(
        self,
        payout: Payout,
        previous_amount: Decimal,
        dropped_escrow_ids: List[str],
    ) -> None:
        self._hook_warning(payout, self._record(AuditEventKind.PAYOUT_ADJUSTED, {
            "payout_id": payout.payout_id,
            "store_id": payout.store_id,
            "previous_amount": str(previous_amount),
            "amount": str(payout.amount),
            "dropped_escrow_ids": list(dropped_escrow_ids),
        }))

    def _retries_exhausted(self, payout: Payout) -> None:
        self._hook_warning(payout, self._record(AuditEventKind.PAYOUT_RETRIES_EXHAUSTED, {
            "payout_id": payout.payout_id,
            "store_id": payout.store_id,
            "amount": str(payout.amount),
            "retry_count": payout.retry_count,
        }))
        if self._on_retries_exhausted is not None:
            self._on_retries_exhausted(payout)

    def _hook_warning(self, payout: Payout, warning: Optional[str]) -> None:
        # Executor hooks run mid-attempt; _record_payout_attempt collects these.
        if warning:
            self._hook_warnings.setdefault(payout.payout_id, []).append(warning)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record(
        self,
        kind: AuditEventKind,
        payload: dict[str, Any],
        actor_id: str = "system",
    ) -> Optional[str]:
        """Append an audit event. Returns an error string or None.

        The ledger mutation is already committed when this runs, so an
        audit failure is reported to the caller rather than rolled back.
        """
        try:
            self._audit_log.record(
                kind, payload, actor_id,
                timestamp_utc=self._clock(),
                event_id=self._next_event_id(),
            )
        except (ValueError, OSError) as e:
            logger.error("Audit log failure for %s: %s", kind.value, e)
            return f"Audit log failure: {e}"
        return None

    def _audited(
        self,
        kind: AuditEventKind,
        payload: dict[str, Any],
        data: dict[str, Any],
        actor_id: str = "system",
        warnings: Sequence[Optional[str]] = (),
    ) -> ServiceResult:
        warnings = [*warnings, self._record(kind, payload, actor_id=actor_id)]
        return ServiceResult(success=True, data=_with_warnings(data, warnings))
