"""Relational ledger store on SQLAlchemy.

Same contract as InMemoryLedgerStore; the concurrency guards are enforced
by the database:
- a unique (payment_id, sub_order_id) constraint on escrows
- versioned UPDATE ... WHERE version = :expected for escrows and payouts
- a conditional UPDATE ... WHERE payout_id IS NULL when claiming escrows
- a partial unique index allowing one current settlement per period
- a conditional UPDATE ... WHERE status = :expected AND is_current_version
  when finalizing a settlement
- a partial unique index allowing one open invoice per store and period,
  and a conditional UPDATE ... WHERE status = :expected for invoice changes

Timestamps are stored as naive UTC and handed back timezone-aware.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from marketledger.errors import (
    ConcurrencyConflict,
    DuplicateAllocation,
    DuplicateRefund,
    RecordNotFound,
)
from marketledger.models.commission import (
    CommissionRate,
    CommissionSource,
    CommissionTransaction,
    CommissionTransactionType,
    RateEntry,
)
from marketledger.models.escrow import EscrowStatus, EscrowTransaction, RefundRecord
from marketledger.models.invoice import CommissionInvoice, InvoiceLine, InvoiceStatus
from marketledger.models.payout import (
    Payout,
    PayoutFrequency,
    PayoutSchedule,
    PayoutStatus,
)
from marketledger.models.settlement import (
    Settlement,
    SettlementAdjustment,
    SettlementAdjustmentType,
    SettlementItem,
    SettlementStatus,
)

logger = logging.getLogger(__name__)

Money = Numeric(18, 2, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for ledger tables."""
    pass


class EscrowRow(Base):
    __tablename__ = "ledger_escrows"
    __table_args__ = (
        UniqueConstraint("payment_id", "sub_order_id", name="uq_escrow_payment_sub_order"),
        Index("ix_escrow_store_status", "store_id", "status"),
    )

    escrow_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payment_id: Mapped[str] = mapped_column(String(64), index=True)
    order_id: Mapped[str] = mapped_column(String(64))
    sub_order_id: Mapped[str] = mapped_column(String(64))
    store_id: Mapped[str] = mapped_column(String(64))
    currency: Mapped[str] = mapped_column(String(3))
    gross_amount: Mapped[Decimal] = mapped_column(Money)
    commission_amount: Mapped[Decimal] = mapped_column(Money)
    net_amount: Mapped[Decimal] = mapped_column(Money)
    ordered_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(32))
    order_number: Mapped[str] = mapped_column(String(64), default="")
    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    eligible_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded_amount: Mapped[Decimal] = mapped_column(Money)
    commission_reversed: Mapped[Decimal] = mapped_column(Money)
    payout_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("ledger_payouts.payout_id"), nullable=True, index=True,
    )
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status_before_dispute: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0)


class HaltedPaymentRow(Base):
    __tablename__ = "ledger_halted_payments"

    payment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[str] = mapped_column(Text)


class CommissionTransactionRow(Base):
    __tablename__ = "ledger_commission_transactions"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    escrow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("ledger_escrows.escrow_id"), index=True,
    )
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    transaction_type: Mapped[str] = mapped_column(String(32))
    gross_amount: Mapped[Decimal] = mapped_column(Money)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4, asdecimal=True))
    fixed_amount: Mapped[Decimal] = mapped_column(Money)
    commission_amount: Mapped[Decimal] = mapped_column(Money)
    source: Mapped[str] = mapped_column(String(16))
    created_at: Mapped[datetime] = mapped_column(DateTime)
    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    refund_request_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rate_revision: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[str] = mapped_column(Text, default="")


class RefundRow(Base):
    __tablename__ = "ledger_refunds"

    refund_request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    escrow_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("ledger_escrows.escrow_id"), index=True,
    )
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    commission_reversal: Mapped[Decimal] = mapped_column(Money)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    after_payout: Mapped[bool] = mapped_column(Boolean, default=False)
    reason: Mapped[str] = mapped_column(Text, default="")


class PayoutRow(Base):
    __tablename__ = "ledger_payouts"

    payout_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    payout_number: Mapped[str] = mapped_column(String(64), unique=True)
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    escrow_ids: Mapped[List[str]] = mapped_column(JSON)
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    scheduled_date: Mapped[date] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    max_retry_attempts: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), index=True)
    payout_method_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    initiated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    external_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    escrows_released_by_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, default=0)


class PayoutScheduleRow(Base):
    __tablename__ = "ledger_payout_schedules"

    store_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    frequency: Mapped[str] = mapped_column(String(16))
    minimum_threshold: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    next_payout_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    payout_method_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class SettlementRow(Base):
    __tablename__ = "ledger_settlements"
    __table_args__ = (
        Index(
            "uq_settlement_current_version",
            "store_id", "period_start", "period_end",
            unique=True,
            sqlite_where=text("is_current_version = 1"),
            postgresql_where=text("is_current_version"),
        ),
    )

    settlement_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    settlement_number: Mapped[str] = mapped_column(String(96))
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    currency: Mapped[str] = mapped_column(String(3))
    generated_at: Mapped[datetime] = mapped_column(DateTime)
    gross_sales: Mapped[Decimal] = mapped_column(Money)
    refunds: Mapped[Decimal] = mapped_column(Money)
    commission: Mapped[Decimal] = mapped_column(Money)
    adjustments: Mapped[Decimal] = mapped_column(Money)
    net_amount: Mapped[Decimal] = mapped_column(Money)
    total_payouts: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16))
    version: Mapped[int] = mapped_column(Integer)
    is_current_version: Mapped[bool] = mapped_column(Boolean)
    previous_settlement_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("ledger_settlements.settlement_id"), nullable=True,
    )
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    adjustment_ids: Mapped[List[str]] = mapped_column(JSON)


class SettlementItemRow(Base):
    __tablename__ = "ledger_settlement_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settlement_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("ledger_settlements.settlement_id"), index=True,
    )
    position: Mapped[int] = mapped_column(Integer)
    escrow_id: Mapped[str] = mapped_column(String(64))
    order_id: Mapped[str] = mapped_column(String(64))
    sub_order_id: Mapped[str] = mapped_column(String(64))
    order_number: Mapped[str] = mapped_column(String(64))
    order_date: Mapped[datetime] = mapped_column(DateTime)
    gross_amount: Mapped[Decimal] = mapped_column(Money)
    refund_amount: Mapped[Decimal] = mapped_column(Money)
    commission_amount: Mapped[Decimal] = mapped_column(Money)
    net_amount: Mapped[Decimal] = mapped_column(Money)


class SettlementAdjustmentRow(Base):
    __tablename__ = "ledger_settlement_adjustments"
    __table_args__ = (
        Index("ix_adjustment_period", "store_id", "period_start", "period_end"),
    )

    adjustment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64))
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    adjustment_type: Mapped[str] = mapped_column(String(32))
    amount: Mapped[Decimal] = mapped_column(Money)
    description: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    related_settlement_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class InvoiceRow(Base):
    __tablename__ = "ledger_commission_invoices"
    __table_args__ = (
        Index(
            "uq_invoice_open_period",
            "store_id", "period_start", "period_end",
            unique=True,
            sqlite_where=text(
                "is_credit_note = 0 AND status IN ('draft', 'issued', 'paid')"
            ),
            postgresql_where=text(
                "NOT is_credit_note AND status IN ('draft', 'issued', 'paid')"
            ),
        ),
    )

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(32), unique=True)
    store_id: Mapped[str] = mapped_column(String(64), index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime)
    period_end: Mapped[datetime] = mapped_column(DateTime)
    currency: Mapped[str] = mapped_column(String(3))
    created_at: Mapped[datetime] = mapped_column(DateTime)
    due_date: Mapped[datetime] = mapped_column(DateTime)
    subtotal: Mapped[Decimal] = mapped_column(Money)
    tax_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4, asdecimal=True))
    tax_amount: Mapped[Decimal] = mapped_column(Money)
    total_amount: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(16))
    is_credit_note: Mapped[bool] = mapped_column(Boolean, default=False)
    corrects_invoice_id: Mapped[Optional[str]] = mapped_column(
        String(64), ForeignKey("ledger_commission_invoices.invoice_id"), nullable=True,
    )
    notes: Mapped[str] = mapped_column(Text, default="")
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class InvoiceLineRow(Base):
    __tablename__ = "ledger_commission_invoice_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("ledger_commission_invoices.invoice_id"), index=True,
    )
    position: Mapped[int] = mapped_column(Integer)
    transaction_id: Mapped[str] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(Text)
    amount: Mapped[Decimal] = mapped_column(Money)


class RateEntryRow(Base):
    __tablename__ = "ledger_commission_rates"

    entry_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    source: Mapped[str] = mapped_column(String(16))
    key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4, asdecimal=True))
    fixed_amount: Mapped[Decimal] = mapped_column(Money)
    version: Mapped[int] = mapped_column(Integer)
    effective_from: Mapped[datetime] = mapped_column(DateTime)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    revision: Mapped[int] = mapped_column(Integer)


# ----------------------------------------------------------------------
# Conversions
# ----------------------------------------------------------------------

def _to_db(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        raise ValueError(f"Naive datetime cannot be stored: {moment!r}")
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    return moment.replace(tzinfo=timezone.utc)


def _escrow_values(escrow: EscrowTransaction) -> Dict[str, Any]:
    return {
        "escrow_id": escrow.escrow_id,
        "payment_id": escrow.payment_id,
        "order_id": escrow.order_id,
        "sub_order_id": escrow.sub_order_id,
        "store_id": escrow.store_id,
        "currency": escrow.currency,
        "gross_amount": escrow.gross_amount,
        "commission_amount": escrow.commission_amount,
        "net_amount": escrow.net_amount,
        "ordered_at": _to_db(escrow.ordered_at),
        "created_at": _to_db(escrow.created_at),
        "status": escrow.status.value,
        "order_number": escrow.order_number,
        "category_id": escrow.category_id,
        "eligible_at": _to_db(escrow.eligible_at),
        "refunded_amount": escrow.refunded_amount,
        "commission_reversed": escrow.commission_reversed,
        "payout_id": escrow.payout_id,
        "released_at": _to_db(escrow.released_at),
        "returned_at": _to_db(escrow.returned_at),
        "status_before_dispute": (
            escrow.status_before_dispute.value if escrow.status_before_dispute else None
        ),
    }


def _escrow_from_row(row: EscrowRow) -> EscrowTransaction:
    return EscrowTransaction(
        escrow_id=row.escrow_id,
        payment_id=row.payment_id,
        order_id=row.order_id,
        sub_order_id=row.sub_order_id,
        store_id=row.store_id,
        currency=row.currency,
        gross_amount=row.gross_amount,
        commission_amount=row.commission_amount,
        net_amount=row.net_amount,
        ordered_at=_from_db(row.ordered_at),
        created_at=_from_db(row.created_at),
        status=EscrowStatus(row.status),
        order_number=row.order_number,
        category_id=row.category_id,
        eligible_at=_from_db(row.eligible_at),
        refunded_amount=row.refunded_amount,
        commission_reversed=row.commission_reversed,
        payout_id=row.payout_id,
        released_at=_from_db(row.released_at),
        returned_at=_from_db(row.returned_at),
        status_before_dispute=(
            EscrowStatus(row.status_before_dispute) if row.status_before_dispute else None
        ),
        version=row.version,
    )


def _commission_row(tx: CommissionTransaction) -> CommissionTransactionRow:
    return CommissionTransactionRow(
        transaction_id=tx.transaction_id,
        escrow_id=tx.escrow_id,
        store_id=tx.store_id,
        transaction_type=tx.transaction_type.value,
        gross_amount=tx.gross_amount,
        percentage=tx.percentage,
        fixed_amount=tx.fixed_amount,
        commission_amount=tx.commission_amount,
        source=tx.source.value,
        created_at=_to_db(tx.created_at),
        category_id=tx.category_id,
        refund_request_id=tx.refund_request_id,
        rate_revision=tx.rate_revision,
        notes=tx.notes,
    )


def _commission_from_row(row: CommissionTransactionRow) -> CommissionTransaction:
    return CommissionTransaction(
        transaction_id=row.transaction_id,
        escrow_id=row.escrow_id,
        store_id=row.store_id,
        transaction_type=CommissionTransactionType(row.transaction_type),
        gross_amount=row.gross_amount,
        percentage=row.percentage,
        fixed_amount=row.fixed_amount,
        commission_amount=row.commission_amount,
        source=CommissionSource(row.source),
        created_at=_from_db(row.created_at),
        category_id=row.category_id,
        refund_request_id=row.refund_request_id,
        rate_revision=row.rate_revision,
        notes=row.notes,
    )


def _refund_from_row(row: RefundRow) -> RefundRecord:
    return RefundRecord(
        refund_request_id=row.refund_request_id,
        escrow_id=row.escrow_id,
        store_id=row.store_id,
        amount=row.amount,
        commission_reversal=row.commission_reversal,
        created_at=_from_db(row.created_at),
        after_payout=row.after_payout,
        reason=row.reason,
    )


def _payout_values(payout: Payout) -> Dict[str, Any]:
    return {
        "payout_id": payout.payout_id,
        "payout_number": payout.payout_number,
        "store_id": payout.store_id,
        "escrow_ids": list(payout.escrow_ids),
        "amount": payout.amount,
        "currency": payout.currency,
        "scheduled_date": payout.scheduled_date,
        "created_at": _to_db(payout.created_at),
        "max_retry_attempts": payout.max_retry_attempts,
        "status": payout.status.value,
        "payout_method_id": payout.payout_method_id,
        "retry_count": payout.retry_count,
        "next_retry_date": _to_db(payout.next_retry_date),
        "initiated_at": _to_db(payout.initiated_at),
        "completed_at": _to_db(payout.completed_at),
        "failed_at": _to_db(payout.failed_at),
        "error_message": payout.error_message,
        "error_reference": payout.error_reference,
        "external_reference": payout.external_reference,
        "escrows_released_by_admin": payout.escrows_released_by_admin,
    }


def _payout_from_row(row: PayoutRow) -> Payout:
    return Payout(
        payout_id=row.payout_id,
        payout_number=row.payout_number,
        store_id=row.store_id,
        escrow_ids=list(row.escrow_ids),
        amount=row.amount,
        currency=row.currency,
        scheduled_date=row.scheduled_date,
        created_at=_from_db(row.created_at),
        max_retry_attempts=row.max_retry_attempts,
        status=PayoutStatus(row.status),
        payout_method_id=row.payout_method_id,
        retry_count=row.retry_count,
        next_retry_date=_from_db(row.next_retry_date),
        initiated_at=_from_db(row.initiated_at),
        completed_at=_from_db(row.completed_at),
        failed_at=_from_db(row.failed_at),
        error_message=row.error_message,
        error_reference=row.error_reference,
        external_reference=row.external_reference,
        escrows_released_by_admin=row.escrows_released_by_admin,
        version=row.version,
    )


def _schedule_from_row(row: PayoutScheduleRow) -> PayoutSchedule:
    return PayoutSchedule(
        store_id=row.store_id,
        frequency=PayoutFrequency(row.frequency),
        minimum_threshold=row.minimum_threshold,
        currency=row.currency,
        day_of_week=row.day_of_week,
        day_of_month=row.day_of_month,
        next_payout_date=row.next_payout_date,
        enabled=row.enabled,
        payout_method_id=row.payout_method_id,
    )


def _settlement_row(settlement: Settlement) -> SettlementRow:
    return SettlementRow(
        settlement_id=settlement.settlement_id,
        settlement_number=settlement.settlement_number,
        store_id=settlement.store_id,
        period_start=_to_db(settlement.period_start),
        period_end=_to_db(settlement.period_end),
        currency=settlement.currency,
        generated_at=_to_db(settlement.generated_at),
        gross_sales=settlement.gross_sales,
        refunds=settlement.refunds,
        commission=settlement.commission,
        adjustments=settlement.adjustments,
        net_amount=settlement.net_amount,
        total_payouts=settlement.total_payouts,
        status=settlement.status.value,
        version=settlement.version,
        is_current_version=settlement.is_current_version,
        previous_settlement_id=settlement.previous_settlement_id,
        finalized_at=_to_db(settlement.finalized_at),
        adjustment_ids=list(settlement.adjustment_ids),
    )


def _settlement_from_row(row: SettlementRow, items: Sequence[SettlementItemRow]) -> Settlement:
    return Settlement(
        settlement_id=row.settlement_id,
        settlement_number=row.settlement_number,
        store_id=row.store_id,
        period_start=_from_db(row.period_start),
        period_end=_from_db(row.period_end),
        currency=row.currency,
        generated_at=_from_db(row.generated_at),
        gross_sales=row.gross_sales,
        refunds=row.refunds,
        commission=row.commission,
        adjustments=row.adjustments,
        net_amount=row.net_amount,
        total_payouts=row.total_payouts,
        status=SettlementStatus(row.status),
        version=row.version,
        is_current_version=row.is_current_version,
        previous_settlement_id=row.previous_settlement_id,
        finalized_at=_from_db(row.finalized_at),
        items=[
            SettlementItem(
                escrow_id=i.escrow_id,
                order_id=i.order_id,
                sub_order_id=i.sub_order_id,
                order_number=i.order_number,
                order_date=_from_db(i.order_date),
                gross_amount=i.gross_amount,
                refund_amount=i.refund_amount,
                commission_amount=i.commission_amount,
                net_amount=i.net_amount,
            )
            for i in sorted(items, key=lambda i: i.position)
        ],
        adjustment_ids=list(row.adjustment_ids),
    )


def _adjustment_from_row(row: SettlementAdjustmentRow) -> SettlementAdjustment:
    return SettlementAdjustment(
        adjustment_id=row.adjustment_id,
        store_id=row.store_id,
        period_start=_from_db(row.period_start),
        period_end=_from_db(row.period_end),
        adjustment_type=SettlementAdjustmentType(row.adjustment_type),
        amount=row.amount,
        description=row.description,
        created_at=_from_db(row.created_at),
        created_by=row.created_by,
        related_settlement_id=row.related_settlement_id,
    )


def _invoice_row(invoice: CommissionInvoice) -> InvoiceRow:
    return InvoiceRow(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        store_id=invoice.store_id,
        period_start=_to_db(invoice.period_start),
        period_end=_to_db(invoice.period_end),
        currency=invoice.currency,
        created_at=_to_db(invoice.created_at),
        due_date=_to_db(invoice.due_date),
        subtotal=invoice.subtotal,
        tax_percentage=invoice.tax_percentage,
        tax_amount=invoice.tax_amount,
        total_amount=invoice.total_amount,
        status=invoice.status.value,
        is_credit_note=invoice.is_credit_note,
        corrects_invoice_id=invoice.corrects_invoice_id,
        notes=invoice.notes,
        issued_at=_to_db(invoice.issued_at),
        paid_at=_to_db(invoice.paid_at),
        cancelled_at=_to_db(invoice.cancelled_at),
    )


def _invoice_from_row(row: InvoiceRow, lines: Sequence[InvoiceLineRow]) -> CommissionInvoice:
    return CommissionInvoice(
        invoice_id=row.invoice_id,
        invoice_number=row.invoice_number,
        store_id=row.store_id,
        period_start=_from_db(row.period_start),
        period_end=_from_db(row.period_end),
        currency=row.currency,
        created_at=_from_db(row.created_at),
        due_date=_from_db(row.due_date),
        subtotal=row.subtotal,
        tax_percentage=row.tax_percentage,
        tax_amount=row.tax_amount,
        total_amount=row.total_amount,
        status=InvoiceStatus(row.status),
        is_credit_note=row.is_credit_note,
        corrects_invoice_id=row.corrects_invoice_id,
        notes=row.notes,
        issued_at=_from_db(row.issued_at),
        paid_at=_from_db(row.paid_at),
        cancelled_at=_from_db(row.cancelled_at),
        lines=[
            InvoiceLine(
                transaction_id=line.transaction_id,
                description=line.description,
                amount=line.amount,
            )
            for line in sorted(lines, key=lambda line: line.position)
        ],
    )


def _rate_entry_from_row(row: RateEntryRow) -> RateEntry:
    return RateEntry(
        entry_id=row.entry_id,
        source=CommissionSource(row.source),
        key=row.key,
        rate=CommissionRate(percentage=row.percentage, fixed_amount=row.fixed_amount),
        version=row.version,
        effective_from=_from_db(row.effective_from),
        effective_to=_from_db(row.effective_to),
        created_by=row.created_by,
        revision=row.revision,
    )


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------

class SqlLedgerStore:
    """LedgerStore backed by a relational database.

    Usage:
        store = SqlLedgerStore.from_url("sqlite:///data/ledger.db")
        store.create_schema()
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> SqlLedgerStore:
        kwargs: Dict[str, Any] = {"echo": echo}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or every session sees an empty database
                kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        return cls(engine)

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    def add_escrows(
        self,
        payment_id: str,
        escrows: Sequence[EscrowTransaction],
        commission_transactions: Sequence[CommissionTransaction],
    ) -> None:
        existing = self.escrows_for_payment(payment_id)
        if existing:
            raise DuplicateAllocation(payment_id, existing)
        try:
            with self._session_factory.begin() as session:
                for escrow in escrows:
                    session.add(EscrowRow(**_escrow_values(escrow), version=escrow.version))
                session.flush()
                for tx in commission_transactions:
                    session.add(_commission_row(tx))
        except IntegrityError as exc:
            existing = self.escrows_for_payment(payment_id)
            if existing:
                raise DuplicateAllocation(payment_id, existing) from exc
            raise

    def escrows_for_payment(self, payment_id: str) -> List[EscrowTransaction]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(EscrowRow)
                .where(EscrowRow.payment_id == payment_id)
                .order_by(EscrowRow.sub_order_id)
            )
            return [_escrow_from_row(r) for r in rows]

    def escrows_for_store(self, store_id: str) -> List[EscrowTransaction]:
        with self._session_factory() as session:
            rows = session.scalars(select(EscrowRow).where(EscrowRow.store_id == store_id))
            return [_escrow_from_row(r) for r in rows]

    def get_escrow(self, escrow_id: str) -> EscrowTransaction:
        with self._session_factory() as session:
            row = session.get(EscrowRow, escrow_id)
            if row is None:
                raise RecordNotFound(f"Unknown escrow ID: {escrow_id}")
            return _escrow_from_row(row)

    def save_escrow(self, escrow: EscrowTransaction) -> None:
        with self._session_factory.begin() as session:
            self._update_escrow(session, escrow)
        escrow.version += 1

    def halt_payment(self, payment_id: str, reason: str) -> None:
        with self._session_factory.begin() as session:
            session.merge(HaltedPaymentRow(payment_id=payment_id, reason=reason))

    def is_payment_halted(self, payment_id: str) -> bool:
        with self._session_factory() as session:
            return session.get(HaltedPaymentRow, payment_id) is not None

    def _update_escrow(self, session: Session, escrow: EscrowTransaction) -> None:
        result = session.execute(
            update(EscrowRow)
            .where(
                EscrowRow.escrow_id == escrow.escrow_id,
                EscrowRow.version == escrow.version,
            )
            .values(**_escrow_values(escrow), version=escrow.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if session.get(EscrowRow, escrow.escrow_id) is None:
                raise RecordNotFound(f"Unknown escrow ID: {escrow.escrow_id}")
            raise ConcurrencyConflict(
                f"Escrow {escrow.escrow_id} was modified concurrently "
                f"(expected version {escrow.version})"
            )

    # ------------------------------------------------------------------
    # Commission transactions and refunds
    # ------------------------------------------------------------------

    def commission_transactions(
        self,
        store_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
    ) -> List[CommissionTransaction]:
        stmt = select(CommissionTransactionRow).order_by(CommissionTransactionRow.created_at)
        if store_id is not None:
            stmt = stmt.where(CommissionTransactionRow.store_id == store_id)
        if escrow_id is not None:
            stmt = stmt.where(CommissionTransactionRow.escrow_id == escrow_id)
        with self._session_factory() as session:
            return [_commission_from_row(r) for r in session.scalars(stmt)]

    def record_refund(
        self,
        escrow: EscrowTransaction,
        refund: RefundRecord,
        adjustment: CommissionTransaction,
    ) -> None:
        if self.get_refund(refund.refund_request_id) is not None:
            raise DuplicateRefund(f"Refund request already applied: {refund.refund_request_id}")
        try:
            with self._session_factory.begin() as session:
                self._update_escrow(session, escrow)
                session.add(RefundRow(
                    refund_request_id=refund.refund_request_id,
                    escrow_id=refund.escrow_id,
                    store_id=refund.store_id,
                    amount=refund.amount,
                    commission_reversal=refund.commission_reversal,
                    created_at=_to_db(refund.created_at),
                    after_payout=refund.after_payout,
                    reason=refund.reason,
                ))
                session.add(_commission_row(adjustment))
        except IntegrityError as exc:
            raise DuplicateRefund(
                f"Refund request already applied: {refund.refund_request_id}"
            ) from exc
        escrow.version += 1

    def get_refund(self, refund_request_id: str) -> Optional[RefundRecord]:
        with self._session_factory() as session:
            row = session.get(RefundRow, refund_request_id)
            return _refund_from_row(row) if row is not None else None

    def refunds_for_store(self, store_id: str) -> List[RefundRecord]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(RefundRow)
                .where(RefundRow.store_id == store_id)
                .order_by(RefundRow.created_at)
            )
            return [_refund_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def claim_escrows(self, payout: Payout) -> None:
        with self._session_factory.begin() as session:
            session.add(PayoutRow(**_payout_values(payout), version=payout.version))
            session.flush()
            result = session.execute(
                update(EscrowRow)
                .where(
                    EscrowRow.escrow_id.in_(payout.escrow_ids),
                    EscrowRow.payout_id.is_(None),
                )
                .values(payout_id=payout.payout_id, version=EscrowRow.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != len(payout.escrow_ids):
                raise ConcurrencyConflict(
                    f"Escrows for payout {payout.payout_id} were claimed concurrently"
                )

    def get_payout(self, payout_id: str) -> Payout:
        with self._session_factory() as session:
            row = session.get(PayoutRow, payout_id)
            if row is None:
                raise RecordNotFound(f"Unknown payout ID: {payout_id}")
            return _payout_from_row(row)

    def save_payout(self, payout: Payout) -> None:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(PayoutRow)
                .where(
                    PayoutRow.payout_id == payout.payout_id,
                    PayoutRow.version == payout.version,
                )
                .values(**_payout_values(payout), version=payout.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if session.get(PayoutRow, payout.payout_id) is None:
                    raise RecordNotFound(f"Unknown payout ID: {payout.payout_id}")
                raise ConcurrencyConflict(
                    f"Payout {payout.payout_id} was modified concurrently"
                )
        payout.version += 1

    def payouts_for_store(self, store_id: str) -> List[Payout]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(PayoutRow)
                .where(PayoutRow.store_id == store_id)
                .order_by(PayoutRow.created_at)
            )
            return [_payout_from_row(r) for r in rows]

    def payouts_by_status(self, status: PayoutStatus) -> List[Payout]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(PayoutRow)
                .where(PayoutRow.status == status.value)
                .order_by(PayoutRow.created_at)
            )
            return [_payout_from_row(r) for r in rows]

    def save_schedule(self, schedule: PayoutSchedule) -> None:
        with self._session_factory.begin() as session:
            session.merge(PayoutScheduleRow(
                store_id=schedule.store_id,
                frequency=schedule.frequency.value,
                minimum_threshold=schedule.minimum_threshold,
                currency=schedule.currency,
                day_of_week=schedule.day_of_week,
                day_of_month=schedule.day_of_month,
                next_payout_date=schedule.next_payout_date,
                enabled=schedule.enabled,
                payout_method_id=schedule.payout_method_id,
            ))

    def get_schedule(self, store_id: str) -> Optional[PayoutSchedule]:
        with self._session_factory() as session:
            row = session.get(PayoutScheduleRow, store_id)
            return _schedule_from_row(row) if row is not None else None

    def schedules(self) -> List[PayoutSchedule]:
        with self._session_factory() as session:
            rows = session.scalars(select(PayoutScheduleRow).order_by(PayoutScheduleRow.store_id))
            return [_schedule_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    def current_settlement(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> Optional[Settlement]:
        with self._session_factory() as session:
            row = session.scalars(
                select(SettlementRow).where(
                    SettlementRow.store_id == store_id,
                    SettlementRow.period_start == _to_db(period_start),
                    SettlementRow.period_end == _to_db(period_end),
                    SettlementRow.is_current_version.is_(True),
                )
            ).first()
            if row is None:
                return None
            return _settlement_from_row(row, self._items(session, row.settlement_id))

    def replace_current_settlement(
        self, new: Settlement, expected: Optional[Settlement],
    ) -> None:
        conflict = ConcurrencyConflict(
            f"Settlement for store {new.store_id} period "
            f"{new.period_start.isoformat()} was regenerated concurrently"
        )
        try:
            with self._session_factory.begin() as session:
                if expected is not None:
                    result = session.execute(
                        update(SettlementRow)
                        .where(
                            SettlementRow.settlement_id == expected.settlement_id,
                            SettlementRow.is_current_version.is_(True),
                        )
                        .values(
                            is_current_version=False,
                            status=SettlementStatus.SUPERSEDED.value,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise conflict
                session.add(_settlement_row(new))
                session.flush()
                for position, item in enumerate(new.items):
                    session.add(SettlementItemRow(
                        settlement_id=new.settlement_id,
                        position=position,
                        escrow_id=item.escrow_id,
                        order_id=item.order_id,
                        sub_order_id=item.sub_order_id,
                        order_number=item.order_number,
                        order_date=_to_db(item.order_date),
                        gross_amount=item.gross_amount,
                        refund_amount=item.refund_amount,
                        commission_amount=item.commission_amount,
                        net_amount=item.net_amount,
                    ))
        except IntegrityError as exc:
            raise conflict from exc

    def get_settlement(self, settlement_id: str) -> Settlement:
        with self._session_factory() as session:
            row = session.get(SettlementRow, settlement_id)
            if row is None:
                raise RecordNotFound(f"Unknown settlement ID: {settlement_id}")
            return _settlement_from_row(row, self._items(session, settlement_id))

    def save_settlement(
        self, settlement: Settlement, expected_status: SettlementStatus,
    ) -> None:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(SettlementRow)
                .where(
                    SettlementRow.settlement_id == settlement.settlement_id,
                    SettlementRow.status == expected_status.value,
                    SettlementRow.is_current_version.is_(True),
                )
                .values(
                    status=settlement.status.value,
                    finalized_at=_to_db(settlement.finalized_at),
                    is_current_version=settlement.is_current_version,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                row = session.get(SettlementRow, settlement.settlement_id)
                if row is None:
                    raise RecordNotFound(f"Unknown settlement ID: {settlement.settlement_id}")
                raise ConcurrencyConflict(
                    f"Settlement {settlement.settlement_id} was modified concurrently "
                    f"(expected {expected_status.value}, found {row.status})"
                )

    def settlements_for_store(self, store_id: str) -> List[Settlement]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(SettlementRow)
                .where(SettlementRow.store_id == store_id)
                .order_by(SettlementRow.period_start, SettlementRow.version)
            ).all()
            return [
                _settlement_from_row(r, self._items(session, r.settlement_id))
                for r in rows
            ]

    def add_adjustment(self, adjustment: SettlementAdjustment) -> None:
        with self._session_factory.begin() as session:
            session.add(SettlementAdjustmentRow(
                adjustment_id=adjustment.adjustment_id,
                store_id=adjustment.store_id,
                period_start=_to_db(adjustment.period_start),
                period_end=_to_db(adjustment.period_end),
                adjustment_type=adjustment.adjustment_type.value,
                amount=adjustment.amount,
                description=adjustment.description,
                created_at=_to_db(adjustment.created_at),
                created_by=adjustment.created_by,
                related_settlement_id=adjustment.related_settlement_id,
            ))

    def adjustments_for_period(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> List[SettlementAdjustment]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(SettlementAdjustmentRow)
                .where(
                    SettlementAdjustmentRow.store_id == store_id,
                    SettlementAdjustmentRow.period_start == _to_db(period_start),
                    SettlementAdjustmentRow.period_end == _to_db(period_end),
                )
                .order_by(SettlementAdjustmentRow.created_at)
            )
            return [_adjustment_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Commission invoices
    # ------------------------------------------------------------------

    def add_invoice(self, invoice: CommissionInvoice) -> None:
        try:
            with self._session_factory.begin() as session:
                self._insert_invoice(session, invoice)
        except IntegrityError as exc:
            raise self._invoice_conflict(invoice) from exc

    def add_credit_note(
        self,
        credit_note: CommissionInvoice,
        original: CommissionInvoice,
        expected_status: InvoiceStatus,
    ) -> None:
        try:
            with self._session_factory.begin() as session:
                self._update_invoice(session, original, expected_status)
                self._insert_invoice(session, credit_note)
        except IntegrityError as exc:
            raise self._invoice_conflict(credit_note) from exc

    def get_invoice(self, invoice_id: str) -> CommissionInvoice:
        with self._session_factory() as session:
            row = session.get(InvoiceRow, invoice_id)
            if row is None:
                raise RecordNotFound(f"Unknown invoice ID: {invoice_id}")
            return _invoice_from_row(row, self._lines(session, invoice_id))

    def save_invoice(
        self, invoice: CommissionInvoice, expected_status: InvoiceStatus,
    ) -> None:
        with self._session_factory.begin() as session:
            self._update_invoice(session, invoice, expected_status)

    def invoices_for_store(self, store_id: str) -> List[CommissionInvoice]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(InvoiceRow)
                .where(InvoiceRow.store_id == store_id)
                .order_by(InvoiceRow.created_at, InvoiceRow.invoice_number)
            ).all()
            return [_invoice_from_row(r, self._lines(session, r.invoice_id)) for r in rows]

    def last_invoice_number(self, prefix: str) -> Optional[str]:
        with self._session_factory() as session:
            return session.scalars(
                select(InvoiceRow.invoice_number)
                .where(InvoiceRow.invoice_number.startswith(prefix, autoescape=True))
                .order_by(InvoiceRow.invoice_number.desc())
                .limit(1)
            ).first()

    # ------------------------------------------------------------------
    # Commission rates
    # ------------------------------------------------------------------

    def save_rate_entry(self, entry: RateEntry) -> None:
        with self._session_factory.begin() as session:
            session.merge(RateEntryRow(
                entry_id=entry.entry_id,
                source=entry.source.value,
                key=entry.key,
                percentage=entry.rate.percentage,
                fixed_amount=entry.rate.fixed_amount,
                version=entry.version,
                effective_from=_to_db(entry.effective_from),
                effective_to=_to_db(entry.effective_to),
                created_by=entry.created_by,
                revision=entry.revision,
            ))

    def rate_entries(self) -> List[RateEntry]:
        with self._session_factory() as session:
            rows = session.scalars(
                select(RateEntryRow).order_by(RateEntryRow.revision, RateEntryRow.version)
            )
            return [_rate_entry_from_row(r) for r in rows]

    def store_ids(self) -> List[str]:
        with self._session_factory() as session:
            ids = set(session.scalars(select(EscrowRow.store_id).distinct()))
            ids.update(session.scalars(select(PayoutScheduleRow.store_id)))
        return sorted(ids)

    @staticmethod
    def _items(session: Session, settlement_id: str) -> List[SettlementItemRow]:
        return list(session.scalars(
            select(SettlementItemRow).where(SettlementItemRow.settlement_id == settlement_id)
        ))

    @staticmethod
    def _lines(session: Session, invoice_id: str) -> List[InvoiceLineRow]:
        return list(session.scalars(
            select(InvoiceLineRow).where(InvoiceLineRow.invoice_id == invoice_id)
        ))

    @staticmethod
    def _insert_invoice(session: Session, invoice: CommissionInvoice) -> None:
        session.add(_invoice_row(invoice))
        session.flush()
        for position, line in enumerate(invoice.lines):
            session.add(InvoiceLineRow(
                invoice_id=invoice.invoice_id,
                position=position,
                transaction_id=line.transaction_id,
                description=line.description,
                amount=line.amount,
            ))

    @staticmethod
    def _update_invoice(
        session: Session, invoice: CommissionInvoice, expected_status: InvoiceStatus,
    ) -> None:
        result = session.execute(
            update(InvoiceRow)
            .where(
                InvoiceRow.invoice_id == invoice.invoice_id,
                InvoiceRow.status == expected_status.value,
            )
            .values(
                status=invoice.status.value,
                issued_at=_to_db(invoice.issued_at),
                paid_at=_to_db(invoice.paid_at),
                cancelled_at=_to_db(invoice.cancelled_at),
                notes=invoice.notes,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            row = session.get(InvoiceRow, invoice.invoice_id)
            if row is None:
                raise RecordNotFound(f"Unknown invoice ID: {invoice.invoice_id}")
            raise ConcurrencyConflict(
                f"Invoice {invoice.invoice_id} was modified concurrently "
                f"(expected {expected_status.value}, found {row.status})"
            )

    @staticmethod
    def _invoice_conflict(invoice: CommissionInvoice) -> ConcurrencyConflict:
        return ConcurrencyConflict(
            f"Invoice {invoice.invoice_number} for store {invoice.store_id} "
            f"conflicts with an existing invoice number or open invoice for the period"
        )
