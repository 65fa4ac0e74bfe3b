"""Settlement builder — versioned per-store, per-period settlement reports.

Figures for a period [period_start, period_end] (both inclusive):
    gross_sales  = Σ gross of escrows ordered in the period
    refunds      = Σ refunds applied in the period
    commission   = Σ commission transactions posted in the period
                   (initial charges positive, refund reversals negative)
    adjustments  = Σ manual adjustments tagged to the store and period
    net_amount   = gross_sales - refunds - commission + adjustments
    total_payouts = Σ payouts paid out in the period (informational)

Rebuilding a period never edits the existing row. The current version is
marked Superseded and a new version points back at it. A Finalized
settlement is only superseded when the caller forces the rebuild.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from marketledger.config import LedgerConfig
from marketledger.errors import LedgerError, SettlementAlreadyFinalized
from marketledger.models.money import ZERO, MoneyLike, money_sum, to_money
from marketledger.models.payout import PayoutStatus
from marketledger.models.settlement import (
    Settlement,
    SettlementAdjustment,
    SettlementAdjustmentType,
    SettlementItem,
    SettlementStatus,
    SettlementSummary,
)
from marketledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PeriodFigures:
    items: List[SettlementItem]
    gross_sales: Decimal
    refunds: Decimal
    commission: Decimal
    adjustments: Decimal
    total_payouts: Decimal
    adjustment_ids: List[str]

    @property
    def net_amount(self) -> Decimal:
        return self.gross_sales - self.refunds - self.commission + self.adjustments


def month_period(year: int, month: int) -> Tuple[datetime, datetime]:
    """First and last instant (UTC) of a calendar month."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        next_start = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        next_start = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, next_start - timedelta(microseconds=1)


def _in_period(moment: Optional[datetime], start: datetime, end: datetime) -> bool:
    return moment is not None and start <= moment <= end


class SettlementBuilder:
    """Builds, finalizes and exports settlements.

    Usage:
        builder = SettlementBuilder(store, config)
        settlement = builder.build("store_1", start, end, now=now)
        builder.finalize(settlement.settlement_id, now=now)
        csv_text = builder.export_csv(settlement.settlement_id)
    """

    def __init__(self, store: LedgerStore, config: LedgerConfig) -> None:
        self._store = store
        self._config = config

    def build(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """Generate a new current settlement version for the period.

        Raises:
            ValueError: period_end is not after period_start.
            SettlementAlreadyFinalized: the current version is finalized
                and force is False.
            ConcurrencyConflict: another build replaced the current
                version first.
        """
        _check_period(period_start, period_end)
        if now is None:
            now = datetime.now(timezone.utc)

        current = self._store.current_settlement(store_id, period_start, period_end)
        if current is not None and current.status == SettlementStatus.FINALIZED and not force:
            raise SettlementAlreadyFinalized(
                f"Settlement {current.settlement_number} is finalized; "
                f"regeneration requires force"
            )

        figures = self._compute(store_id, period_start, period_end)
        version = current.version + 1 if current is not None else 1
        settlement = Settlement(
            settlement_id=f"settlement_{uuid4().hex[:12]}",
            settlement_number=(
                f"STL-{store_id}-{period_start:%Y%m%d}-{period_end:%Y%m%d}-V{version}"
            ),
            store_id=store_id,
            period_start=period_start,
            period_end=period_end,
            currency=self._currency_for(store_id),
            generated_at=now,
            gross_sales=figures.gross_sales,
            refunds=figures.refunds,
            commission=figures.commission,
            adjustments=figures.adjustments,
            net_amount=figures.net_amount,
            total_payouts=figures.total_payouts,
            version=version,
            previous_settlement_id=current.settlement_id if current is not None else None,
            items=figures.items,
            adjustment_ids=figures.adjustment_ids,
        )
        self._store.replace_current_settlement(settlement, expected=current)

        if current is not None:
            logger.info(
                "Settlement %s superseded by version %d",
                current.settlement_number, version,
            )
        logger.info(
            "Generated settlement %s: gross %s, refunds %s, commission %s, "
            "adjustments %s, net %s",
            settlement.settlement_number, settlement.gross_sales, settlement.refunds,
            settlement.commission, settlement.adjustments, settlement.net_amount,
        )
        return settlement

    def finalize(self, settlement_id: str, now: Optional[datetime] = None) -> Settlement:
        """Lock a Draft settlement. Finalizing twice is a no-op.

        Raises ConcurrencyConflict when the settlement was regenerated or
        finalized by someone else after it was read.
        """
        settlement = self._store.get_settlement(settlement_id)
        if settlement.status == SettlementStatus.FINALIZED:
            return settlement
        if now is None:
            now = datetime.now(timezone.utc)
        previous_status = settlement.status
        settlement.transition_to(SettlementStatus.FINALIZED)
        settlement.finalized_at = now
        self._store.save_settlement(settlement, expected_status=previous_status)
        logger.info("Finalized settlement %s", settlement.settlement_number)
        return settlement

    def add_adjustment(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        adjustment_type: SettlementAdjustmentType,
        amount: MoneyLike,
        description: str,
        created_by: Optional[str] = None,
        related_settlement_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SettlementAdjustment:
        """Record a manual correction for a store and period.

        Debits and fees always reduce the seller's net, credits always
        increase it; corrections and prior-period adjustments keep the
        sign they were given.
        """
        _check_period(period_start, period_end)
        value = to_money(amount)
        if value == ZERO:
            raise ValueError("Adjustment amount must be non-zero")
        if not description.strip():
            raise ValueError("Adjustment description is required")
        if adjustment_type in (SettlementAdjustmentType.DEBIT, SettlementAdjustmentType.FEE):
            value = -abs(value)
        elif adjustment_type == SettlementAdjustmentType.CREDIT:
            value = abs(value)

        current = self._store.current_settlement(store_id, period_start, period_end)
        if current is not None and current.status == SettlementStatus.FINALIZED:
            raise SettlementAlreadyFinalized(
                f"Cannot adjust finalized settlement {current.settlement_number}"
            )
        if now is None:
            now = datetime.now(timezone.utc)

        adjustment = SettlementAdjustment(
            adjustment_id=f"adj_{uuid4().hex[:12]}",
            store_id=store_id,
            period_start=period_start,
            period_end=period_end,
            adjustment_type=adjustment_type,
            amount=value,
            description=description,
            created_at=now,
            created_by=created_by,
            related_settlement_id=related_settlement_id,
        )
        self._store.add_adjustment(adjustment)
        logger.info(
            "Recorded %s adjustment of %s for store %s",
            adjustment_type.value, value, store_id,
        )
        return adjustment

    def summary(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> SettlementSummary:
        """Preview a period's figures without writing a settlement."""
        _check_period(period_start, period_end)
        figures = self._compute(store_id, period_start, period_end)
        current = self._store.current_settlement(store_id, period_start, period_end)
        return SettlementSummary(
            store_id=store_id,
            period_start=period_start,
            period_end=period_end,
            gross_sales=figures.gross_sales,
            refunds=figures.refunds,
            commission=figures.commission,
            adjustments=figures.adjustments,
            net_amount=figures.net_amount,
            total_payouts=figures.total_payouts,
            order_count=len(figures.items),
            current_settlement_id=current.settlement_id if current is not None else None,
        )

    def build_monthly(
        self,
        year: int,
        month: int,
        store_ids: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Settlement], Dict[str, str]]:
        """Build the calendar-month settlement for every store.

        Returns the settlements built and, per store that failed, the
        error message. One store's failure does not stop the others.
        """
        start, end = month_period(year, month)
        if store_ids is None:
            store_ids = self._store.store_ids()
        built: List[Settlement] = []
        failures: Dict[str, str] = {}
        for store_id in store_ids:
            try:
                built.append(self.build(store_id, start, end, now=now))
            except LedgerError as exc:
                logger.warning(
                    "Monthly settlement %04d-%02d for store %s failed: %s",
                    year, month, store_id, exc,
                )
                failures[store_id] = str(exc)
        return built, failures

    def export_csv(self, settlement_id: str) -> str:
        """Render a settlement as a sectioned CSV report."""
        settlement = self._store.get_settlement(settlement_id)
        adjustments = [
            a for a in self._store.adjustments_for_period(
                settlement.store_id, settlement.period_start, settlement.period_end,
            )
            if a.adjustment_id in settlement.adjustment_ids
        ]

        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Settlement Report"])
        writer.writerow(["Settlement Number", settlement.settlement_number])
        writer.writerow(["Store", settlement.store_id])
        writer.writerow(["Period Start", settlement.period_start.isoformat()])
        writer.writerow(["Period End", settlement.period_end.isoformat()])
        writer.writerow(["Status", settlement.status.value])
        writer.writerow(["Version", settlement.version])
        writer.writerow(["Currency", settlement.currency])
        writer.writerow([])

        writer.writerow(["Summary"])
        writer.writerow(["Gross Sales", settlement.gross_sales])
        writer.writerow(["Refunds", settlement.refunds])
        writer.writerow(["Commission", settlement.commission])
        writer.writerow(["Adjustments", settlement.adjustments])
        writer.writerow(["Net Amount", settlement.net_amount])
        writer.writerow(["Total Payouts", settlement.total_payouts])
        writer.writerow([])

        writer.writerow(["Order Details"])
        writer.writerow([
            "Order Number", "Sub-Order", "Order Date", "Gross", "Refund",
            "Commission", "Net",
        ])
        for item in settlement.items:
            writer.writerow([
                item.order_number or item.order_id,
                item.sub_order_id,
                item.order_date.isoformat(),
                item.gross_amount,
                item.refund_amount,
                item.commission_amount,
                item.net_amount,
            ])

        if adjustments:
            writer.writerow([])
            writer.writerow(["Adjustments"])
            writer.writerow(["Type", "Amount", "Description", "Created At"])
            for adjustment in adjustments:
                writer.writerow([
                    adjustment.adjustment_type.value,
                    adjustment.amount,
                    adjustment.description,
                    adjustment.created_at.isoformat(),
                ])
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _compute(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> _PeriodFigures:
        escrows = sorted(
            (
                e for e in self._store.escrows_for_store(store_id)
                if _in_period(e.ordered_at, period_start, period_end)
            ),
            key=lambda e: (e.ordered_at, e.escrow_id),
        )
        items = [
            SettlementItem(
                escrow_id=e.escrow_id,
                order_id=e.order_id,
                sub_order_id=e.sub_order_id,
                order_number=e.order_number,
                order_date=e.ordered_at,
                gross_amount=e.gross_amount,
                refund_amount=e.refunded_amount,
                commission_amount=e.remaining_commission,
                net_amount=e.payable_amount,
            )
            for e in escrows
        ]
        refunds = money_sum(
            r.amount for r in self._store.refunds_for_store(store_id)
            if _in_period(r.created_at, period_start, period_end)
        )
        commission = money_sum(
            tx.commission_amount
            for tx in self._store.commission_transactions(store_id=store_id)
            if _in_period(tx.created_at, period_start, period_end)
        )
        adjustments = self._store.adjustments_for_period(store_id, period_start, period_end)
        total_payouts = money_sum(
            p.amount for p in self._store.payouts_for_store(store_id)
            if p.status == PayoutStatus.PAID
            and _in_period(p.completed_at, period_start, period_end)
        )
        return _PeriodFigures(
            items=items,
            gross_sales=money_sum(e.gross_amount for e in escrows),
            refunds=refunds,
            commission=commission,
            adjustments=money_sum(a.amount for a in adjustments),
            total_payouts=total_payouts,
            adjustment_ids=[a.adjustment_id for a in adjustments],
        )

    def _currency_for(self, store_id: str) -> str:
        schedule = self._store.get_schedule(store_id)
        return schedule.currency if schedule is not None else self._config.currency


def _check_period(period_start: datetime, period_end: datetime) -> None:
    if period_end <= period_start:
        raise ValueError(
            f"Settlement period end {period_end.isoformat()} must be after "
            f"start {period_start.isoformat()}"
        )
