"""Settlement models — versioned per-store, per-period reports.

A settlement is never edited after it is built. Regenerating a period
produces a new version; the old row is marked Superseded and keeps its
figures for audit.

Invariant:
    net_amount == gross_sales - refunds - commission + adjustments

State machine:
    DRAFT → FINALIZED
    DRAFT / FINALIZED → SUPERSEDED   (only by a newer build)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from marketledger.errors import InvalidTransition
from marketledger.models.money import ZERO


class SettlementStatus(str, enum.Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    SUPERSEDED = "superseded"


SETTLEMENT_TRANSITIONS: Dict[SettlementStatus, frozenset] = {
    SettlementStatus.DRAFT: frozenset({
        SettlementStatus.FINALIZED,
        SettlementStatus.SUPERSEDED,
    }),
    SettlementStatus.FINALIZED: frozenset({SettlementStatus.SUPERSEDED}),
    SettlementStatus.SUPERSEDED: frozenset(),
}


class SettlementAdjustmentType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    FEE = "fee"
    PRIOR_PERIOD_ADJUSTMENT = "prior_period_adjustment"
    CORRECTION = "correction"


@dataclass(frozen=True)
class SettlementItem:
    """One escrow's contribution to a settlement."""
    escrow_id: str
    order_id: str
    sub_order_id: str
    order_number: str
    order_date: datetime
    gross_amount: Decimal
    refund_amount: Decimal
    commission_amount: Decimal
    net_amount: Decimal


@dataclass(frozen=True)
class SettlementAdjustment:
    """Manual correction tagged to a store and period.

    amount is signed: positive credits the seller, negative debits.
    """
    adjustment_id: str
    store_id: str
    period_start: datetime
    period_end: datetime
    adjustment_type: SettlementAdjustmentType
    amount: Decimal
    description: str
    created_at: datetime
    created_by: Optional[str] = None
    related_settlement_id: Optional[str] = None

    @property
    def is_prior_period(self) -> bool:
        return self.adjustment_type == SettlementAdjustmentType.PRIOR_PERIOD_ADJUSTMENT


@dataclass
class Settlement:
    settlement_id: str
    settlement_number: str
    store_id: str
    period_start: datetime
    period_end: datetime
    currency: str
    generated_at: datetime
    gross_sales: Decimal = ZERO
    refunds: Decimal = ZERO
    commission: Decimal = ZERO
    adjustments: Decimal = ZERO
    net_amount: Decimal = ZERO
    total_payouts: Decimal = ZERO
    status: SettlementStatus = SettlementStatus.DRAFT
    version: int = 1
    is_current_version: bool = True
    previous_settlement_id: Optional[str] = None
    finalized_at: Optional[datetime] = None
    items: List[SettlementItem] = field(default_factory=list)
    adjustment_ids: List[str] = field(default_factory=list)

    def reconciles(self) -> bool:
        return self.net_amount == (
            self.gross_sales - self.refunds - self.commission + self.adjustments
        )

    def transition_to(self, new_status: SettlementStatus) -> None:
        """Transition to a new status, enforcing the state machine."""
        allowed = SETTLEMENT_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid settlement transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self.status = new_status


@dataclass(frozen=True)
class SettlementSummary:
    """Preview of a period's figures without persisting a settlement."""
    store_id: str
    period_start: datetime
    period_end: datetime
    gross_sales: Decimal
    refunds: Decimal
    commission: Decimal
    adjustments: Decimal
    net_amount: Decimal
    total_payouts: Decimal
    order_count: int
    current_settlement_id: Optional[str] = None
