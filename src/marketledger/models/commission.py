"""Commission models — rates, rate sources, quotes and the commission audit trail.

Rate precedence: category override > seller override > global config.
A CommissionTransaction copies the rate it was computed with; it never
refers back to a live config row, so editing or retiring a config cannot
change a historical commission.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from marketledger.models.money import ZERO


class CommissionSource(str, enum.Enum):
    """Which tier of the override chain supplied a rate."""
    GLOBAL = "global"
    SELLER = "seller"
    CATEGORY = "category"


class CommissionTransactionType(str, enum.Enum):
    INITIAL = "initial"
    REFUND_ADJUSTMENT = "refund_adjustment"


class MultiCategoryPolicy(str, enum.Enum):
    """How a sub-order whose lines span several categories is charged.

    PER_ITEM: each line is charged at its own category's percentage; the
        fixed fee is charged once, from the largest line's rate.
    DOMINANT_CATEGORY: the whole sub-order is charged at the rate of the
        largest line's category.
    """
    PER_ITEM = "per_item"
    DOMINANT_CATEGORY = "dominant_category"


@dataclass(frozen=True)
class CommissionRate:
    """A percentage (0-100) plus a fixed per-sale amount."""
    percentage: Decimal
    fixed_amount: Decimal = ZERO

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.percentage <= Decimal("100"):
            raise ValueError(
                f"Commission percentage must be within [0, 100], got {self.percentage}"
            )
        if self.fixed_amount < Decimal("0"):
            raise ValueError(
                f"Fixed commission must be non-negative, got {self.fixed_amount}"
            )


@dataclass(frozen=True)
class RateEntry:
    """One effective-dated version of a rate source.

    key is None for the global config, the category id for category
    overrides and the seller (store) id for seller overrides.
    revision is the book revision at which this version was last written.
    """
    entry_id: str
    source: CommissionSource
    key: Optional[str]
    rate: CommissionRate
    version: int
    effective_from: datetime
    effective_to: Optional[datetime] = None
    created_by: Optional[str] = None
    revision: int = 0

    def is_effective(self, at: datetime) -> bool:
        if at < self.effective_from:
            return False
        return self.effective_to is None or at < self.effective_to


@dataclass(frozen=True)
class RateSnapshot:
    """Immutable view of every rate effective at one instant."""
    as_of: datetime
    revision: int
    global_rate: Optional[RateEntry] = None
    categories: Dict[str, RateEntry] = field(default_factory=dict)
    sellers: Dict[str, RateEntry] = field(default_factory=dict)


@dataclass(frozen=True)
class CommissionQuote:
    """Outcome of resolving and computing commission for one sale amount."""
    gross_amount: Decimal
    percentage: Decimal
    fixed_amount: Decimal
    commission_amount: Decimal
    source: CommissionSource
    category_id: Optional[str] = None
    exceeds_gross: bool = False
    rate_revision: int = 0

    @property
    def net_amount(self) -> Decimal:
        return self.gross_amount - self.commission_amount


@dataclass(frozen=True)
class CommissionTransaction:
    """Append-only record of one commission calculation.

    Initial transactions carry a positive commission; refund adjustments
    carry the reversed amount as a negative commission.
    """
    transaction_id: str
    escrow_id: str
    store_id: str
    transaction_type: CommissionTransactionType
    gross_amount: Decimal
    percentage: Decimal
    fixed_amount: Decimal
    commission_amount: Decimal
    source: CommissionSource
    created_at: datetime
    category_id: Optional[str] = None
    refund_request_id: Optional[str] = None
    rate_revision: int = 0
    notes: str = ""
