"""Payout models — schedules, payout batches and rail transfer results.

State machine:
    SCHEDULED → PROCESSING → PAID
    PROCESSING → FAILED → PROCESSING   (retry while retry_count < max)
    SCHEDULED / FAILED → CANCELLED      (every escrow refunded before transfer)

Paid and Cancelled are terminal. A Failed payout whose retries are
exhausted stays Failed until an administrator releases its escrows.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from marketledger.errors import InvalidTransition


class PayoutStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


PAYOUT_TRANSITIONS: Dict[PayoutStatus, frozenset] = {
    PayoutStatus.SCHEDULED: frozenset({PayoutStatus.PROCESSING, PayoutStatus.CANCELLED}),
    PayoutStatus.PROCESSING: frozenset({PayoutStatus.PAID, PayoutStatus.FAILED}),
    PayoutStatus.FAILED: frozenset({PayoutStatus.PROCESSING, PayoutStatus.CANCELLED}),
    PayoutStatus.PAID: frozenset(),
    PayoutStatus.CANCELLED: frozenset(),
}


class PayoutFrequency(str, enum.Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


@dataclass
class PayoutSchedule:
    """How often, and from what balance, a store is paid out.

    day_of_week follows datetime.weekday(): 0 is Monday, 6 is Sunday.
    day_of_month is capped at 28 so every month has the day.
    """
    store_id: str
    frequency: PayoutFrequency
    minimum_threshold: Decimal
    currency: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    next_payout_date: Optional[date] = None
    enabled: bool = True
    payout_method_id: Optional[str] = None


@dataclass
class Payout:
    """One transfer to a seller covering a batch of escrows."""
    payout_id: str
    payout_number: str
    store_id: str
    escrow_ids: List[str]
    amount: Decimal
    currency: str
    scheduled_date: date
    created_at: datetime
    max_retry_attempts: int
    status: PayoutStatus = PayoutStatus.SCHEDULED
    payout_method_id: Optional[str] = None
    retry_count: int = 0
    next_retry_date: Optional[datetime] = None
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    error_reference: Optional[str] = None
    external_reference: Optional[str] = None
    escrows_released_by_admin: bool = False
    version: int = 0

    @property
    def retries_exhausted(self) -> bool:
        return (
            self.status == PayoutStatus.FAILED
            and self.retry_count >= self.max_retry_attempts
        )

    def is_retry_due(self, now: datetime) -> bool:
        return (
            self.status == PayoutStatus.FAILED
            and self.retry_count < self.max_retry_attempts
            and self.next_retry_date is not None
            and self.next_retry_date <= now
        )

    def transition_to(self, new_status: PayoutStatus) -> None:
        """Transition to a new status, enforcing the state machine."""
        allowed = PAYOUT_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid payout transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self.status = new_status


@dataclass(frozen=True)
class TransferResult:
    """What the payout rail reports for one transfer attempt."""
    success: bool
    external_reference: Optional[str] = None
    error_message: Optional[str] = None
    error_reference: Optional[str] = None


@dataclass(frozen=True)
class BalanceSummary:
    """A store's payout position at one instant."""
    store_id: str
    currency: str
    as_of: datetime
    available: Decimal
    pending: Decimal
    in_payout: Decimal
    eligible_escrow_count: int
    minimum_threshold: Decimal
    next_payout_date: Optional[date] = None
    totals_by_status: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def meets_threshold(self) -> bool:
        return self.available >= self.minimum_threshold
