"""Escrow models — per-seller holding records and the order data they come from.

One EscrowTransaction exists per (payment, seller sub-order) pair. It is
the unit of refund, payout and settlement.

Invariants:
- net_amount == gross_amount - commission_amount, fixed at allocation
- refunded_amount never exceeds gross_amount
- Released and ReturnedToBuyer are terminal

State machine:
    HELD → ELIGIBLE_FOR_PAYOUT → RELEASED
    HELD / ELIGIBLE_FOR_PAYOUT → PARTIALLY_REFUNDED → RELEASED
    any non-terminal → RETURNED_TO_BUYER   (fully refunded)
    any non-terminal → IN_DISPUTE → back to HELD / ELIGIBLE / PARTIALLY_REFUNDED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from marketledger.errors import InvalidTransition
from marketledger.models.money import ZERO, money_sum


class EscrowStatus(str, enum.Enum):
    HELD = "held"
    ELIGIBLE_FOR_PAYOUT = "eligible_for_payout"
    RELEASED = "released"
    RETURNED_TO_BUYER = "returned_to_buyer"
    IN_DISPUTE = "in_dispute"
    PARTIALLY_REFUNDED = "partially_refunded"


ESCROW_TRANSITIONS: Dict[EscrowStatus, frozenset] = {
    EscrowStatus.HELD: frozenset({
        EscrowStatus.ELIGIBLE_FOR_PAYOUT,
        EscrowStatus.PARTIALLY_REFUNDED,
        EscrowStatus.RETURNED_TO_BUYER,
        EscrowStatus.IN_DISPUTE,
    }),
    EscrowStatus.ELIGIBLE_FOR_PAYOUT: frozenset({
        EscrowStatus.RELEASED,
        EscrowStatus.PARTIALLY_REFUNDED,
        EscrowStatus.RETURNED_TO_BUYER,
        EscrowStatus.IN_DISPUTE,
    }),
    EscrowStatus.PARTIALLY_REFUNDED: frozenset({
        EscrowStatus.PARTIALLY_REFUNDED,
        EscrowStatus.RELEASED,
        EscrowStatus.RETURNED_TO_BUYER,
        EscrowStatus.IN_DISPUTE,
    }),
    EscrowStatus.IN_DISPUTE: frozenset({
        EscrowStatus.HELD,
        EscrowStatus.ELIGIBLE_FOR_PAYOUT,
        EscrowStatus.PARTIALLY_REFUNDED,
        EscrowStatus.RETURNED_TO_BUYER,
    }),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.RETURNED_TO_BUYER: frozenset(),
}

TERMINAL_ESCROW_STATUSES = frozenset({
    EscrowStatus.RELEASED,
    EscrowStatus.RETURNED_TO_BUYER,
})

# Statuses the payout aggregator may collect from.
PAYABLE_ESCROW_STATUSES = frozenset({
    EscrowStatus.HELD,
    EscrowStatus.ELIGIBLE_FOR_PAYOUT,
    EscrowStatus.PARTIALLY_REFUNDED,
})


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentConfirmation:
    """Captured payment as reported by the payment collaborator."""
    payment_id: str
    order_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    captured_at: Optional[datetime] = None


@dataclass(frozen=True)
class OrderLine:
    line_id: str
    category_id: str
    amount: Decimal


@dataclass(frozen=True)
class SubOrder:
    """One seller's share of a buyer order, as supplied by the order system."""
    sub_order_id: str
    order_id: str
    store_id: str
    ordered_at: datetime
    lines: List[OrderLine]
    shipping_amount: Decimal = ZERO
    order_number: str = ""
    delivered_at: Optional[datetime] = None

    @property
    def subtotal(self) -> Decimal:
        return money_sum(line.amount for line in self.lines)

    @property
    def gross_amount(self) -> Decimal:
        return self.subtotal + self.shipping_amount

    def dominant_line(self) -> OrderLine:
        """Largest line by amount; first one wins a tie."""
        if not self.lines:
            raise ValueError(f"Sub-order {self.sub_order_id} has no lines")
        return max(self.lines, key=lambda line: line.amount)


@dataclass
class EscrowTransaction:
    """Funds held for one seller sub-order of a captured payment."""
    escrow_id: str
    payment_id: str
    order_id: str
    sub_order_id: str
    store_id: str
    currency: str
    gross_amount: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    ordered_at: datetime
    created_at: datetime
    status: EscrowStatus = EscrowStatus.HELD
    order_number: str = ""
    category_id: Optional[str] = None
    eligible_at: Optional[datetime] = None
    refunded_amount: Decimal = ZERO
    commission_reversed: Decimal = ZERO
    payout_id: Optional[str] = None
    released_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    status_before_dispute: Optional[EscrowStatus] = None
    version: int = 0

    @property
    def available_to_refund(self) -> Decimal:
        return self.gross_amount - self.refunded_amount

    @property
    def remaining_commission(self) -> Decimal:
        return self.commission_amount - self.commission_reversed

    @property
    def payable_amount(self) -> Decimal:
        """What this escrow would pay the seller now."""
        return self.available_to_refund - self.remaining_commission

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ESCROW_STATUSES

    def transition_to(self, new_status: EscrowStatus) -> None:
        """Transition to a new status, enforcing the state machine."""
        allowed = ESCROW_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid escrow transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self.status = new_status


@dataclass(frozen=True)
class RefundRecord:
    """One applied refund. refund_request_id is unique across the ledger."""
    refund_request_id: str
    escrow_id: str
    store_id: str
    amount: Decimal
    commission_reversal: Decimal
    created_at: datetime
    after_payout: bool = False
    reason: str = ""
