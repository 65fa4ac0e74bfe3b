"""Commission invoice models — what the platform bills a seller per period.

An invoice lists the commission transactions posted for a store in one
period. Refund reversals appear as negative lines, so the subtotal is the
net commission the seller owes.

Invariant:
    total_amount == subtotal + tax_amount

A credit note negates every line and figure of the invoice it corrects;
creating one marks the original Superseded, after which the period can be
invoiced again.

State machine:
    DRAFT → ISSUED → PAID
    DRAFT / ISSUED → CANCELLED
    DRAFT / ISSUED / PAID → SUPERSEDED   (only by a credit note)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from marketledger.errors import InvalidTransition
from marketledger.models.money import ZERO


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


INVOICE_TRANSITIONS: Dict[InvoiceStatus, frozenset] = {
    InvoiceStatus.DRAFT: frozenset({
        InvoiceStatus.ISSUED,
        InvoiceStatus.CANCELLED,
        InvoiceStatus.SUPERSEDED,
    }),
    InvoiceStatus.ISSUED: frozenset({
        InvoiceStatus.PAID,
        InvoiceStatus.CANCELLED,
        InvoiceStatus.SUPERSEDED,
    }),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.SUPERSEDED}),
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.SUPERSEDED: frozenset(),
}

# Statuses that still bill the period; a new invoice is refused while one exists.
OPEN_INVOICE_STATUSES = frozenset({
    InvoiceStatus.DRAFT,
    InvoiceStatus.ISSUED,
    InvoiceStatus.PAID,
})


@dataclass(frozen=True)
class InvoiceLine:
    """One commission transaction billed on an invoice."""
    transaction_id: str
    description: str
    amount: Decimal


@dataclass
class CommissionInvoice:
    invoice_id: str
    invoice_number: str
    store_id: str
    period_start: datetime
    period_end: datetime
    currency: str
    created_at: datetime
    due_date: datetime
    subtotal: Decimal = ZERO
    tax_percentage: Decimal = Decimal("0")
    tax_amount: Decimal = ZERO
    total_amount: Decimal = ZERO
    status: InvoiceStatus = InvoiceStatus.DRAFT
    is_credit_note: bool = False
    corrects_invoice_id: Optional[str] = None
    notes: str = ""
    issued_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    lines: List[InvoiceLine] = field(default_factory=list)

    def reconciles(self) -> bool:
        return self.total_amount == self.subtotal + self.tax_amount

    def transition_to(self, new_status: InvoiceStatus) -> None:
        """Transition to a new status, enforcing the state machine."""
        allowed = INVOICE_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise InvalidTransition(
                f"Invalid invoice transition: {self.status.value} → {new_status.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        self.status = new_status
