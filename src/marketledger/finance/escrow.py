"""Escrow allocator — splits a captured payment into per-seller escrows.

For every seller sub-order of a captured payment one EscrowTransaction is
written, carrying gross (item subtotal + shipping), commission and net,
together with one Initial CommissionTransaction that copies the rate used.

Allocation is all-or-nothing:
- the payment must be captured
- a payment already allocated returns its existing escrows through
  DuplicateAllocation (safe to retry)
- sub-order grosses must add up to the captured amount exactly; a mismatch
  halts the payment for manual review and writes nothing

Eligibility: an escrow is held until delivery is confirmed, then for the
configured hold period. eligible_at = delivered_at + hold_period_days.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from marketledger.config import LedgerConfig
from marketledger.errors import (
    AllocationMismatch,
    DuplicateAllocation,
    PaymentNotConfirmed,
)
from marketledger.finance.rates import CommissionRateBook
from marketledger.finance.resolver import CommissionResolver
from marketledger.models.commission import (
    CommissionQuote,
    CommissionTransaction,
    CommissionTransactionType,
    MultiCategoryPolicy,
)
from marketledger.models.escrow import (
    EscrowStatus,
    EscrowTransaction,
    PaymentConfirmation,
    PaymentStatus,
    SubOrder,
)
from marketledger.models.money import money_sum
from marketledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


class EscrowAllocator:
    """Creates and maintains escrow records.

    Usage:
        allocator = EscrowAllocator(store, rate_book, config)
        escrows = allocator.allocate(payment, sub_orders, now=now)
        allocator.mark_delivered(escrows[0].escrow_id, delivered_at)
    """

    def __init__(
        self,
        store: LedgerStore,
        rate_book: CommissionRateBook,
        config: LedgerConfig,
    ) -> None:
        self._store = store
        self._rate_book = rate_book
        self._config = config

    def allocate(
        self,
        payment: PaymentConfirmation,
        sub_orders: Sequence[SubOrder],
        now: Optional[datetime] = None,
        policy: Optional[MultiCategoryPolicy] = None,
    ) -> List[EscrowTransaction]:
        """Write one escrow per seller sub-order of a captured payment.

        Raises:
            PaymentNotConfirmed: payment is not captured.
            DuplicateAllocation: escrows already exist for the payment.
            AllocationMismatch: sub-order totals differ from the captured
                amount, or the payment was halted by an earlier mismatch.
            ConfigurationMissing: no commission rate is effective.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        if policy is None:
            policy = self._config.multi_category_policy

        if payment.status != PaymentStatus.CAPTURED:
            raise PaymentNotConfirmed(
                f"Payment {payment.payment_id} is {payment.status.value}, not captured"
            )
        existing = self._store.escrows_for_payment(payment.payment_id)
        if existing:
            raise DuplicateAllocation(payment.payment_id, existing)

        allocated = money_sum(sub.gross_amount for sub in sub_orders)
        if self._store.is_payment_halted(payment.payment_id):
            raise AllocationMismatch(payment.payment_id, payment.amount, allocated)
        if not sub_orders or allocated != payment.amount:
            self._store.halt_payment(
                payment.payment_id,
                f"captured {payment.amount}, sub-orders total {allocated}",
            )
            logger.error(
                "Allocation halted for payment %s: captured %s, sub-orders total %s",
                payment.payment_id, payment.amount, allocated,
            )
            raise AllocationMismatch(payment.payment_id, payment.amount, allocated)

        resolver = CommissionResolver(
            self._rate_book.snapshot(now),
            strict=self._config.reject_commission_over_gross,
        )
        hold = timedelta(days=self._config.hold_period_days)

        escrows: List[EscrowTransaction] = []
        transactions: List[CommissionTransaction] = []
        for sub in sub_orders:
            commission, primary, notes = self._commission_for(sub, resolver, policy)
            escrow = EscrowTransaction(
                escrow_id=f"escrow_{uuid4().hex[:12]}",
                payment_id=payment.payment_id,
                order_id=sub.order_id,
                sub_order_id=sub.sub_order_id,
                store_id=sub.store_id,
                currency=payment.currency,
                gross_amount=sub.gross_amount,
                commission_amount=commission,
                net_amount=sub.gross_amount - commission,
                ordered_at=sub.ordered_at,
                created_at=now,
                order_number=sub.order_number,
                category_id=primary.category_id,
                eligible_at=sub.delivered_at + hold if sub.delivered_at else None,
            )
            escrows.append(escrow)
            transactions.append(CommissionTransaction(
                transaction_id=f"ctx_{uuid4().hex[:12]}",
                escrow_id=escrow.escrow_id,
                store_id=sub.store_id,
                transaction_type=CommissionTransactionType.INITIAL,
                gross_amount=escrow.gross_amount,
                percentage=primary.percentage,
                fixed_amount=primary.fixed_amount,
                commission_amount=commission,
                source=primary.source,
                category_id=primary.category_id,
                rate_revision=primary.rate_revision,
                created_at=now,
                notes=notes,
            ))

        self._store.add_escrows(payment.payment_id, escrows, transactions)
        logger.info(
            "Allocated payment %s into %d escrows (gross %s)",
            payment.payment_id, len(escrows), allocated,
        )
        return escrows

    def mark_delivered(
        self,
        escrow_id: str,
        delivered_at: datetime,
    ) -> EscrowTransaction:
        """Start the eligibility hold from the delivery time.

        A second confirmation for an escrow whose hold is already running
        leaves eligible_at unchanged.
        """
        escrow = self._store.get_escrow(escrow_id)
        if escrow.eligible_at is not None:
            return escrow
        if escrow.is_terminal:
            raise ValueError(
                f"Escrow {escrow_id} is {escrow.status.value}; delivery no longer applies"
            )
        escrow.eligible_at = delivered_at + timedelta(days=self._config.hold_period_days)
        self._store.save_escrow(escrow)
        return escrow

    def open_dispute(self, escrow_id: str) -> EscrowTransaction:
        """Freeze an escrow while a buyer dispute is open."""
        escrow = self._store.get_escrow(escrow_id)
        if escrow.payout_id is not None:
            raise ValueError(
                f"Escrow {escrow_id} is already part of payout {escrow.payout_id}"
            )
        previous = escrow.status
        escrow.transition_to(EscrowStatus.IN_DISPUTE)
        escrow.status_before_dispute = previous
        self._store.save_escrow(escrow)
        return escrow

    def resolve_dispute(self, escrow_id: str) -> EscrowTransaction:
        """Return a disputed escrow to the status it had before the dispute."""
        escrow = self._store.get_escrow(escrow_id)
        if escrow.status != EscrowStatus.IN_DISPUTE:
            raise ValueError(f"Escrow {escrow_id} is not in dispute")
        escrow.transition_to(escrow.status_before_dispute or EscrowStatus.HELD)
        escrow.status_before_dispute = None
        self._store.save_escrow(escrow)
        return escrow

    def _commission_for(
        self,
        sub: SubOrder,
        resolver: CommissionResolver,
        policy: MultiCategoryPolicy,
    ) -> Tuple[Decimal, CommissionQuote, str]:
        """Return (commission, primary quote, breakdown notes) for a sub-order.

        Shipping is charged at the rate of the largest line.
        """
        dominant = sub.dominant_line()
        if policy == MultiCategoryPolicy.DOMINANT_CATEGORY:
            quote = resolver.resolve(sub.store_id, dominant.category_id, sub.gross_amount)
            return quote.commission_amount, quote, ""

        commission = Decimal("0.00")
        primary: Optional[CommissionQuote] = None
        notes: List[str] = []
        for line in sub.lines:
            is_dominant = line is dominant
            amount = line.amount + sub.shipping_amount if is_dominant else line.amount
            quote = resolver.resolve(
                sub.store_id, line.category_id, amount, include_fixed=is_dominant,
            )
            commission += quote.commission_amount
            notes.append(f"{line.line_id}:{quote.percentage}%={quote.commission_amount}")
            if is_dominant:
                primary = quote
        return commission, primary, "; ".join(notes)
