"""Refund adjuster — applies buyer refunds against escrows.

Commission is reversed in proportion to the refund:

    reversal = round2(original_commission * refund / original_gross)

The refund that empties an escrow reverses whatever commission is still
outstanding, so the reversals of a fully refunded escrow always add up to
its original commission exactly.

A refund against an escrow that has already been paid out (Released)
still posts its bookkeeping: refunded amount, commission adjustment and a
refund record flagged after_payout. The escrow stays Released and no
claw-back transfer is attempted. The same holds while the escrow's payout
is being sent. A refund against an escrow that is only claimed by a
Scheduled or Failed payout is not after_payout: the payout is re-totalled
before its next transfer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from marketledger.errors import DuplicateRefund, RefundExceedsAvailable
from marketledger.models.commission import (
    CommissionSource,
    CommissionTransaction,
    CommissionTransactionType,
)
from marketledger.models.escrow import EscrowStatus, EscrowTransaction, RefundRecord
from marketledger.models.money import ZERO, MoneyLike, round2, to_money
from marketledger.models.payout import PayoutStatus
from marketledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefundOutcome:
    escrow: EscrowTransaction
    commission_adjustment: CommissionTransaction
    refund: RefundRecord


class RefundAdjuster:
    """Applies refunds with proportional commission reversal.

    Usage:
        adjuster = RefundAdjuster(store)
        outcome = adjuster.apply_refund(escrow_id, Decimal("40.00"), "rr_1")
        outcome.commission_adjustment.commission_amount   # Decimal("-4.20")
    """

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    def apply_refund(
        self,
        escrow_id: str,
        refund_amount: MoneyLike,
        refund_request_id: str,
        now: Optional[datetime] = None,
        reason: str = "",
    ) -> RefundOutcome:
        """Apply one refund request to an escrow.

        Raises:
            ValueError: refund_amount is not positive.
            DuplicateRefund: refund_request_id was already applied.
            RefundExceedsAvailable: refund is larger than the unrefunded gross.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        amount = to_money(refund_amount)
        if amount <= ZERO:
            raise ValueError(f"Refund amount must be positive, got {amount}")
        if self._store.get_refund(refund_request_id) is not None:
            raise DuplicateRefund(f"Refund request already applied: {refund_request_id}")

        escrow = self._store.get_escrow(escrow_id)
        if amount > escrow.available_to_refund:
            raise RefundExceedsAvailable(
                f"Refund {amount} exceeds available {escrow.available_to_refund} "
                f"on escrow {escrow_id}"
            )

        reversal = self._reversal_for(escrow, amount)
        initial = self._initial_transaction(escrow)
        after_payout = escrow.status == EscrowStatus.RELEASED or self._payout_sent(escrow)

        escrow.refunded_amount += amount
        escrow.commission_reversed += reversal
        self._update_status(escrow, now)

        adjustment = CommissionTransaction(
            transaction_id=f"ctx_{uuid4().hex[:12]}",
            escrow_id=escrow.escrow_id,
            store_id=escrow.store_id,
            transaction_type=CommissionTransactionType.REFUND_ADJUSTMENT,
            gross_amount=-amount,
            percentage=initial.percentage if initial is not None else ZERO,
            fixed_amount=ZERO,
            commission_amount=-reversal,
            source=initial.source if initial is not None else CommissionSource.GLOBAL,
            category_id=escrow.category_id,
            refund_request_id=refund_request_id,
            created_at=now,
            notes=f"Refund of {amount} against {escrow.gross_amount}",
        )
        refund = RefundRecord(
            refund_request_id=refund_request_id,
            escrow_id=escrow.escrow_id,
            store_id=escrow.store_id,
            amount=amount,
            commission_reversal=reversal,
            created_at=now,
            after_payout=after_payout,
            reason=reason,
        )
        self._store.record_refund(escrow, refund, adjustment)

        if after_payout:
            logger.warning(
                "Refund %s of %s on escrow %s posted after payout; no claw-back issued",
                refund_request_id, amount, escrow_id,
            )
        else:
            logger.info(
                "Refund %s of %s on escrow %s reversed commission %s",
                refund_request_id, amount, escrow_id, reversal,
            )
        return RefundOutcome(escrow=escrow, commission_adjustment=adjustment, refund=refund)

    def _payout_sent(self, escrow: EscrowTransaction) -> bool:
        if escrow.payout_id is None:
            return False
        payout = self._store.get_payout(escrow.payout_id)
        return payout.status in (PayoutStatus.PROCESSING, PayoutStatus.PAID)

    @staticmethod
    def _reversal_for(escrow: EscrowTransaction, amount: Decimal) -> Decimal:
        if amount == escrow.available_to_refund:
            return escrow.remaining_commission
        reversal = round2(escrow.commission_amount * amount / escrow.gross_amount)
        return min(reversal, escrow.remaining_commission)

    @staticmethod
    def _update_status(escrow: EscrowTransaction, now: datetime) -> None:
        fully_refunded = escrow.refunded_amount >= escrow.gross_amount
        if escrow.status == EscrowStatus.RELEASED:
            return
        if fully_refunded:
            escrow.transition_to(EscrowStatus.RETURNED_TO_BUYER)
            escrow.status_before_dispute = None
            escrow.returned_at = now
        elif escrow.status == EscrowStatus.IN_DISPUTE:
            escrow.status_before_dispute = EscrowStatus.PARTIALLY_REFUNDED
        else:
            escrow.transition_to(EscrowStatus.PARTIALLY_REFUNDED)

    def _initial_transaction(self, escrow: EscrowTransaction) -> Optional[CommissionTransaction]:
        for tx in self._store.commission_transactions(escrow_id=escrow.escrow_id):
            if tx.transaction_type == CommissionTransactionType.INITIAL:
                return tx
        return None
