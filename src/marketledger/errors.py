"""Ledger error taxonomy.

Every business-rule failure is a LedgerError, itself a ValueError so that
callers written against plain ValueError keep working. The service layer
converts LedgerError into a failed ServiceResult; anything else propagates.
"""

from __future__ import annotations

from typing import Any, Sequence


class LedgerError(ValueError):
    """Base class for ledger rule violations."""


class ConfigurationMissing(LedgerError):
    """No commission config is effective for the requested instant."""


class CommissionExceedsGross(LedgerError):
    """Computed commission is larger than the sale it applies to."""


class PaymentNotConfirmed(LedgerError):
    """Allocation was attempted for a payment that has not been captured."""


class DuplicateAllocation(LedgerError):
    """Escrows already exist for the payment.

    The existing escrow set travels with the error so an idempotent caller
    can treat the retry as a success.
    """

    def __init__(self, payment_id: str, existing: Sequence[Any]) -> None:
        super().__init__(f"Payment already allocated: {payment_id}")
        self.payment_id = payment_id
        self.existing = list(existing)


class AllocationMismatch(LedgerError):
    """Sub-order totals do not add up to the captured payment amount."""

    def __init__(self, payment_id: str, expected: Any, allocated: Any) -> None:
        super().__init__(
            f"Allocation mismatch for payment {payment_id}: "
            f"captured {expected}, sub-orders total {allocated}"
        )
        self.payment_id = payment_id
        self.expected = expected
        self.allocated = allocated


class RefundExceedsAvailable(LedgerError):
    """Refund is larger than what remains unrefunded on the escrow."""


class DuplicateRefund(LedgerError):
    """The refund request has already been applied."""


class SettlementAlreadyFinalized(LedgerError):
    """The current settlement for the period is finalized."""


class RecordNotFound(LedgerError):
    """A referenced record does not exist."""


class InvalidTransition(LedgerError):
    """A lifecycle transition not present in the transition map."""


class ConcurrencyConflict(LedgerError):
    """A concurrent writer changed the record first."""


class RailUnavailable(Exception):
    """The payout rail could not be reached. Treated as a failed attempt."""
