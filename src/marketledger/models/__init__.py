"""Core data models for the marketplace ledger."""

from marketledger.models.commission import (
    CommissionQuote,
    CommissionRate,
    CommissionSource,
    CommissionTransaction,
    CommissionTransactionType,
    MultiCategoryPolicy,
    RateSnapshot,
)
from marketledger.models.escrow import (
    EscrowStatus,
    EscrowTransaction,
    OrderLine,
    PaymentConfirmation,
    PaymentStatus,
    RefundRecord,
    SubOrder,
)
from marketledger.models.payout import (
    BalanceSummary,
    Payout,
    PayoutFrequency,
    PayoutSchedule,
    PayoutStatus,
    TransferResult,
)
from marketledger.models.settlement import (
    Settlement,
    SettlementAdjustment,
    SettlementAdjustmentType,
    SettlementItem,
    SettlementStatus,
    SettlementSummary,
)

__all__ = [
    "BalanceSummary",
    "CommissionQuote",
    "CommissionRate",
    "CommissionSource",
    "CommissionTransaction",
    "CommissionTransactionType",
    "EscrowStatus",
    "EscrowTransaction",
    "MultiCategoryPolicy",
    "OrderLine",
    "PaymentConfirmation",
    "PaymentStatus",
    "Payout",
    "PayoutFrequency",
    "PayoutSchedule",
    "PayoutStatus",
    "RateSnapshot",
    "RefundRecord",
    "Settlement",
    "SettlementAdjustment",
    "SettlementAdjustmentType",
    "SettlementItem",
    "SettlementStatus",
    "SettlementSummary",
    "SubOrder",
    "TransferResult",
]
