"""Finance subsystem — commission, escrow, refunds, payouts and settlements."""

from marketledger.finance.escrow import EscrowAllocator
from marketledger.finance.payouts import PayoutAggregator, PayoutExecutor, next_payout_date
from marketledger.finance.rates import CommissionRateBook
from marketledger.finance.refunds import RefundAdjuster, RefundOutcome
from marketledger.finance.resolver import CommissionResolver
from marketledger.finance.settlement import SettlementBuilder, month_period

__all__ = [
    "CommissionRateBook",
    "CommissionResolver",
    "EscrowAllocator",
    "PayoutAggregator",
    "PayoutExecutor",
    "RefundAdjuster",
    "RefundOutcome",
    "SettlementBuilder",
    "month_period",
    "next_payout_date",
]
