"""Commission resolver — picks a rate and computes commission for a sale.

Lookup order, first match wins:
    1. category override for the item's category
    2. seller override for the store
    3. global commission config

Commission = round2(gross * percentage / 100) + fixed_amount.

The resolver is pure: it reads only the RateSnapshot it was given and
never consults a clock, so the same inputs always yield the same quote.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from marketledger.errors import CommissionExceedsGross, ConfigurationMissing
from marketledger.models.commission import (
    CommissionQuote,
    CommissionSource,
    RateEntry,
    RateSnapshot,
)
from marketledger.models.money import ZERO, round2

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


class CommissionResolver:
    """Resolves commission quotes against a frozen rate snapshot.

    Usage:
        resolver = CommissionResolver(book.snapshot(now))
        quote = resolver.resolve("store_1", "books", Decimal("100.00"))
        quote.commission_amount   # Decimal("10.50") at 10% + 0.50

    With strict=True a commission larger than the gross raises
    CommissionExceedsGross; otherwise it is clamped to the gross and the
    quote is flagged.
    """

    def __init__(self, snapshot: RateSnapshot, strict: bool = False) -> None:
        self._snapshot = snapshot
        self._strict = strict

    @property
    def snapshot(self) -> RateSnapshot:
        return self._snapshot

    def lookup(self, seller_id: str, category_id: Optional[str]) -> RateEntry:
        """Return the rate entry that applies to a seller/category pair."""
        if category_id is not None:
            entry = self._snapshot.categories.get(category_id)
            if entry is not None:
                return entry
        entry = self._snapshot.sellers.get(seller_id)
        if entry is not None:
            return entry
        if self._snapshot.global_rate is not None:
            return self._snapshot.global_rate
        raise ConfigurationMissing(
            f"No commission configuration effective at {self._snapshot.as_of.isoformat()}"
        )

    def resolve(
        self,
        seller_id: str,
        category_id: Optional[str],
        gross_amount: Decimal,
        include_fixed: bool = True,
    ) -> CommissionQuote:
        """Compute the commission quote for one sale amount.

        include_fixed=False charges the percentage only; used for the
        secondary lines of a multi-line sub-order, which share one fixed fee.
        """
        if gross_amount < ZERO:
            raise ValueError(f"Gross amount must be non-negative, got {gross_amount}")
        entry = self.lookup(seller_id, category_id)
        rate = entry.rate
        fixed = rate.fixed_amount if include_fixed else ZERO
        commission = round2(gross_amount * rate.percentage / HUNDRED) + fixed

        exceeds = commission > gross_amount
        if exceeds:
            if self._strict:
                raise CommissionExceedsGross(
                    f"Commission {commission} exceeds gross {gross_amount} "
                    f"for seller {seller_id}, category {category_id}"
                )
            logger.warning(
                "Commission %s exceeds gross %s for seller %s; clamping",
                commission, gross_amount, seller_id,
            )
            commission = gross_amount

        return CommissionQuote(
            gross_amount=gross_amount,
            percentage=rate.percentage,
            fixed_amount=fixed,
            commission_amount=commission,
            source=entry.source,
            category_id=category_id,
            exceeds_gross=exceeds,
            rate_revision=self._snapshot.revision,
        )
