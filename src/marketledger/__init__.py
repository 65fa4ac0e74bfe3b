"""Marketplace settlement ledger — escrow, commission, refunds, payouts, settlements."""

__version__ = "0.1.0"
