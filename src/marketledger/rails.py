"""Payout rail abstraction — how money actually leaves the platform.

The payout executor never talks to a bank or PSP directly. It asks the
registry for the rail matching the payout's method and calls transfer().
Adding a rail means implementing PayoutRail and registering it; nothing in
the escrow, commission or settlement code changes.

A rail reports a declined transfer through TransferResult(success=False).
A rail that cannot be reached raises RailUnavailable; the executor records
that as a failed attempt and schedules a retry. Any other exception is a
bug in the rail and propagates.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol, runtime_checkable

from marketledger.models.payout import Payout, TransferResult


@runtime_checkable
class PayoutRail(Protocol):
    """Contract for payout rail implementations."""

    @property
    def rail_id(self) -> str:
        """Unique identifier (e.g. 'bank_transfer', 'manual')."""
        ...

    def transfer(self, payout: Payout) -> TransferResult:
        """Send payout.amount to the seller. Must be idempotent per payout_id."""
        ...


class ManualTransferRail:
    """Rail for payouts settled by finance staff outside the system.

    Every transfer is accepted and given a reference the staff can quote
    when they make the bank transfer.
    """

    def __init__(self, rail_id: str = "manual") -> None:
        self._rail_id = rail_id
        self._transfers: Dict[str, str] = {}

    @property
    def rail_id(self) -> str:
        return self._rail_id

    def transfer(self, payout: Payout) -> TransferResult:
        reference = self._transfers.setdefault(
            payout.payout_id, f"MAN-{payout.payout_number}",
        )
        return TransferResult(success=True, external_reference=reference)


class PayoutRailRegistry:
    """Registry of payout rails keyed by payout method.

    The first rail registered is the default, used for payouts that name
    no payout method or a method without a dedicated rail.
    """

    def __init__(self) -> None:
        self._rails: Dict[str, PayoutRail] = {}
        self._default: Optional[str] = None

    def register_rail(self, rail: PayoutRail, default: bool = False) -> None:
        if not isinstance(rail, PayoutRail):
            raise TypeError(
                f"Rail must implement PayoutRail Protocol, got {type(rail)}",
            )
        if rail.rail_id in self._rails:
            raise ValueError(f"Rail ID already registered: {rail.rail_id}")
        self._rails[rail.rail_id] = rail
        if default or self._default is None:
            self._default = rail.rail_id

    def remove_rail(self, rail_id: str) -> None:
        if rail_id not in self._rails:
            raise ValueError(f"Unknown rail: {rail_id}")
        del self._rails[rail_id]
        if self._default == rail_id:
            self._default = next(iter(self._rails), None)

    def rail_for(self, payout_method_id: Optional[str] = None) -> PayoutRail:
        if payout_method_id is not None and payout_method_id in self._rails:
            return self._rails[payout_method_id]
        if self._default is None:
            raise ValueError("No payout rail registered")
        return self._rails[self._default]

    def list_rails(self) -> List[str]:
        return sorted(self._rails)
