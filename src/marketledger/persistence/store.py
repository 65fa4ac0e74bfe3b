"""Ledger store — repository contract plus the in-memory implementation.

Records reference each other by id only; the store hands out copies so a
caller can never mutate persisted state without going through a save.

Concurrency guards every implementation provides:
- add_escrows is atomic and refuses a second allocation of a payment
- save_escrow / save_payout compare the record's version with the stored
  one and raise ConcurrencyConflict when another writer got there first
- claim_escrows links escrows to a payout only if none is already linked
- replace_current_settlement swaps the current version of a period only if
  the caller saw the version that is current now
- save_settlement updates a settlement only while it is still current and
  in the status the caller read
- add_invoice refuses a second open invoice for a store and period, and
  save_invoice / add_credit_note only move an invoice out of the status
  the caller read
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Set, runtime_checkable

from marketledger.errors import (
    ConcurrencyConflict,
    DuplicateAllocation,
    DuplicateRefund,
    RecordNotFound,
)
from marketledger.models.commission import CommissionTransaction, RateEntry
from marketledger.models.escrow import EscrowTransaction, RefundRecord
from marketledger.models.invoice import (
    OPEN_INVOICE_STATUSES,
    CommissionInvoice,
    InvoiceStatus,
)
from marketledger.models.payout import Payout, PayoutSchedule, PayoutStatus
from marketledger.models.settlement import (
    Settlement,
    SettlementAdjustment,
    SettlementStatus,
)


@runtime_checkable
class LedgerStore(Protocol):
    """Persistence contract for the ledger components."""

    # Escrows
    def add_escrows(
        self,
        payment_id: str,
        escrows: Sequence[EscrowTransaction],
        commission_transactions: Sequence[CommissionTransaction],
    ) -> None: ...
    def escrows_for_payment(self, payment_id: str) -> List[EscrowTransaction]: ...
    def escrows_for_store(self, store_id: str) -> List[EscrowTransaction]: ...
    def get_escrow(self, escrow_id: str) -> EscrowTransaction: ...
    def save_escrow(self, escrow: EscrowTransaction) -> None: ...
    def halt_payment(self, payment_id: str, reason: str) -> None: ...
    def is_payment_halted(self, payment_id: str) -> bool: ...

    # Commission transactions and refunds
    def commission_transactions(
        self,
        store_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
    ) -> List[CommissionTransaction]: ...
    def record_refund(
        self,
        escrow: EscrowTransaction,
        refund: RefundRecord,
        adjustment: CommissionTransaction,
    ) -> None: ...
    def get_refund(self, refund_request_id: str) -> Optional[RefundRecord]: ...
    def refunds_for_store(self, store_id: str) -> List[RefundRecord]: ...

    # Payouts
    def claim_escrows(self, payout: Payout) -> None: ...
    def get_payout(self, payout_id: str) -> Payout: ...
    def save_payout(self, payout: Payout) -> None: ...
    def payouts_for_store(self, store_id: str) -> List[Payout]: ...
    def payouts_by_status(self, status: PayoutStatus) -> List[Payout]: ...
    def save_schedule(self, schedule: PayoutSchedule) -> None: ...
    def get_schedule(self, store_id: str) -> Optional[PayoutSchedule]: ...
    def schedules(self) -> List[PayoutSchedule]: ...

    # Settlements
    def current_settlement(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> Optional[Settlement]: ...
    def replace_current_settlement(
        self, new: Settlement, expected: Optional[Settlement],
    ) -> None: ...
    def get_settlement(self, settlement_id: str) -> Settlement: ...
    def save_settlement(
        self, settlement: Settlement, expected_status: SettlementStatus,
    ) -> None: ...
    def settlements_for_store(self, store_id: str) -> List[Settlement]: ...
    def add_adjustment(self, adjustment: SettlementAdjustment) -> None: ...
    def adjustments_for_period(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> List[SettlementAdjustment]: ...

    # Commission invoices
    def add_invoice(self, invoice: CommissionInvoice) -> None: ...
    def add_credit_note(
        self,
        credit_note: CommissionInvoice,
        original: CommissionInvoice,
        expected_status: InvoiceStatus,
    ) -> None: ...
    def get_invoice(self, invoice_id: str) -> CommissionInvoice: ...
    def save_invoice(
        self, invoice: CommissionInvoice, expected_status: InvoiceStatus,
    ) -> None: ...
    def invoices_for_store(self, store_id: str) -> List[CommissionInvoice]: ...
    def last_invoice_number(self, prefix: str) -> Optional[str]: ...

    # Commission rates
    def save_rate_entry(self, entry: RateEntry) -> None: ...
    def rate_entries(self) -> List[RateEntry]: ...

    def store_ids(self) -> List[str]: ...


class InMemoryLedgerStore:
    """Thread-safe in-process store.

    Usage:
        store = InMemoryLedgerStore()
        allocator = EscrowAllocator(store, rate_book, config)
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._escrows: Dict[str, EscrowTransaction] = {}
        self._escrows_by_payment: Dict[str, List[str]] = {}
        self._halted: Dict[str, str] = {}
        self._commission_txs: List[CommissionTransaction] = []
        self._refunds: Dict[str, RefundRecord] = {}
        self._payouts: Dict[str, Payout] = {}
        self._schedules: Dict[str, PayoutSchedule] = {}
        self._settlements: Dict[str, Settlement] = {}
        self._adjustments: Dict[str, SettlementAdjustment] = {}
        self._invoices: Dict[str, CommissionInvoice] = {}
        self._rate_entries: Dict[str, RateEntry] = {}

    # ------------------------------------------------------------------
    # Escrows
    # ------------------------------------------------------------------

    def add_escrows(
        self,
        payment_id: str,
        escrows: Sequence[EscrowTransaction],
        commission_transactions: Sequence[CommissionTransaction],
    ) -> None:
        with self._lock:
            if payment_id in self._escrows_by_payment:
                raise DuplicateAllocation(
                    payment_id, self.escrows_for_payment(payment_id),
                )
            for escrow in escrows:
                if escrow.escrow_id in self._escrows:
                    raise ValueError(f"Escrow ID already exists: {escrow.escrow_id}")
            for escrow in escrows:
                self._escrows[escrow.escrow_id] = copy.deepcopy(escrow)
            self._escrows_by_payment[payment_id] = [e.escrow_id for e in escrows]
            self._commission_txs.extend(commission_transactions)

    def escrows_for_payment(self, payment_id: str) -> List[EscrowTransaction]:
        with self._lock:
            ids = self._escrows_by_payment.get(payment_id, [])
            return [copy.deepcopy(self._escrows[i]) for i in ids]

    def escrows_for_store(self, store_id: str) -> List[EscrowTransaction]:
        with self._lock:
            return [
                copy.deepcopy(e) for e in self._escrows.values()
                if e.store_id == store_id
            ]

    def get_escrow(self, escrow_id: str) -> EscrowTransaction:
        with self._lock:
            escrow = self._escrows.get(escrow_id)
            if escrow is None:
                raise RecordNotFound(f"Unknown escrow ID: {escrow_id}")
            return copy.deepcopy(escrow)

    def save_escrow(self, escrow: EscrowTransaction) -> None:
        with self._lock:
            self._check_escrow_version(escrow)
            escrow.version += 1
            self._escrows[escrow.escrow_id] = copy.deepcopy(escrow)

    def halt_payment(self, payment_id: str, reason: str) -> None:
        with self._lock:
            self._halted[payment_id] = reason

    def is_payment_halted(self, payment_id: str) -> bool:
        with self._lock:
            return payment_id in self._halted

    def _check_escrow_version(self, escrow: EscrowTransaction) -> None:
        stored = self._escrows.get(escrow.escrow_id)
        if stored is None:
            raise RecordNotFound(f"Unknown escrow ID: {escrow.escrow_id}")
        if stored.version != escrow.version:
            raise ConcurrencyConflict(
                f"Escrow {escrow.escrow_id} was modified concurrently "
                f"(expected version {escrow.version}, found {stored.version})"
            )

    # ------------------------------------------------------------------
    # Commission transactions and refunds
    # ------------------------------------------------------------------

    def commission_transactions(
        self,
        store_id: Optional[str] = None,
        escrow_id: Optional[str] = None,
    ) -> List[CommissionTransaction]:
        with self._lock:
            return [
                tx for tx in self._commission_txs
                if (store_id is None or tx.store_id == store_id)
                and (escrow_id is None or tx.escrow_id == escrow_id)
            ]

    def record_refund(
        self,
        escrow: EscrowTransaction,
        refund: RefundRecord,
        adjustment: CommissionTransaction,
    ) -> None:
        with self._lock:
            if refund.refund_request_id in self._refunds:
                raise DuplicateRefund(
                    f"Refund request already applied: {refund.refund_request_id}"
                )
            self._check_escrow_version(escrow)
            escrow.version += 1
            self._escrows[escrow.escrow_id] = copy.deepcopy(escrow)
            self._refunds[refund.refund_request_id] = refund
            self._commission_txs.append(adjustment)

    def get_refund(self, refund_request_id: str) -> Optional[RefundRecord]:
        with self._lock:
            return self._refunds.get(refund_request_id)

    def refunds_for_store(self, store_id: str) -> List[RefundRecord]:
        with self._lock:
            return [r for r in self._refunds.values() if r.store_id == store_id]

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    def claim_escrows(self, payout: Payout) -> None:
        with self._lock:
            if payout.payout_id in self._payouts:
                raise ValueError(f"Payout ID already exists: {payout.payout_id}")
            for escrow_id in payout.escrow_ids:
                escrow = self._escrows.get(escrow_id)
                if escrow is None:
                    raise RecordNotFound(f"Unknown escrow ID: {escrow_id}")
                if escrow.payout_id is not None:
                    raise ConcurrencyConflict(
                        f"Escrow {escrow_id} already belongs to payout {escrow.payout_id}"
                    )
            for escrow_id in payout.escrow_ids:
                escrow = self._escrows[escrow_id]
                escrow.payout_id = payout.payout_id
                escrow.version += 1
            self._payouts[payout.payout_id] = copy.deepcopy(payout)

    def get_payout(self, payout_id: str) -> Payout:
        with self._lock:
            payout = self._payouts.get(payout_id)
            if payout is None:
                raise RecordNotFound(f"Unknown payout ID: {payout_id}")
            return copy.deepcopy(payout)

    def save_payout(self, payout: Payout) -> None:
        with self._lock:
            stored = self._payouts.get(payout.payout_id)
            if stored is None:
                raise RecordNotFound(f"Unknown payout ID: {payout.payout_id}")
            if stored.version != payout.version:
                raise ConcurrencyConflict(
                    f"Payout {payout.payout_id} was modified concurrently"
                )
            payout.version += 1
            self._payouts[payout.payout_id] = copy.deepcopy(payout)

    def payouts_for_store(self, store_id: str) -> List[Payout]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._payouts.values()
                if p.store_id == store_id
            ]

    def payouts_by_status(self, status: PayoutStatus) -> List[Payout]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._payouts.values()
                if p.status == status
            ]

    def save_schedule(self, schedule: PayoutSchedule) -> None:
        with self._lock:
            self._schedules[schedule.store_id] = copy.deepcopy(schedule)

    def get_schedule(self, store_id: str) -> Optional[PayoutSchedule]:
        with self._lock:
            schedule = self._schedules.get(store_id)
            return copy.deepcopy(schedule) if schedule is not None else None

    def schedules(self) -> List[PayoutSchedule]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._schedules.values()]

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------

    def current_settlement(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> Optional[Settlement]:
        with self._lock:
            found = self._find_current(store_id, period_start, period_end)
            return copy.deepcopy(found) if found is not None else None

    def replace_current_settlement(
        self, new: Settlement, expected: Optional[Settlement],
    ) -> None:
        with self._lock:
            current = self._find_current(new.store_id, new.period_start, new.period_end)
            current_id = current.settlement_id if current is not None else None
            expected_id = expected.settlement_id if expected is not None else None
            if current_id != expected_id:
                raise ConcurrencyConflict(
                    f"Settlement for store {new.store_id} period "
                    f"{new.period_start.isoformat()} was regenerated concurrently"
                )
            if current is not None:
                current.is_current_version = False
                current.status = SettlementStatus.SUPERSEDED
            self._settlements[new.settlement_id] = copy.deepcopy(new)

    def get_settlement(self, settlement_id: str) -> Settlement:
        with self._lock:
            settlement = self._settlements.get(settlement_id)
            if settlement is None:
                raise RecordNotFound(f"Unknown settlement ID: {settlement_id}")
            return copy.deepcopy(settlement)

    def save_settlement(
        self, settlement: Settlement, expected_status: SettlementStatus,
    ) -> None:
        with self._lock:
            stored = self._settlements.get(settlement.settlement_id)
            if stored is None:
                raise RecordNotFound(f"Unknown settlement ID: {settlement.settlement_id}")
            if stored.status != expected_status or not stored.is_current_version:
                raise ConcurrencyConflict(
                    f"Settlement {settlement.settlement_id} was modified concurrently "
                    f"(expected {expected_status.value}, found {stored.status.value})"
                )
            self._settlements[settlement.settlement_id] = copy.deepcopy(settlement)

    def settlements_for_store(self, store_id: str) -> List[Settlement]:
        with self._lock:
            found = [
                copy.deepcopy(s) for s in self._settlements.values()
                if s.store_id == store_id
            ]
        return sorted(found, key=lambda s: (s.period_start, s.version))

    def add_adjustment(self, adjustment: SettlementAdjustment) -> None:
        with self._lock:
            if adjustment.adjustment_id in self._adjustments:
                raise ValueError(f"Adjustment ID already exists: {adjustment.adjustment_id}")
            self._adjustments[adjustment.adjustment_id] = adjustment

    def adjustments_for_period(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> List[SettlementAdjustment]:
        with self._lock:
            return [
                a for a in self._adjustments.values()
                if a.store_id == store_id
                and a.period_start == period_start
                and a.period_end == period_end
            ]

    # ------------------------------------------------------------------
    # Commission invoices
    # ------------------------------------------------------------------

    def add_invoice(self, invoice: CommissionInvoice) -> None:
        with self._lock:
            self._check_new_invoice(invoice)
            self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)

    def add_credit_note(
        self,
        credit_note: CommissionInvoice,
        original: CommissionInvoice,
        expected_status: InvoiceStatus,
    ) -> None:
        with self._lock:
            self._check_invoice_status(original, expected_status)
            self._check_new_invoice(credit_note)
            self._invoices[original.invoice_id] = copy.deepcopy(original)
            self._invoices[credit_note.invoice_id] = copy.deepcopy(credit_note)

    def get_invoice(self, invoice_id: str) -> CommissionInvoice:
        with self._lock:
            invoice = self._invoices.get(invoice_id)
            if invoice is None:
                raise RecordNotFound(f"Unknown invoice ID: {invoice_id}")
            return copy.deepcopy(invoice)

    def save_invoice(
        self, invoice: CommissionInvoice, expected_status: InvoiceStatus,
    ) -> None:
        with self._lock:
            self._check_invoice_status(invoice, expected_status)
            self._invoices[invoice.invoice_id] = copy.deepcopy(invoice)

    def invoices_for_store(self, store_id: str) -> List[CommissionInvoice]:
        with self._lock:
            invoices = [
                copy.deepcopy(i) for i in self._invoices.values() if i.store_id == store_id
            ]
        return sorted(invoices, key=lambda i: (i.created_at, i.invoice_number))

    def last_invoice_number(self, prefix: str) -> Optional[str]:
        with self._lock:
            numbers = [
                i.invoice_number for i in self._invoices.values()
                if i.invoice_number.startswith(prefix)
            ]
        return max(numbers) if numbers else None

    # ------------------------------------------------------------------
    # Commission rates
    # ------------------------------------------------------------------

    def save_rate_entry(self, entry: RateEntry) -> None:
        with self._lock:
            self._rate_entries[entry.entry_id] = entry

    def rate_entries(self) -> List[RateEntry]:
        with self._lock:
            return list(self._rate_entries.values())

    def store_ids(self) -> List[str]:
        with self._lock:
            ids: Set[str] = {e.store_id for e in self._escrows.values()}
            ids.update(self._schedules)
        return sorted(ids)

    def _find_current(
        self, store_id: str, period_start: datetime, period_end: datetime,
    ) -> Optional[Settlement]:
        for settlement in self._settlements.values():
            if (
                settlement.store_id == store_id
                and settlement.period_start == period_start
                and settlement.period_end == period_end
                and settlement.is_current_version
            ):
                return settlement
        return None

    def _check_new_invoice(self, invoice: CommissionInvoice) -> None:
        if invoice.invoice_id in self._invoices:
            raise ConcurrencyConflict(f"Invoice already exists: {invoice.invoice_id}")
        for existing in self._invoices.values():
            if existing.invoice_number == invoice.invoice_number:
                raise ConcurrencyConflict(
                    f"Invoice number {invoice.invoice_number} was taken concurrently"
                )
            if (
                not invoice.is_credit_note
                and not existing.is_credit_note
                and existing.store_id == invoice.store_id
                and existing.period_start == invoice.period_start
                and existing.period_end == invoice.period_end
                and existing.status in OPEN_INVOICE_STATUSES
            ):
                raise ConcurrencyConflict(
                    f"Store {invoice.store_id} already has invoice "
                    f"{existing.invoice_number} for this period"
                )

    def _check_invoice_status(
        self, invoice: CommissionInvoice, expected_status: InvoiceStatus,
    ) -> None:
        stored = self._invoices.get(invoice.invoice_id)
        if stored is None:
            raise RecordNotFound(f"Unknown invoice ID: {invoice.invoice_id}")
        if stored.status != expected_status:
            raise ConcurrencyConflict(
                f"Invoice {invoice.invoice_id} was modified concurrently "
                f"(expected {expected_status.value}, found {stored.status.value})"
            )
