"""Commission invoices — billing sellers for the commission posted in a period.

An invoice for [period_start, period_end] (both inclusive) carries one line
per commission transaction posted for the store in the period:
    subtotal     = Σ commission of the lines (refund reversals are negative)
    tax_amount   = round2(subtotal × tax_percentage / 100)
    total_amount = subtotal + tax_amount

Invoice numbers are INV-{year}-{sequence:06d}, sequential per issue year.
Generating a period that already has an open invoice returns that invoice
unchanged. Correcting an invoice goes through a credit note: it negates
the original, marks it Superseded, and frees the period for a fresh
invoice.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from marketledger.config import LedgerConfig
from marketledger.errors import LedgerError
from marketledger.finance.settlement import month_period
from marketledger.models.commission import CommissionTransaction
from marketledger.models.invoice import (
    OPEN_INVOICE_STATUSES,
    CommissionInvoice,
    InvoiceLine,
    InvoiceStatus,
)
from marketledger.models.money import money_sum, round2
from marketledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)


def _describe(tx: CommissionTransaction) -> str:
    description = f"Commission for {tx.transaction_type.value.replace('_', ' ')}"
    if tx.category_id:
        description += f" - {tx.category_id}"
    return f"{description} (transaction {tx.transaction_id})"


class CommissionInvoiceBuilder:
    """Generates commission invoices and moves them through their lifecycle.

    Usage:
        invoices = CommissionInvoiceBuilder(store, config)
        invoice = invoices.generate("store_1", start, end, now=now)
        invoices.issue(invoice.invoice_id, now=now)
        invoices.mark_paid(invoice.invoice_id, now=later)
    """

    def __init__(self, store: LedgerStore, config: LedgerConfig) -> None:
        self._store = store
        self._config = config

    def generate(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[CommissionInvoice]:
        """Draft the invoice for a store and period.

        Returns None when no commission was posted in the period, and the
        existing invoice when the period is already invoiced.

        Raises:
            ValueError: period_end is not after period_start.
            ConcurrencyConflict: another generator took the period or the
                invoice number first.
        """
        if period_end <= period_start:
            raise ValueError(
                f"Invoice period end {period_end.isoformat()} must be after "
                f"start {period_start.isoformat()}"
            )
        if now is None:
            now = datetime.now(timezone.utc)

        existing = self.open_invoice(store_id, period_start, period_end)
        if existing is not None:
            logger.warning(
                "Store %s already has invoice %s for %s to %s",
                store_id, existing.invoice_number,
                period_start.isoformat(), period_end.isoformat(),
            )
            return existing

        transactions = sorted(
            (
                tx for tx in self._store.commission_transactions(store_id=store_id)
                if period_start <= tx.created_at <= period_end
            ),
            key=lambda tx: (tx.created_at, tx.transaction_id),
        )
        if not transactions:
            logger.info(
                "No commission posted for store %s between %s and %s",
                store_id, period_start.isoformat(), period_end.isoformat(),
            )
            return None

        settings = self._config.invoices
        subtotal = money_sum(tx.commission_amount for tx in transactions)
        tax_amount = round2(subtotal * settings.tax_percentage / 100)
        invoice = CommissionInvoice(
            invoice_id=f"invoice_{uuid4().hex[:12]}",
            invoice_number=self._next_number(now),
            store_id=store_id,
            period_start=period_start,
            period_end=period_end,
            currency=self._currency_for(store_id),
            created_at=now,
            due_date=now + timedelta(days=settings.due_days),
            subtotal=subtotal,
            tax_percentage=settings.tax_percentage,
            tax_amount=tax_amount,
            total_amount=subtotal + tax_amount,
            lines=[
                InvoiceLine(
                    transaction_id=tx.transaction_id,
                    description=_describe(tx),
                    amount=tx.commission_amount,
                )
                for tx in transactions
            ],
        )
        self._store.add_invoice(invoice)
        logger.info(
            "Generated invoice %s for store %s: subtotal %s, tax %s, total %s",
            invoice.invoice_number, store_id, subtotal, tax_amount, invoice.total_amount,
        )
        return invoice

    def generate_monthly(
        self,
        year: int,
        month: int,
        store_ids: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[List[CommissionInvoice], Dict[str, str]]:
        """Invoice the calendar month for every store.

        Stores with no commission in the month, or already invoiced for
        it, are skipped. Returns the invoices generated and, per store that
        failed, the error message.
        """
        start, end = month_period(year, month)
        if store_ids is None:
            store_ids = self._store.store_ids()
        generated: List[CommissionInvoice] = []
        failures: Dict[str, str] = {}
        for store_id in store_ids:
            try:
                if self.open_invoice(store_id, start, end) is not None:
                    continue
                invoice = self.generate(store_id, start, end, now=now)
            except LedgerError as exc:
                logger.warning(
                    "Monthly invoice %04d-%02d for store %s failed: %s",
                    year, month, store_id, exc,
                )
                failures[store_id] = str(exc)
                continue
            if invoice is not None:
                generated.append(invoice)
        return generated, failures

    def issue(self, invoice_id: str, now: Optional[datetime] = None) -> CommissionInvoice:
        invoice = self._store.get_invoice(invoice_id)
        previous = invoice.status
        invoice.transition_to(InvoiceStatus.ISSUED)
        invoice.issued_at = now or datetime.now(timezone.utc)
        self._store.save_invoice(invoice, expected_status=previous)
        logger.info("Issued invoice %s", invoice.invoice_number)
        return invoice

    def mark_paid(self, invoice_id: str, now: Optional[datetime] = None) -> CommissionInvoice:
        invoice = self._store.get_invoice(invoice_id)
        previous = invoice.status
        invoice.transition_to(InvoiceStatus.PAID)
        invoice.paid_at = now or datetime.now(timezone.utc)
        self._store.save_invoice(invoice, expected_status=previous)
        logger.info("Marked invoice %s as paid", invoice.invoice_number)
        return invoice

    def cancel(self, invoice_id: str, now: Optional[datetime] = None) -> CommissionInvoice:
        """Cancel a Draft or Issued invoice. Paid invoices need a credit note."""
        invoice = self._store.get_invoice(invoice_id)
        previous = invoice.status
        invoice.transition_to(InvoiceStatus.CANCELLED)
        invoice.cancelled_at = now or datetime.now(timezone.utc)
        self._store.save_invoice(invoice, expected_status=previous)
        logger.info("Cancelled invoice %s", invoice.invoice_number)
        return invoice

    def create_credit_note(
        self,
        invoice_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> CommissionInvoice:
        """Negate an invoice and mark it Superseded.

        Raises:
            ValueError: no reason given, or the invoice is itself a credit note.
            InvalidTransition: the invoice is cancelled or already superseded.
        """
        if not reason.strip():
            raise ValueError("Credit note reason is required")
        original = self._store.get_invoice(invoice_id)
        if original.is_credit_note:
            raise ValueError(f"Invoice {original.invoice_number} is already a credit note")
        if now is None:
            now = datetime.now(timezone.utc)
        previous = original.status
        original.transition_to(InvoiceStatus.SUPERSEDED)

        credit_note = CommissionInvoice(
            invoice_id=f"invoice_{uuid4().hex[:12]}",
            invoice_number=self._next_number(now),
            store_id=original.store_id,
            period_start=original.period_start,
            period_end=original.period_end,
            currency=original.currency,
            created_at=now,
            due_date=now + timedelta(days=self._config.invoices.due_days),
            subtotal=-original.subtotal,
            tax_percentage=original.tax_percentage,
            tax_amount=-original.tax_amount,
            total_amount=-original.total_amount,
            is_credit_note=True,
            corrects_invoice_id=original.invoice_id,
            notes=f"Credit note for invoice {original.invoice_number}. Reason: {reason}",
            lines=[
                InvoiceLine(
                    transaction_id=line.transaction_id,
                    description=f"Credit: {line.description}",
                    amount=-line.amount,
                )
                for line in original.lines
            ],
        )
        self._store.add_credit_note(credit_note, original, expected_status=previous)
        logger.info(
            "Created credit note %s for invoice %s",
            credit_note.invoice_number, original.invoice_number,
        )
        return credit_note

    def open_invoice(
        self,
        store_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[CommissionInvoice]:
        for invoice in self._store.invoices_for_store(store_id):
            if (
                not invoice.is_credit_note
                and invoice.period_start == period_start
                and invoice.period_end == period_end
                and invoice.status in OPEN_INVOICE_STATUSES
            ):
                return invoice
        return None

    def list_invoices(
        self,
        store_id: str,
        include_superseded: bool = False,
    ) -> List[CommissionInvoice]:
        """A store's invoices and credit notes, newest first."""
        invoices = [
            i for i in self._store.invoices_for_store(store_id)
            if include_superseded or i.status != InvoiceStatus.SUPERSEDED
        ]
        return sorted(invoices, key=lambda i: (i.created_at, i.invoice_number), reverse=True)

    def export_csv(self, invoice_id: str) -> str:
        """Render an invoice or credit note as a CSV document."""
        invoice = self._store.get_invoice(invoice_id)
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["Credit Note" if invoice.is_credit_note else "Invoice"])
        writer.writerow(["Issuer", self._config.invoices.company_name])
        writer.writerow(["Invoice Number", invoice.invoice_number])
        writer.writerow(["Bill To", invoice.store_id])
        writer.writerow(["Period Start", invoice.period_start.isoformat()])
        writer.writerow(["Period End", invoice.period_end.isoformat()])
        writer.writerow(["Created", invoice.created_at.isoformat()])
        writer.writerow(["Due", invoice.due_date.isoformat()])
        writer.writerow(["Status", invoice.status.value])
        writer.writerow(["Currency", invoice.currency])
        writer.writerow([])

        writer.writerow(["Description", "Amount"])
        for line in invoice.lines:
            writer.writerow([line.description, line.amount])
        writer.writerow([])

        writer.writerow(["Subtotal", invoice.subtotal])
        writer.writerow([f"Tax ({invoice.tax_percentage}%)", invoice.tax_amount])
        writer.writerow(["Total", invoice.total_amount])
        if invoice.notes:
            writer.writerow([])
            writer.writerow(["Notes", invoice.notes])
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _next_number(self, now: datetime) -> str:
        prefix = f"INV-{now.year}-"
        last = self._store.last_invoice_number(prefix)
        sequence = int(last[len(prefix):]) + 1 if last is not None else 1
        return f"{prefix}{sequence:06d}"

    def _currency_for(self, store_id: str) -> str:
        schedule = self._store.get_schedule(store_id)
        return schedule.currency if schedule is not None else self._config.currency
