"""Payout aggregation and execution.

PayoutAggregator batches a store's eligible escrows into a single Payout:
- only escrows whose hold has elapsed and that belong to no other payout
- Held escrows whose hold has elapsed are promoted to EligibleForPayout
- a balance below the store's minimum threshold is a no-op, not an error
- aggregation for one store is serialised; the store's claim step refuses
  any escrow another payout already owns

PayoutExecutor moves a payout through the rail:
    SCHEDULED → PROCESSING → PAID     escrows become Released
    SCHEDULED / FAILED → CANCELLED    every escrow refunded before transfer
    PROCESSING → FAILED               retry_count += 1, next retry after
                                      retry_base_hours * 2^(retry_count-1)
Each attempt first re-totals the payout from its escrows, so a refund
posted after aggregation is never paid out.
When retry_count reaches max_retry_attempts the payout stays Failed, the
exhausted hook fires once and an administrator may release its escrows.
"""

from __future__ import annotations

import calendar
import logging
import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from marketledger.config import LedgerConfig
from marketledger.errors import InvalidTransition, RailUnavailable
from marketledger.models.escrow import (
    EscrowStatus,
    EscrowTransaction,
    PAYABLE_ESCROW_STATUSES,
    ESCROW_TRANSITIONS,
)
from marketledger.models.money import ZERO, MoneyLike, money_sum, to_money
from marketledger.models.payout import (
    BalanceSummary,
    Payout,
    PayoutFrequency,
    PayoutSchedule,
    PayoutStatus,
    TransferResult,
)
from marketledger.persistence.store import LedgerStore
from marketledger.rails import PayoutRailRegistry

logger = logging.getLogger(__name__)

OPEN_PAYOUT_STATUSES = frozenset({
    PayoutStatus.SCHEDULED,
    PayoutStatus.PROCESSING,
    PayoutStatus.FAILED,
})


def next_payout_date(
    frequency: PayoutFrequency,
    from_date: date,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> date:
    """Next payout date strictly after from_date.

    Weekly: the next matching weekday (a week ahead if it is today).
    Biweekly: one week after the weekly date.
    Monthly: this month's day if still ahead, otherwise next month's.
    """
    if frequency in (PayoutFrequency.WEEKLY, PayoutFrequency.BIWEEKLY):
        if day_of_week is None:
            raise ValueError(f"{frequency.value} schedules need day_of_week")
        days_ahead = (day_of_week - from_date.weekday()) % 7 or 7
        result = from_date + timedelta(days=days_ahead)
        if frequency == PayoutFrequency.BIWEEKLY:
            result += timedelta(days=7)
        return result

    if day_of_month is None:
        raise ValueError("monthly schedules need day_of_month")
    last_day = calendar.monthrange(from_date.year, from_date.month)[1]
    candidate = from_date.replace(day=min(day_of_month, last_day))
    if candidate > from_date:
        return candidate
    year, month = (
        (from_date.year + 1, 1) if from_date.month == 12
        else (from_date.year, from_date.month + 1)
    )
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


class PayoutAggregator:
    """Batches eligible escrows into per-store payouts.

    Usage:
        aggregator = PayoutAggregator(store, config)
        aggregator.set_schedule("store_1", PayoutFrequency.WEEKLY, day_of_week=4)
        payout = aggregator.aggregate_eligible("store_1", as_of=now)
    """

    def __init__(self, store: LedgerStore, config: LedgerConfig) -> None:
        self._store = store
        self._config = config
        self._store_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def set_schedule(
        self,
        store_id: str,
        frequency: PayoutFrequency,
        minimum_threshold: Optional[MoneyLike] = None,
        day_of_week: Optional[int] = None,
        day_of_month: Optional[int] = None,
        currency: Optional[str] = None,
        payout_method_id: Optional[str] = None,
        enabled: bool = True,
        today: Optional[date] = None,
    ) -> PayoutSchedule:
        """Create or replace a store's payout schedule."""
        if frequency in (PayoutFrequency.WEEKLY, PayoutFrequency.BIWEEKLY):
            if day_of_week is None or not 0 <= day_of_week <= 6:
                raise ValueError("day_of_week must be within [0, 6] (0 = Monday)")
            day_of_month = None
        else:
            if day_of_month is None or not 1 <= day_of_month <= 28:
                raise ValueError("day_of_month must be within [1, 28]")
            day_of_week = None

        threshold = (
            self._config.default_minimum_threshold
            if minimum_threshold is None else to_money(minimum_threshold)
        )
        if threshold < ZERO:
            raise ValueError("minimum_threshold must be non-negative")
        if today is None:
            today = datetime.now(timezone.utc).date()

        schedule = PayoutSchedule(
            store_id=store_id,
            frequency=frequency,
            minimum_threshold=threshold,
            currency=currency or self._config.currency,
            day_of_week=day_of_week,
            day_of_month=day_of_month,
            next_payout_date=next_payout_date(frequency, today, day_of_week, day_of_month),
            enabled=enabled,
            payout_method_id=payout_method_id,
        )
        self._store.save_schedule(schedule)
        return schedule

    def promote_eligible(
        self,
        store_id: str,
        as_of: Optional[datetime] = None,
    ) -> List[EscrowTransaction]:
        """Move Held escrows whose hold has elapsed to EligibleForPayout."""
        if as_of is None:
            as_of = datetime.now(timezone.utc)
        promoted: List[EscrowTransaction] = []
        for escrow in self._store.escrows_for_store(store_id):
            if (
                escrow.status == EscrowStatus.HELD
                and escrow.eligible_at is not None
                and escrow.eligible_at <= as_of
            ):
                escrow.transition_to(EscrowStatus.ELIGIBLE_FOR_PAYOUT)
                self._store.save_escrow(escrow)
                promoted.append(escrow)
        return promoted

    def aggregate_eligible(
        self,
        store_id: str,
        as_of: Optional[datetime] = None,
    ) -> Optional[Payout]:
        """Create a Scheduled payout from a store's eligible escrows.

        Returns None when nothing is eligible, the schedule is disabled or
        the eligible balance is below the store's minimum threshold.
        """
        if as_of is None:
            as_of = datetime.now(timezone.utc)

        with self._lock_for(store_id):
            schedule = self._store.get_schedule(store_id)
            if schedule is not None and not schedule.enabled:
                logger.info("Payout schedule for store %s is disabled", store_id)
                return None
            threshold = (
                schedule.minimum_threshold if schedule is not None
                else self._config.default_minimum_threshold
            )
            currency = schedule.currency if schedule is not None else self._config.currency

            self.promote_eligible(store_id, as_of)
            eligible = self._eligible_escrows(store_id, currency, as_of)
            total = money_sum(e.payable_amount for e in eligible)
            if not eligible:
                return None
            if total < threshold:
                logger.info(
                    "Store %s balance %s is below payout threshold %s",
                    store_id, total, threshold,
                )
                return None

            payout = Payout(
                payout_id=f"payout_{uuid4().hex[:12]}",
                payout_number=f"PO-{as_of:%Y%m%d%H%M%S}-{uuid4().hex[:8].upper()}",
                store_id=store_id,
                escrow_ids=[e.escrow_id for e in eligible],
                amount=total,
                currency=currency,
                scheduled_date=self._scheduled_date(schedule, as_of),
                created_at=as_of,
                max_retry_attempts=self._config.max_retry_attempts,
                payout_method_id=schedule.payout_method_id if schedule else None,
            )
            self._store.claim_escrows(payout)
            if schedule is not None:
                schedule.next_payout_date = payout.scheduled_date
                self._store.save_schedule(schedule)

        logger.info(
            "Scheduled payout %s of %s %s for store %s (%d escrows)",
            payout.payout_number, payout.amount, payout.currency,
            store_id, len(payout.escrow_ids),
        )
        return payout

    def balance_summary(
        self,
        store_id: str,
        as_of: Optional[datetime] = None,
    ) -> BalanceSummary:
        """Available, pending and in-flight amounts for a store."""
        if as_of is None:
            as_of = datetime.now(timezone.utc)
        schedule = self._store.get_schedule(store_id)
        currency = schedule.currency if schedule is not None else self._config.currency
        threshold = (
            schedule.minimum_threshold if schedule is not None
            else self._config.default_minimum_threshold
        )

        escrows = [e for e in self._store.escrows_for_store(store_id) if e.currency == currency]
        eligible = self._eligible_escrows(store_id, currency, as_of, escrows)
        eligible_ids = {e.escrow_id for e in eligible}
        pending = money_sum(
            e.payable_amount for e in escrows
            if e.payout_id is None and not e.is_terminal and e.escrow_id not in eligible_ids
        )
        in_payout = money_sum(
            p.amount for p in self._store.payouts_for_store(store_id)
            if p.status in OPEN_PAYOUT_STATUSES and not p.escrows_released_by_admin
        )
        by_status: Dict[str, Decimal] = {}
        for escrow in escrows:
            key = escrow.status.value
            by_status[key] = by_status.get(key, ZERO) + escrow.payable_amount

        return BalanceSummary(
            store_id=store_id,
            currency=currency,
            as_of=as_of,
            available=money_sum(e.payable_amount for e in eligible),
            pending=pending,
            in_payout=in_payout,
            eligible_escrow_count=len(eligible),
            minimum_threshold=threshold,
            next_payout_date=schedule.next_payout_date if schedule else None,
            totals_by_status=by_status,
        )

    def _eligible_escrows(
        self,
        store_id: str,
        currency: str,
        as_of: datetime,
        escrows: Optional[List[EscrowTransaction]] = None,
    ) -> List[EscrowTransaction]:
        if escrows is None:
            escrows = self._store.escrows_for_store(store_id)
        return [
            e for e in escrows
            if e.payout_id is None
            and e.currency == currency
            and e.status in PAYABLE_ESCROW_STATUSES
            and e.eligible_at is not None
            and e.eligible_at <= as_of
            and e.payable_amount > ZERO
        ]

    @staticmethod
    def _scheduled_date(schedule: Optional[PayoutSchedule], as_of: datetime) -> date:
        if schedule is None:
            return as_of.date()
        if schedule.next_payout_date is not None and schedule.next_payout_date >= as_of.date():
            return schedule.next_payout_date
        return next_payout_date(
            schedule.frequency, as_of.date(), schedule.day_of_week, schedule.day_of_month,
        )

    def _lock_for(self, store_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._store_locks.setdefault(store_id, threading.Lock())


class PayoutExecutor:
    """Sends payouts through the rail and keeps retry bookkeeping.

    Usage:
        executor = PayoutExecutor(store, rails, config,
                                  on_retries_exhausted=alert_finance)
        payout = executor.execute(payout_id, now=now)
        processed, failures = executor.process_due(now)   # due today + retries
    """

    def __init__(
        self,
        store: LedgerStore,
        rails: PayoutRailRegistry,
        config: LedgerConfig,
        on_retries_exhausted: Optional[Callable[[Payout], None]] = None,
        on_adjusted: Optional[Callable[[Payout, Decimal, List[str]], None]] = None,
    ) -> None:
        self._store = store
        self._rails = rails
        self._config = config
        self._on_retries_exhausted = on_retries_exhausted
        self._on_adjusted = on_adjusted

    def execute(self, payout_id: str, now: Optional[datetime] = None) -> Payout:
        """Attempt one transfer for a Scheduled or retry-due Failed payout.

        The payout is re-totalled from its escrows first, so refunds posted
        after aggregation lower the amount sent. A payout left with nothing
        payable is cancelled without calling the rail.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        payout = self._store.get_payout(payout_id)
        if payout.status == PayoutStatus.FAILED and not payout.is_retry_due(now):
            raise InvalidTransition(
                f"Payout {payout_id} is not due for retry "
                f"(attempt {payout.retry_count} of {payout.max_retry_attempts})"
            )
        if payout.status not in (PayoutStatus.SCHEDULED, PayoutStatus.FAILED):
            raise InvalidTransition(
                f"Payout {payout_id} is {payout.status.value}; "
                f"only scheduled or failed payouts can be sent"
            )

        self._retotal(payout)
        if payout.status == PayoutStatus.CANCELLED:
            return payout

        rail = self._rails.rail_for(payout.payout_method_id)
        previous_status = payout.status
        payout.transition_to(PayoutStatus.PROCESSING)
        payout.initiated_at = now
        self._store.save_payout(payout)

        try:
            result = rail.transfer(payout)
        except RailUnavailable as exc:
            result = TransferResult(
                success=False,
                error_message=str(exc) or f"Rail {rail.rail_id} unavailable",
            )
        except Exception:
            payout.status = previous_status
            self._store.save_payout(payout)
            raise

        if result.success:
            self._complete(payout, result, now)
        else:
            self._fail(payout, result, now)
        return payout

    def retry_due(
        self,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Payout], Dict[str, str]]:
        """Retry every Failed payout whose next retry time has passed.

        Returns the payouts attempted and, per payout that could not be
        attempted, the error message.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        due = [
            p for p in self._store.payouts_by_status(PayoutStatus.FAILED)
            if p.is_retry_due(now)
        ]
        return self._execute_all(due, now)

    def process_due(
        self,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Payout], Dict[str, str]]:
        """Execute Scheduled payouts due by now, then due retries.

        One payout's rule failure (a stale version, a payout another worker
        already sent) is collected and the run moves on to the next.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        due = [
            p for p in self._store.payouts_by_status(PayoutStatus.SCHEDULED)
            if p.scheduled_date <= now.date()
        ]
        processed, failures = self._execute_all(due, now)
        retried, retry_failures = self.retry_due(now)
        processed.extend(retried)
        failures.update(retry_failures)
        return processed, failures

    def release_exhausted(self, payout_id: str) -> Payout:
        """Unlink the escrows of a permanently failed payout.

        The escrows become collectable by a future aggregation. The payout
        itself stays Failed as a record of the attempts.
        """
        payout = self._store.get_payout(payout_id)
        if not payout.retries_exhausted:
            raise ValueError(
                f"Payout {payout_id} has not exhausted its retries "
                f"(status {payout.status.value}, attempt {payout.retry_count})"
            )
        if payout.escrows_released_by_admin:
            return payout
        for escrow_id in payout.escrow_ids:
            escrow = self._store.get_escrow(escrow_id)
            if escrow.payout_id == payout_id:
                escrow.payout_id = None
                self._store.save_escrow(escrow)
        payout.escrows_released_by_admin = True
        self._store.save_payout(payout)
        logger.info("Released escrows of exhausted payout %s", payout.payout_number)
        return payout

    def _execute_all(
        self,
        payouts: List[Payout],
        now: datetime,
    ) -> Tuple[List[Payout], Dict[str, str]]:
        processed: List[Payout] = []
        failures: Dict[str, str] = {}
        for payout in payouts:
            try:
                processed.append(self.execute(payout.payout_id, now))
            except ValueError as exc:
                logger.warning("Payout %s was not sent: %s", payout.payout_number, exc)
                failures[payout.payout_id] = str(exc)
        return processed, failures

    def _retotal(self, payout: Payout) -> None:
        """Bring amount and escrow_ids in line with the escrows as they stand.

        Escrows no longer payable (returned to the buyer, nothing left to
        pay) are unlinked so a later refund or aggregation sees them free.
        """
        kept: List[EscrowTransaction] = []
        dropped: List[EscrowTransaction] = []
        for escrow_id in payout.escrow_ids:
            escrow = self._store.get_escrow(escrow_id)
            if escrow.payout_id != payout.payout_id:
                continue
            if escrow.status in PAYABLE_ESCROW_STATUSES and escrow.payable_amount > ZERO:
                kept.append(escrow)
            else:
                dropped.append(escrow)

        amount = money_sum(e.payable_amount for e in kept)
        kept_ids = [e.escrow_id for e in kept]
        if amount == payout.amount and kept_ids == payout.escrow_ids:
            return

        previous_amount = payout.amount
        payout.amount = amount
        payout.escrow_ids = kept_ids
        if not kept:
            payout.transition_to(PayoutStatus.CANCELLED)
            payout.next_retry_date = None
            payout.error_message = "No payable escrows remain"
        self._store.save_payout(payout)
        for escrow in dropped:
            escrow.payout_id = None
            self._store.save_escrow(escrow)

        dropped_ids = [e.escrow_id for e in dropped]
        if payout.status == PayoutStatus.CANCELLED:
            logger.warning(
                "Payout %s cancelled: every escrow was refunded (was %s %s)",
                payout.payout_number, previous_amount, payout.currency,
            )
        else:
            logger.warning(
                "Payout %s re-totalled from %s to %s %s after refunds",
                payout.payout_number, previous_amount, payout.amount, payout.currency,
            )
        if self._on_adjusted is not None:
            self._on_adjusted(payout, previous_amount, dropped_ids)

    def _complete(self, payout: Payout, result: TransferResult, now: datetime) -> None:
        payout.transition_to(PayoutStatus.PAID)
        payout.completed_at = now
        payout.external_reference = result.external_reference
        payout.next_retry_date = None
        self._store.save_payout(payout)

        for escrow_id in payout.escrow_ids:
            escrow = self._store.get_escrow(escrow_id)
            if EscrowStatus.RELEASED not in ESCROW_TRANSITIONS[escrow.status]:
                logger.warning(
                    "Escrow %s in payout %s is %s; left unreleased",
                    escrow_id, payout.payout_number, escrow.status.value,
                )
                continue
            escrow.transition_to(EscrowStatus.RELEASED)
            escrow.released_at = now
            self._store.save_escrow(escrow)

        logger.info(
            "Payout %s of %s %s paid (reference %s)",
            payout.payout_number, payout.amount, payout.currency,
            payout.external_reference,
        )

    def _fail(self, payout: Payout, result: TransferResult, now: datetime) -> None:
        payout.transition_to(PayoutStatus.FAILED)
        payout.failed_at = now
        payout.error_message = result.error_message
        payout.error_reference = result.error_reference
        payout.retry_count += 1

        if payout.retry_count < payout.max_retry_attempts:
            delay = timedelta(
                hours=self._config.retry_base_hours * 2 ** (payout.retry_count - 1),
            )
            payout.next_retry_date = now + delay
            self._store.save_payout(payout)
            logger.warning(
                "Payout %s failed (attempt %d of %d): %s; retrying at %s",
                payout.payout_number, payout.retry_count, payout.max_retry_attempts,
                payout.error_message, payout.next_retry_date.isoformat(),
            )
            return

        payout.next_retry_date = None
        self._store.save_payout(payout)
        logger.error(
            "Payout %s failed permanently after %d attempts: %s",
            payout.payout_number, payout.retry_count, payout.error_message,
        )
        if self._on_retries_exhausted is not None:
            self._on_retries_exhausted(payout)
