"""Commission rate book — effective-dated, versioned rate sources.

Each rate source (the global config, one category override, one seller
override) is a sequence of versions with non-overlapping effective ranges.
Publishing a new version closes the open one at the new version's
effective_from; nothing is ever edited in place.

Every publish bumps the book's revision. Resolution never reads the book
directly: callers take a RateSnapshot at an instant and resolve against
that, so a concurrent config change cannot alter an in-flight calculation.

A book bound to a LedgerStore writes every new or closed version through to
it before changing its own state, and CommissionRateBook.load rebuilds the
versions and the revision from what the store holds.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from marketledger.config import CommissionDefaults
from marketledger.models.commission import (
    CommissionRate,
    CommissionSource,
    RateEntry,
    RateSnapshot,
)
from marketledger.persistence.store import LedgerStore

logger = logging.getLogger(__name__)

_Key = Tuple[CommissionSource, Optional[str]]


class CommissionRateBook:
    """Versioned store of commission rates.

    Usage:
        book = CommissionRateBook()
        book.publish_global(CommissionRate(Decimal("10"), Decimal("0.50")), start)
        book.set_category_override("books", CommissionRate(Decimal("5")), start)
        snapshot = book.snapshot(now)

    Persistent:
        book = CommissionRateBook.load(store, config.commission)
    """

    def __init__(self, store: Optional[LedgerStore] = None) -> None:
        self._entries: Dict[_Key, List[RateEntry]] = {}
        self._revision = 0
        self._lock = threading.Lock()
        self._store = store

    @classmethod
    def load(
        cls,
        store: LedgerStore,
        defaults: Optional[CommissionDefaults] = None,
    ) -> CommissionRateBook:
        """Rebuild the book from the store, seeding defaults into an empty one."""
        entries = store.rate_entries()
        if not entries:
            return cls.from_defaults(defaults, store=store)
        book = cls(store)
        for entry in sorted(entries, key=lambda e: e.version):
            book._entries.setdefault((entry.source, entry.key), []).append(entry)
        book._revision = max(entry.revision for entry in entries)
        logger.info(
            "Loaded %d commission rate versions at revision %d",
            len(entries), book._revision,
        )
        return book

    @classmethod
    def from_defaults(
        cls,
        defaults: Optional[CommissionDefaults],
        store: Optional[LedgerStore] = None,
    ) -> CommissionRateBook:
        book = cls(store)
        if defaults is None:
            return book
        if defaults.global_rate is not None:
            book.publish_global(defaults.global_rate, defaults.effective_from)
        for category_id, rate in defaults.categories.items():
            book.set_category_override(category_id, rate, defaults.effective_from)
        for seller_id, rate in defaults.sellers.items():
            book.set_seller_override(seller_id, rate, defaults.effective_from)
        return book

    @property
    def revision(self) -> int:
        return self._revision

    def publish_global(
        self,
        rate: CommissionRate,
        effective_from: datetime,
        created_by: Optional[str] = None,
    ) -> RateEntry:
        """Publish a new global config version."""
        return self._publish(CommissionSource.GLOBAL, None, rate, effective_from, created_by)

    def set_category_override(
        self,
        category_id: str,
        rate: CommissionRate,
        effective_from: datetime,
        created_by: Optional[str] = None,
    ) -> RateEntry:
        return self._publish(
            CommissionSource.CATEGORY, category_id, rate, effective_from, created_by,
        )

    def set_seller_override(
        self,
        seller_id: str,
        rate: CommissionRate,
        effective_from: datetime,
        created_by: Optional[str] = None,
    ) -> RateEntry:
        return self._publish(
            CommissionSource.SELLER, seller_id, rate, effective_from, created_by,
        )

    def deactivate_category_override(self, category_id: str, at: datetime) -> RateEntry:
        return self._close((CommissionSource.CATEGORY, category_id), at)

    def deactivate_seller_override(self, seller_id: str, at: datetime) -> RateEntry:
        return self._close((CommissionSource.SELLER, seller_id), at)

    def history(
        self,
        source: CommissionSource,
        key: Optional[str] = None,
    ) -> List[RateEntry]:
        """All versions of one rate source, oldest first."""
        return list(self._entries.get((source, key), []))

    def snapshot(self, as_of: datetime) -> RateSnapshot:
        """Freeze every rate effective at as_of."""
        with self._lock:
            global_rate: Optional[RateEntry] = None
            categories: Dict[str, RateEntry] = {}
            sellers: Dict[str, RateEntry] = {}
            for (source, key), versions in self._entries.items():
                entry = _effective(versions, as_of)
                if entry is None:
                    continue
                if source == CommissionSource.GLOBAL:
                    global_rate = entry
                elif source == CommissionSource.CATEGORY:
                    categories[key] = entry
                else:
                    sellers[key] = entry
            return RateSnapshot(
                as_of=as_of,
                revision=self._revision,
                global_rate=global_rate,
                categories=categories,
                sellers=sellers,
            )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _publish(
        self,
        source: CommissionSource,
        key: Optional[str],
        rate: CommissionRate,
        effective_from: datetime,
        created_by: Optional[str],
    ) -> RateEntry:
        if effective_from.tzinfo is None:
            raise ValueError("effective_from must be timezone-aware")
        with self._lock:
            versions = self._entries.get((source, key), [])
            revision = self._revision + 1
            closed: Optional[RateEntry] = None
            if versions:
                latest = versions[-1]
                if effective_from <= latest.effective_from:
                    raise ValueError(
                        f"New {source.value} rate must take effect after "
                        f"{latest.effective_from.isoformat()}"
                    )
                if latest.effective_to is None or latest.effective_to > effective_from:
                    closed = replace(latest, effective_to=effective_from, revision=revision)
            entry = RateEntry(
                entry_id=f"rate_{uuid4().hex[:12]}",
                source=source,
                key=key,
                rate=rate,
                version=len(versions) + 1,
                effective_from=effective_from,
                created_by=created_by,
                revision=revision,
            )
            if self._store is not None:
                if closed is not None:
                    self._store.save_rate_entry(closed)
                self._store.save_rate_entry(entry)
            versions = self._entries.setdefault((source, key), [])
            if closed is not None:
                versions[-1] = closed
            versions.append(entry)
            self._revision = revision
            return entry

    def _close(self, key: _Key, at: datetime) -> RateEntry:
        with self._lock:
            versions = self._entries.get(key)
            if not versions or versions[-1].effective_to is not None:
                raise ValueError(f"No open {key[0].value} override for {key[1]}")
            latest = versions[-1]
            if at <= latest.effective_from:
                raise ValueError("Override cannot end before it starts")
            revision = self._revision + 1
            closed = replace(latest, effective_to=at, revision=revision)
            if self._store is not None:
                self._store.save_rate_entry(closed)
            versions[-1] = closed
            self._revision = revision
            return closed


def _effective(versions: List[RateEntry], at: datetime) -> Optional[RateEntry]:
    for entry in reversed(versions):
        if entry.is_effective(at):
            return entry
    return None
