"""Append-only audit log of every monetary mutation in the ledger.

Each allocation, refund, payout attempt and settlement build appends one
AuditEvent. Events are immutable once written and carry a SHA-256 hash of
their canonical JSON form, so a persisted log can be re-verified line by
line. The log can be kept in memory or mirrored to a JSONL file.
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4


class AuditEventKind(str, enum.Enum):
    ESCROW_ALLOCATED = "escrow_allocated"
    ALLOCATION_HALTED = "allocation_halted"
    ESCROW_ELIGIBLE = "escrow_eligible"
    ESCROW_DISPUTED = "escrow_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    REFUND_APPLIED = "refund_applied"
    PAYOUT_SCHEDULED = "payout_scheduled"
    PAYOUT_PAID = "payout_paid"
    PAYOUT_FAILED = "payout_failed"
    PAYOUT_ADJUSTED = "payout_adjusted"
    PAYOUT_CANCELLED = "payout_cancelled"
    PAYOUT_RETRIES_EXHAUSTED = "payout_retries_exhausted"
    PAYOUT_ESCROWS_RELEASED = "payout_escrows_released"
    PAYOUT_SCHEDULE_SET = "payout_schedule_set"
    SETTLEMENT_GENERATED = "settlement_generated"
    SETTLEMENT_SUPERSEDED = "settlement_superseded"
    SETTLEMENT_FINALIZED = "settlement_finalized"
    SETTLEMENT_ADJUSTMENT_ADDED = "settlement_adjustment_added"
    COMMISSION_CONFIG_PUBLISHED = "commission_config_published"
    INVOICE_GENERATED = "invoice_generated"
    INVOICE_ISSUED = "invoice_issued"
    INVOICE_PAID = "invoice_paid"
    INVOICE_CANCELLED = "invoice_cancelled"
    CREDIT_NOTE_ISSUED = "credit_note_issued"


def _canonical_hash(
    event_id: str,
    kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "kind": kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable audit event.

    payload must be JSON-serialisable; monetary values are stored as
    strings so that Decimal precision survives the round trip.
    """
    event_id: str
    kind: AuditEventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        kind: AuditEventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> AuditEvent:
        """Create a new event with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        if event_id is None:
            event_id = f"evt_{uuid4().hex[:16]}"
        return AuditEvent(
            event_id=event_id,
            kind=kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(event_id, kind.value, ts_str, actor_id, payload),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }


class AuditLog:
    """Append-only audit log with optional JSONL persistence.

    Events can only be appended, never modified or deleted. Loading an
    existing file verifies every line's hash and rejects duplicates.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[AuditEvent] = []
        self._event_ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: AuditEvent) -> None:
        """Append an event. Raises ValueError on a duplicate event_id."""
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path:
                self._append_to_file(event)
            self._events.append(event)
            self._event_ids.add(event.event_id)

    def record(
        self,
        kind: AuditEventKind,
        payload: dict[str, Any],
        actor_id: str = "system",
        timestamp_utc: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> AuditEvent:
        """Create and append an event in one step."""
        event = AuditEvent.create(kind, actor_id, payload, timestamp_utc, event_id)
        self.append(event)
        return event

    def events(self, kind: Optional[AuditEventKind] = None) -> list[AuditEvent]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.kind == kind]

    def events_for(self, key: str, value: str) -> list[AuditEvent]:
        """Return events whose payload has key == value."""
        return [e for e in self._events if e.payload.get(key) == value]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[AuditEvent]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: AuditEvent) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events with integrity verification.

        Fail-closed: a tampered line (hash mismatch) or a duplicate event
        ID aborts the load with ValueError.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = _canonical_hash(
                    event_id,
                    data["kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                self._events.append(AuditEvent(
                    event_id=event_id,
                    kind=AuditEventKind(data["kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                ))
                self._event_ids.add(event_id)
