"""Ledger configuration.

Loaded from config/ledger_params.json. Deployment-specific values can be
overridden from the environment (or a .env file beside the config
directory):

    MARKETLEDGER_DATABASE_URL   SQLAlchemy URL for the ledger store
    MARKETLEDGER_AUDIT_LOG      path of the JSONL audit log
    MARKETLEDGER_LOG_LEVEL      logging level name for the CLI
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from marketledger.models.commission import CommissionRate, MultiCategoryPolicy
from marketledger.models.money import to_money

CONFIG_FILENAME = "ledger_params.json"


def _parse_rate(raw: Dict[str, Any]) -> CommissionRate:
    return CommissionRate(
        percentage=Decimal(str(raw["percentage"])),
        fixed_amount=to_money(str(raw.get("fixed_amount", "0"))),
    )


def parse_utc(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing Z."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"Timestamp must carry a timezone: {value}")
    return parsed


@dataclass(frozen=True)
class CommissionDefaults:
    """Initial commission rates published into a fresh rate book."""
    effective_from: datetime
    global_rate: Optional[CommissionRate]
    categories: Dict[str, CommissionRate] = field(default_factory=dict)
    sellers: Dict[str, CommissionRate] = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceSettings:
    """Tax and terms applied to generated commission invoices."""
    tax_percentage: Decimal = Decimal("0")
    due_days: int = 30
    company_name: str = "Marketplace Platform"

    def __post_init__(self) -> None:
        if not Decimal("0") <= self.tax_percentage <= Decimal("100"):
            raise ValueError("invoice tax_percentage must be between 0 and 100")
        if not 1 <= self.due_days <= 365:
            raise ValueError("invoice due_days must be between 1 and 365")


@dataclass(frozen=True)
class LedgerConfig:
    """Operational parameters for the ledger components.

    Usage:
        config = LedgerConfig.from_config_dir(Path("config"))
        config.hold_period_days   # 7
    """
    currency: str = "USD"
    hold_period_days: int = 7
    default_minimum_threshold: Decimal = Decimal("50.00")
    max_retry_attempts: int = 3
    retry_base_hours: int = 24
    multi_category_policy: MultiCategoryPolicy = MultiCategoryPolicy.PER_ITEM
    reject_commission_over_gross: bool = False
    database_url: str = "sqlite:///:memory:"
    audit_log_path: Optional[Path] = None
    log_level: str = "INFO"
    commission: Optional[CommissionDefaults] = None
    invoices: InvoiceSettings = field(default_factory=InvoiceSettings)

    def __post_init__(self) -> None:
        if self.hold_period_days < 0:
            raise ValueError("hold_period_days must be non-negative")
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        if self.retry_base_hours < 1:
            raise ValueError("retry_base_hours must be at least 1")
        if self.default_minimum_threshold < Decimal("0"):
            raise ValueError("default_minimum_threshold must be non-negative")

    @classmethod
    def from_dict(
        cls,
        params: Dict[str, Any],
        base_dir: Optional[Path] = None,
    ) -> LedgerConfig:
        ledger = params.get("ledger", {})
        storage = params.get("storage", {})
        commission = params.get("commission")
        invoices = params.get("invoices", {})

        defaults: Optional[CommissionDefaults] = None
        if commission is not None:
            global_raw = commission.get("global")
            defaults = CommissionDefaults(
                effective_from=parse_utc(commission["effective_from"]),
                global_rate=_parse_rate(global_raw) if global_raw else None,
                categories={
                    k: _parse_rate(v) for k, v in commission.get("categories", {}).items()
                },
                sellers={
                    k: _parse_rate(v) for k, v in commission.get("sellers", {}).items()
                },
            )

        audit_log_path: Optional[Path] = None
        if storage.get("audit_log_path"):
            audit_log_path = Path(storage["audit_log_path"])
            if base_dir is not None and not audit_log_path.is_absolute():
                audit_log_path = base_dir / audit_log_path

        return cls(
            currency=ledger.get("currency", "USD"),
            hold_period_days=int(ledger.get("hold_period_days", 7)),
            default_minimum_threshold=to_money(
                str(ledger.get("default_minimum_threshold", "50.00"))
            ),
            max_retry_attempts=int(ledger.get("max_retry_attempts", 3)),
            retry_base_hours=int(ledger.get("retry_base_hours", 24)),
            multi_category_policy=MultiCategoryPolicy(
                ledger.get("multi_category_policy", "per_item")
            ),
            reject_commission_over_gross=bool(
                ledger.get("reject_commission_over_gross", False)
            ),
            database_url=storage.get("database_url", "sqlite:///:memory:"),
            audit_log_path=audit_log_path,
            commission=defaults,
            invoices=InvoiceSettings(
                tax_percentage=Decimal(str(invoices.get("tax_percentage", "0"))),
                due_days=int(invoices.get("due_days", 30)),
                company_name=invoices.get("company_name", "Marketplace Platform"),
            ),
        )

    @classmethod
    def from_config_dir(
        cls,
        config_dir: Path,
        environ: Optional[Dict[str, str]] = None,
    ) -> LedgerConfig:
        """Load ledger_params.json, then apply environment overrides.

        A .env file in the config directory's parent is read first; values
        already present in the process environment win over it.
        """
        if environ is None:
            load_dotenv(config_dir.parent / ".env")
            environ = dict(os.environ)
        params = json.loads((config_dir / CONFIG_FILENAME).read_text())
        config = cls.from_dict(params, base_dir=config_dir.parent)

        overrides: Dict[str, Any] = {}
        if environ.get("MARKETLEDGER_DATABASE_URL"):
            overrides["database_url"] = environ["MARKETLEDGER_DATABASE_URL"]
        if environ.get("MARKETLEDGER_AUDIT_LOG"):
            overrides["audit_log_path"] = Path(environ["MARKETLEDGER_AUDIT_LOG"])
        if environ.get("MARKETLEDGER_LOG_LEVEL"):
            overrides["log_level"] = environ["MARKETLEDGER_LOG_LEVEL"].upper()
        if not overrides:
            return config
        return config.with_overrides(**overrides)

    def with_overrides(self, **changes: Any) -> LedgerConfig:
        return replace(self, **changes)
