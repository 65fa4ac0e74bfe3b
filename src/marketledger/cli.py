"""Ledger CLI — cron and operator entry points for the settlement ledger.

Usage:
    python -m marketledger.cli status
    python -m marketledger.cli quote --seller store_1 --category books --amount 100.00
    python -m marketledger.cli set-schedule --store store_1 --frequency weekly --day-of-week 4
    python -m marketledger.cli aggregate-payouts
    python -m marketledger.cli process-payouts
    python -m marketledger.cli build-settlement --store store_1 --start 2026-03-01T00:00:00Z --end 2026-03-31T23:59:59Z
    python -m marketledger.cli build-monthly --year 2026 --month 3
    python -m marketledger.cli finalize-settlement --id settlement_ab12cd34ef56
    python -m marketledger.cli export-settlement --id settlement_ab12cd34ef56 --out report.csv
    python -m marketledger.cli publish-rate --source category --key books --percentage 5.00
    python -m marketledger.cli generate-invoices --year 2026 --month 3
    python -m marketledger.cli issue-invoice --id invoice_ab12cd34ef56
    python -m marketledger.cli credit-note --id invoice_ab12cd34ef56 --reason "Rate applied in error"
    python -m marketledger.cli verify-audit-log
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from marketledger.config import LedgerConfig, parse_utc
from marketledger.models.commission import CommissionSource
from marketledger.models.payout import PayoutFrequency
from marketledger.persistence.audit_log import AuditLog
from marketledger.persistence.sql import SqlLedgerStore
from marketledger.service import LedgerService, ServiceResult


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> LedgerConfig:
    config = LedgerConfig.from_config_dir(args.config)
    if args.database_url:
        config = config.with_overrides(database_url=args.database_url)
    return config


def _make_service(args: argparse.Namespace) -> LedgerService:
    """Create a LedgerService over the configured SQL store and audit log."""
    config = _load_config(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.database_url.startswith("sqlite:///") and ":memory:" not in config.database_url:
        Path(config.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
    store = SqlLedgerStore.from_url(config.database_url)
    store.create_schema()
    return LedgerService(store, config, audit_log=AuditLog(config.audit_log_path))


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_quote(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.quote_commission(args.seller, args.category, args.amount))


def cmd_set_schedule(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.set_payout_schedule(
        args.store,
        PayoutFrequency(args.frequency),
        minimum_threshold=args.threshold,
        day_of_week=args.day_of_week,
        day_of_month=args.day_of_month,
        payout_method_id=args.method,
    ))


def cmd_balance(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.balance_summary(args.store))


def cmd_aggregate_payouts(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.run_payout_cycle(args.store or None))


def cmd_process_payouts(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.process_due_payouts())


def cmd_build_settlement(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.build_settlement(
        args.store, parse_utc(args.start), parse_utc(args.end), force=args.force,
    ))


def cmd_build_monthly(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.build_monthly_settlements(args.year, args.month))


def cmd_finalize_settlement(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.finalize_settlement(args.id, actor_id=args.actor))


def cmd_export_settlement(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.export_settlement_csv(args.id)
    if not result.success:
        return _report(result)
    if args.out is None:
        sys.stdout.write(result.data["csv"])
    else:
        args.out.write_text(result.data["csv"], encoding="utf-8")
        print(f"Wrote {args.out}")
    return 0


def cmd_publish_rate(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.publish_commission_rate(
        CommissionSource(args.source),
        args.percentage,
        fixed_amount=args.fixed_amount,
        key=args.key,
        effective_from=parse_utc(args.effective_from) if args.effective_from else None,
        actor_id=args.actor,
    ))


def cmd_generate_invoices(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.generate_monthly_invoices(args.year, args.month))


def cmd_list_invoices(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.list_invoices(args.store, include_superseded=args.all))


def cmd_issue_invoice(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.issue_invoice(args.id, actor_id=args.actor))


def cmd_pay_invoice(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.mark_invoice_paid(args.id, actor_id=args.actor))


def cmd_cancel_invoice(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.cancel_invoice(args.id, actor_id=args.actor))


def cmd_credit_note(args: argparse.Namespace) -> int:
    service = _make_service(args)
    return _report(service.create_credit_note(args.id, args.reason, actor_id=args.actor))


def cmd_verify_audit_log(args: argparse.Namespace) -> int:
    config = _load_config(args)
    path = args.path or config.audit_log_path
    if path is None or not path.exists():
        print(f"No audit log at {path}", file=sys.stderr)
        return 1
    try:
        log = AuditLog(storage_path=path)
    except ValueError as e:
        print(f"Audit log verification FAILED: {e}", file=sys.stderr)
        return 1
    print(f"Audit log OK: {log.count} events verified")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketledger",
        description="Marketplace settlement ledger CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument("--database-url", help="Override the configured database URL")
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show ledger status")

    # quote
    p_quote = sub.add_parser("quote", help="Quote commission for a sale")
    p_quote.add_argument("--seller", required=True, help="Store ID")
    p_quote.add_argument("--category", help="Category ID")
    p_quote.add_argument("--amount", required=True, help="Gross amount (Decimal)")

    # set-schedule
    p_sched = sub.add_parser("set-schedule", help="Set a store's payout schedule")
    p_sched.add_argument("--store", required=True, help="Store ID")
    p_sched.add_argument(
        "--frequency", required=True, choices=[f.value for f in PayoutFrequency],
    )
    p_sched.add_argument("--day-of-week", type=int, help="0 = Monday .. 6 = Sunday")
    p_sched.add_argument("--day-of-month", type=int, help="1 .. 28")
    p_sched.add_argument("--threshold", help="Minimum payout amount (Decimal)")
    p_sched.add_argument("--method", help="Payout method / rail ID")

    # balance
    p_bal = sub.add_parser("balance", help="Show a store's payout balance")
    p_bal.add_argument("--store", required=True, help="Store ID")

    # aggregate-payouts
    p_agg = sub.add_parser("aggregate-payouts", help="Batch eligible escrows into payouts")
    p_agg.add_argument("--store", action="append", help="Limit to store (repeatable)")

    # process-payouts
    sub.add_parser("process-payouts", help="Send due payouts and retry failed ones")

    # build-settlement
    p_build = sub.add_parser("build-settlement", help="Generate a settlement for a period")
    p_build.add_argument("--store", required=True, help="Store ID")
    p_build.add_argument("--start", required=True, help="Period start (ISO-8601, UTC)")
    p_build.add_argument("--end", required=True, help="Period end (ISO-8601, UTC)")
    p_build.add_argument("--force", action="store_true", help="Supersede a finalized settlement")

    # build-monthly
    p_month = sub.add_parser("build-monthly", help="Generate monthly settlements for all stores")
    p_month.add_argument("--year", type=int, required=True)
    p_month.add_argument("--month", type=int, required=True, choices=range(1, 13))

    # finalize-settlement
    p_fin = sub.add_parser("finalize-settlement", help="Finalize a draft settlement")
    p_fin.add_argument("--id", required=True, help="Settlement ID")
    p_fin.add_argument("--actor", default="admin", help="Actor ID recorded in the audit log")

    # export-settlement
    p_exp = sub.add_parser("export-settlement", help="Export a settlement as CSV")
    p_exp.add_argument("--id", required=True, help="Settlement ID")
    p_exp.add_argument("--out", type=Path, help="Output file (default: stdout)")

    # publish-rate
    p_rate = sub.add_parser("publish-rate", help="Publish a commission rate or override")
    p_rate.add_argument(
        "--source", required=True, choices=[s.value for s in CommissionSource],
    )
    p_rate.add_argument("--key", help="Category or store ID (overrides only)")
    p_rate.add_argument("--percentage", required=True, help="Percentage 0-100 (Decimal)")
    p_rate.add_argument("--fixed-amount", default="0", help="Fixed amount per sale (Decimal)")
    p_rate.add_argument("--effective-from", help="Start of the new version (ISO-8601, UTC)")
    p_rate.add_argument("--actor", default="admin", help="Actor ID recorded in the audit log")

    # generate-invoices
    p_inv = sub.add_parser("generate-invoices", help="Generate monthly commission invoices")
    p_inv.add_argument("--year", type=int, required=True)
    p_inv.add_argument("--month", type=int, required=True, choices=range(1, 13))

    # list-invoices
    p_list = sub.add_parser("list-invoices", help="List a store's commission invoices")
    p_list.add_argument("--store", required=True, help="Store ID")
    p_list.add_argument("--all", action="store_true", help="Include superseded invoices")

    # issue-invoice / pay-invoice / cancel-invoice
    for name, help_text in (
        ("issue-invoice", "Issue a draft invoice"),
        ("pay-invoice", "Mark an issued invoice as paid"),
        ("cancel-invoice", "Cancel a draft or issued invoice"),
    ):
        p_act = sub.add_parser(name, help=help_text)
        p_act.add_argument("--id", required=True, help="Invoice ID")
        p_act.add_argument("--actor", default="admin", help="Actor ID recorded in the audit log")

    # credit-note
    p_credit = sub.add_parser("credit-note", help="Credit an invoice in full")
    p_credit.add_argument("--id", required=True, help="Invoice ID")
    p_credit.add_argument("--reason", required=True)
    p_credit.add_argument("--actor", default="admin", help="Actor ID recorded in the audit log")

    # verify-audit-log
    p_ver = sub.add_parser("verify-audit-log", help="Verify audit log integrity")
    p_ver.add_argument("--path", type=Path, help="Audit log path (default: from config)")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "quote": cmd_quote,
        "set-schedule": cmd_set_schedule,
        "balance": cmd_balance,
        "aggregate-payouts": cmd_aggregate_payouts,
        "process-payouts": cmd_process_payouts,
        "build-settlement": cmd_build_settlement,
        "build-monthly": cmd_build_monthly,
        "finalize-settlement": cmd_finalize_settlement,
        "export-settlement": cmd_export_settlement,
        "publish-rate": cmd_publish_rate,
        "generate-invoices": cmd_generate_invoices,
        "list-invoices": cmd_list_invoices,
        "issue-invoice": cmd_issue_invoice,
        "pay-invoice": cmd_pay_invoice,
        "cancel-invoice": cmd_cancel_invoice,
        "credit-note": cmd_credit_note,
        "verify-audit-log": cmd_verify_audit_log,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    sys.exit(main())
