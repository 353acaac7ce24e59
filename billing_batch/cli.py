"""
Command-line entry point for billing jobs.

Usage:
    billing [--config DIR] [--db-url URL] <command> [options]

Examples:
    # Persist tenants and markup rules from the configuration set
    billing sync-config

    # Merge a live-feed export (JSON list of vendor transaction objects)
    billing ingest --file feed.json

    # Merge one vendor invoice fetch
    billing ingest --file inv.json --vendor-invoice 4821 --invoice-type Shipping \\
        --invoice-date 2025-03-09 --reported-total 1234.56

    # Apply the vendor's spreadsheet export
    billing import-spreadsheet --file invoice_4821.xlsx

    # Weekly run: attribute, price and draft every active tenant
    billing run --run-date 2025-03-10

    # Review actions
    billing confirm-duplicate --flag <uuid> --decision distinct
    billing approve --invoice <uuid>
    billing mark-paid --invoice <uuid>
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from uuid import UUID

from billing_batch.chunked_writer import outcome_summary
from billing_batch.orchestrator import BillingRunOrchestrator
from billing_config import get_active_config
from billing_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from billing_kernel.db.immutability import register_immutability_listeners
from billing_kernel.domain.types import BillingCategory, SourceKind
from billing_kernel.exceptions import BillingError
from billing_kernel.logging_config import configure_logging, get_logger
from billing_services.invoice_lifecycle import InvoiceLifecycleService
from billing_services.reconciliation_service import DuplicateDecision, ReconciliationService

logger = get_logger("batch.cli")


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="billing",
        description="Vendor billing attribution and invoicing jobs.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", type=Path, default=None, help="Configuration set directory.")
    parser.add_argument("--db-url", default=None, help="Override settings.database_url.")
    parser.add_argument("--actor-id", type=UUID, default=None, help="Actor UUID for audit columns.")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("sync-config", help="Persist tenants and markup rules.")

    ingest = sub.add_parser("ingest", help="Merge vendor transactions from a JSON file.")
    ingest.add_argument("--file", type=Path, required=True)
    ingest.add_argument("--vendor-invoice", default=None, help="Treat the file as one invoice fetch.")
    ingest.add_argument("--invoice-type", default=None)
    ingest.add_argument("--invoice-date", type=date.fromisoformat, default=None)
    ingest.add_argument("--reported-total", type=Decimal, default=None)

    sheet = sub.add_parser("import-spreadsheet", help="Apply a vendor spreadsheet export.")
    sheet.add_argument("--file", type=Path, required=True)
    sheet.add_argument(
        "--category",
        choices=[c.value for c in BillingCategory],
        default=None,
        help="Required for CSV files.",
    )

    run = sub.add_parser("run", help="Attribute, price and draft invoices.")
    run.add_argument("--run-date", type=date.fromisoformat, default=date.today())
    run.add_argument("--tenant", action="append", default=None, help="Limit to tenant(s).")

    confirm = sub.add_parser("confirm-duplicate", help="Resolve a duplicate-suspected flag.")
    confirm.add_argument("--flag", type=UUID, required=True)
    confirm.add_argument("--decision", choices=[d.value for d in DuplicateDecision], required=True)

    for name in ("approve", "mark-paid"):
        cmd = sub.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} an invoice.")
        cmd.add_argument("--invoice", type=UUID, required=True)
        cmd.add_argument("--expected-version", type=int, default=None)

    return parser.parse_args(argv)


def _run(args: argparse.Namespace) -> int:
    config = get_active_config(args.config)
    init_engine_from_url(args.db_url or config.settings.database_url)
    register_immutability_listeners()
    if args.create_tables:
        create_tables()
    factory = get_session_factory()
    orchestrator = BillingRunOrchestrator(factory, config, actor_id=args.actor_id)

    if args.command == "sync-config":
        result = orchestrator.sync_config()
        print(
            f"tenants: +{len(result.tenants_created)} ~{len(result.tenants_updated)}  "
            f"rules: +{len(result.rules_created)} ~{len(result.rules_updated)} "
            f"-{len(result.rules_deactivated)}"
        )
        return 0

    if args.command == "ingest":
        records = json.loads(args.file.read_text(encoding="utf-8"))
        if args.vendor_invoice:
            if args.invoice_type is None or args.invoice_date is None:
                print("ERROR: --invoice-type and --invoice-date are required", file=sys.stderr)
                return 2
            ingested = orchestrator.ingest_vendor_invoice(
                args.vendor_invoice,
                args.invoice_type,
                args.invoice_date,
                records,
                args.reported_total,
            )
            outcomes = ingested.outcomes
        else:
            outcomes = orchestrator.ingest(records, SourceKind.LIVE_FEED).outcomes
        print(json.dumps(outcome_summary(outcomes)))
        return 0 if not any(o.error_code for o in outcomes) else 1

    if args.command == "import-spreadsheet":
        category = BillingCategory(args.category) if args.category else None
        imported = orchestrator.import_spreadsheet(args.file, category)
        print(f"applied: {imported.applied}  unmatched: {len(imported.unmatched)}")
        for outcome in imported.unmatched[:20]:
            print(f"  {outcome.key}: {outcome.message}")
        return 0

    if args.command == "run":
        result = orchestrator.run(args.run_date, args.tenant)
        for tenant_id, tenant in sorted(result.tenants.items()):
            detail = tenant.invoice_number or tenant.error_code or ""
            print(f"{tenant_id:<20} {tenant.status:<16} {detail}")
        return 1 if result.failed_tenants else 0

    with session_scope(factory) as session:
        if args.command == "confirm-duplicate":
            excluded = ReconciliationService(session).confirm_duplicate(
                args.flag, DuplicateDecision(args.decision), args.actor_id
            )
            print(f"excluded: {[t.vendor_transaction_id for t in excluded]}")
        elif args.command == "approve":
            invoice = InvoiceLifecycleService(session).approve(
                args.invoice, args.actor_id, args.expected_version
            )
            print(f"{invoice.invoice_number} approved")
        else:
            invoice = InvoiceLifecycleService(session).mark_paid(
                args.invoice, args.actor_id, args.expected_version
            )
            print(f"{invoice.invoice_number} paid")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging()
    try:
        return _run(args)
    except BillingError as exc:
        logger.error("command_failed", extra={"command": args.command, "error_code": exc.code})
        print(f"ERROR [{exc.code}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
