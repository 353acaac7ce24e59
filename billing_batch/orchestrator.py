"""
BillingRunOrchestrator -- wiring and sequencing for scheduled billing runs.

Contract:
    Composes the billing services for one scheduled pass:

        sync config -> ingest -> attribute -> per tenant: price + draft

    Ingestion and attribution span tenants and run once.  Tenants are then
    independent units of work processed in parallel, one session per
    worker thread.

Architecture: billing_batch (top-level).  The canonical entry point for
    running billing jobs; nothing below imports from billing_batch.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Each phase runs in its own ``session_scope``; a tenant's failure
      rolls back that tenant only and is reported in the run result.
    - Every log line carries ``run_id`` and, inside a tenant worker,
      ``tenant_id`` (LogContext is bound inside each worker thread).
    - Feed ingestion is chunked; each chunk commits independently.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from billing_batch.chunked_writer import ChunkedRunResult, ChunkedWriter
from billing_config.schema import BillingConfigurationSet
from billing_ingestion.ingest_service import TransactionIngestService
from billing_ingestion.spreadsheet_import import SpreadsheetImportResult, SpreadsheetImportService
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import BillingCategory, FlagType, SourceKind
from billing_kernel.exceptions import BillingError, DataIntegrityError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.models.tenant import Tenant
from billing_kernel.services.audit_flags import AuditFlagService
from billing_services.attribution_service import AttributionResult, AttributionService
from billing_services.config_sync import ConfigSyncResult, ConfigSyncService
from billing_services.credential_prober import CredentialProber
from billing_services.invoice_assembler import CREATED, InvoiceAssembler
from billing_services.pricing_service import PricingService

logger = get_logger("batch.orchestrator")

ProberFactory = Callable[[Session], "CredentialProber | None"]


@dataclass
class TenantRunResult:
    tenant_id: str
    status: str
    priced: int = 0
    no_rule: list[str] = field(default_factory=list)
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    total_amount: Decimal | None = None
    unpriced: list[str] = field(default_factory=list)
    vendor_total_mismatches: list[str] = field(default_factory=list)
    duplicate_groups: int = 0
    error_code: str | None = None
    error_message: str | None = None
    flag_id: UUID | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


@dataclass
class BillingRunResult:
    run_id: str
    run_date: date
    attribution: AttributionResult | None = None
    tenants: dict[str, TenantRunResult] = field(default_factory=dict)

    @property
    def failed_tenants(self) -> list[str]:
        return sorted(t for t, r in self.tenants.items() if not r.succeeded)

    @property
    def invoices(self) -> list[str]:
        return sorted(r.invoice_number for r in self.tenants.values() if r.invoice_number)


class BillingRunOrchestrator:
    """
    Non-goals:
        - Does NOT schedule itself; cron or an operator invokes ``run``.
        - Does NOT approve invoices; drafts wait for review.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: BillingConfigurationSet,
        clock: Clock | None = None,
        prober_factory: ProberFactory | None = None,
        environ: Mapping[str, str] | None = None,
        actor_id: UUID | None = None,
    ):
        self._factory = session_factory
        self._config = config
        self._settings = config.settings
        self._clock = clock or SystemClock()
        self._prober_factory = prober_factory
        self._environ = environ
        self._actor_id = actor_id or SYSTEM_ACTOR_ID

    # -- setup and ingestion -------------------------------------------------------

    def sync_config(self) -> ConfigSyncResult:
        with session_scope(self._factory) as session:
            return ConfigSyncService(session, self._clock, self._actor_id).sync(self._config)

    def ingest(
        self,
        records: Iterable[Mapping[str, Any]],
        source: SourceKind = SourceKind.LIVE_FEED,
        observed_at: datetime | None = None,
    ) -> ChunkedRunResult:
        """Merge a feed in chunks, committing after each chunk."""
        with session_scope(self._factory) as session:
            service = TransactionIngestService(session, self._clock, self._actor_id)
            writer = ChunkedWriter(session, self._settings.chunk_size, commit_each_chunk=True)
            return writer.run(
                records,
                key=lambda raw: str(raw.get("transactionId") or raw.get("transaction_id")),
                write=lambda chunk: service.ingest(chunk, source, observed_at).outcomes,
                label=SourceKind(source).value,
            )

    def ingest_vendor_invoice(
        self,
        vendor_invoice_id: str,
        invoice_type: str,
        invoice_date: date,
        records: Iterable[Mapping[str, Any]],
        reported_total: Decimal | None = None,
    ):
        with session_scope(self._factory) as session:
            return TransactionIngestService(session, self._clock, self._actor_id).ingest_vendor_invoice(
                vendor_invoice_id, invoice_type, invoice_date, records, reported_total
            )

    def import_spreadsheet(
        self,
        path: Path,
        category: BillingCategory | None = None,
        options: dict[str, Any] | None = None,
    ) -> SpreadsheetImportResult:
        with session_scope(self._factory) as session:
            service = SpreadsheetImportService(session, self._clock, self._actor_id)
            return service.import_file(path, category, options)

    # -- attribution -----------------------------------------------------------------

    def _prober(self, session: Session) -> CredentialProber | None:
        if self._prober_factory is not None:
            return self._prober_factory(session)
        return CredentialProber.from_settings(session, self._settings, self._environ)

    def attribute(self, vendor_invoice_ids: Iterable[str] | None = None) -> AttributionResult:
        with session_scope(self._factory) as session:
            service = AttributionService(
                session,
                prober=self._prober(session),
                clock=self._clock,
                probe_before_majority=self._settings.attribution.probe_before_majority,
                actor_id=self._actor_id,
            )
            return service.attribute(vendor_invoice_ids)

    # -- per-tenant run ----------------------------------------------------------------

    def active_tenants(self) -> list[str]:
        with session_scope(self._factory) as session:
            return list(
                session.execute(
                    select(Tenant.id).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
                ).scalars()
            )

    def run_tenant(self, tenant_id: str, run_date: date, run_id: str | None = None) -> TenantRunResult:
        """Price the tenant's transactions and draft its invoice, in one transaction."""
        with LogContext.bind(run_id=run_id, tenant_id=tenant_id):
            try:
                with session_scope(self._factory) as session:
                    pricing = PricingService(session, clock=self._clock, actor_id=self._actor_id)
                    priced = pricing.price(tenant_id=tenant_id)
                    assembler = InvoiceAssembler(
                        session,
                        clock=self._clock,
                        invoice_number_prefix=self._settings.invoice_number_prefix,
                        tolerance=self._settings.reconciliation_tolerance,
                        actor_id=self._actor_id,
                    )
                    draft = assembler.create_draft(tenant_id, run_date)
                    result = TenantRunResult(
                        tenant_id=tenant_id,
                        status=draft.status,
                        priced=priced.priced,
                        no_rule=list(priced.no_rule),
                        unpriced=list(draft.preflight.unpriced),
                        vendor_total_mismatches=[c.vendor_invoice_id for c in draft.mismatches],
                        duplicate_groups=len(draft.duplicates),
                    )
                    if draft.status == CREATED:
                        result.invoice_id = draft.invoice.id
                        result.invoice_number = draft.invoice.invoice_number
                        result.total_amount = draft.invoice.total_amount
            except BillingError as exc:
                logger.error(
                    "tenant_run_failed",
                    extra={"error_code": exc.code, "error": str(exc)},
                )
                failed = TenantRunResult(tenant_id, "failed", error_code=exc.code, error_message=str(exc))
                if isinstance(exc, DataIntegrityError):
                    failed.flag_id = self._flag_integrity_failure(tenant_id, run_date, exc)
                return failed
            except SQLAlchemyError as exc:
                logger.error("tenant_run_failed", extra={"error_code": "DATABASE_ERROR", "error": str(exc)})
                return TenantRunResult(tenant_id, "failed", error_code="DATABASE_ERROR", error_message=str(exc))

            logger.info(
                "tenant_run_completed",
                extra={
                    "status": result.status,
                    "priced": result.priced,
                    "invoice_number": result.invoice_number,
                },
            )
            return result

    def _flag_integrity_failure(self, tenant_id: str, run_date: date, exc: DataIntegrityError) -> UUID:
        """
        Leave a review flag for a tenant run stopped by a data-integrity
        error.  The tenant's own transaction has rolled back, so the flag is
        written in a fresh one.
        """
        details = {k: str(v) for k, v in vars(exc).items() if not k.startswith("_")}
        with session_scope(self._factory) as session:
            raised = AuditFlagService(session, self._clock).raise_flag(
                FlagType.RECONCILIATION_MISMATCH,
                f"run:{tenant_id}:{run_date.isoformat()}:{exc.code}",
                str(exc),
                tenant_id=tenant_id,
                details={"error_code": exc.code, "run_date": run_date.isoformat(), **details},
            )
            return raised.flag.id

    def run(self, run_date: date, tenant_ids: Iterable[str] | None = None) -> BillingRunResult:
        """
        Attribute everything pending, then price and draft each tenant.

        Args:
            run_date: Any date in the issuance week.
            tenant_ids: Restrict the per-tenant phase; defaults to all active
                tenants.
        """
        run_id = str(uuid4())
        result = BillingRunResult(run_id=run_id, run_date=run_date)
        with LogContext.bind(run_id=run_id):
            logger.info(
                "billing_run_started",
                extra={"run_date": run_date, "config_checksum": self._config.checksum},
            )
            result.attribution = self.attribute()

            tenants = sorted(tenant_ids) if tenant_ids is not None else self.active_tenants()
            workers = max(1, min(self._settings.tenant_workers, len(tenants) or 1))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tenant") as pool:
                outcomes = pool.map(lambda t: self.run_tenant(t, run_date, run_id), tenants)
                for tenant_result in outcomes:
                    result.tenants[tenant_result.tenant_id] = tenant_result

            logger.info(
                "billing_run_completed",
                extra={
                    "tenants": len(result.tenants),
                    "failed_tenants": result.failed_tenants,
                    "invoices": result.invoices,
                },
            )
        return result
