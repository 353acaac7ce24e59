"""
billing_services -- Package init and public API.

Responsibility:
    Stateful services that compose the pure billing engines with database
    sessions, the vendor HTTP API and wall-clock time.

Architecture position:
    Services -- imperative shell over engines + kernel.

    Dependency direction:
        billing_services/ -> billing_engines/   (allowed)
        billing_services/ -> billing_ingestion/ (allowed)
        billing_services/ -> billing_kernel/    (allowed)
        billing_engines/  -> billing_services/  (FORBIDDEN)
        billing_kernel/   -> billing_services/  (FORBIDDEN)

Invariants enforced:
    - No service calls ``session.commit()``; billing_batch (or the caller)
      owns transaction boundaries.
"""

from billing_services.attribution_service import AttributionResult, AttributionService
from billing_services.config_sync import ConfigSyncResult, ConfigSyncService
from billing_services.credential_prober import CredentialProber, ProbeRequest, load_tenant_tokens
from billing_services.entity_lookup import SqlEntityLookup
from billing_services.invoice_assembler import DraftResult, InvoiceAssembler, PreflightReport
from billing_services.invoice_lifecycle import InvoiceLifecycleService
from billing_services.markup_rules import MarkupRuleService
from billing_services.pricing_service import PricingResult, PricingService
from billing_services.reconciliation_service import DuplicateDecision, ReconciliationService
from billing_services.vendor_client import VendorApiClient

__all__ = [
    "AttributionResult",
    "AttributionService",
    "ConfigSyncResult",
    "ConfigSyncService",
    "CredentialProber",
    "DraftResult",
    "DuplicateDecision",
    "InvoiceAssembler",
    "InvoiceLifecycleService",
    "MarkupRuleService",
    "PreflightReport",
    "PricingResult",
    "PricingService",
    "ProbeRequest",
    "ReconciliationService",
    "SqlEntityLookup",
    "VendorApiClient",
    "load_tenant_tokens",
]
