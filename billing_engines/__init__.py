"""
Module: billing_engines
Responsibility:
    Package entrypoint re-exporting the pure billing engines.  This is the
    import surface for billing_services and billing_ingestion.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import billing_kernel.domain (and sibling engine modules).
    MUST NOT import billing_services, billing_ingestion or billing_batch.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``;
      dates are passed in by callers.
    - Decimal-only arithmetic, half-up to cents.
    - Determinism: identical inputs always produce identical outputs.
"""

from billing_engines.attribution import (
    AttributionSubject,
    EntityLookup,
    ProbeAttempt,
    Resolution,
    ShipmentFacts,
    count_votes,
    probe_order,
    resolve_direct,
    resolve_from_probes,
    resolve_majority,
    resolve_unanimous,
    should_replace,
)
from billing_engines.invoicing import (
    InvoiceSummary,
    LineAmounts,
    billing_period,
    format_invoice_number,
    issuance_date,
    line_category,
    storage_period,
    summarize,
)
from billing_engines.markup import (
    MarkupResult,
    PricingContext,
    RuleSpec,
    billing_category_for,
    compute_markup,
    inherit_credit_markup,
    select_rule,
    shipment_fee_type,
)
from billing_engines.reconciliation import (
    DuplicateCandidate,
    DuplicateGroup,
    MergeAction,
    Observation,
    check_vendor_total,
    find_duplicate_groups,
    merge_field,
)
from billing_engines.storage import StorageRow, parse_storage_reference, price_storage_group
from billing_engines.weights import ShipmentWeights, derive_weights

__all__ = [
    "AttributionSubject",
    "DuplicateCandidate",
    "DuplicateGroup",
    "EntityLookup",
    "InvoiceSummary",
    "LineAmounts",
    "MarkupResult",
    "MergeAction",
    "Observation",
    "PricingContext",
    "ProbeAttempt",
    "Resolution",
    "RuleSpec",
    "ShipmentFacts",
    "ShipmentWeights",
    "StorageRow",
    "billing_category_for",
    "billing_period",
    "check_vendor_total",
    "compute_markup",
    "count_votes",
    "derive_weights",
    "find_duplicate_groups",
    "format_invoice_number",
    "inherit_credit_markup",
    "issuance_date",
    "line_category",
    "merge_field",
    "parse_storage_reference",
    "price_storage_group",
    "probe_order",
    "resolve_direct",
    "resolve_from_probes",
    "resolve_majority",
    "resolve_unanimous",
    "select_rule",
    "shipment_fee_type",
    "should_replace",
    "storage_period",
    "summarize",
]
