"""
billing_batch -- scheduled billing runs.

Provides chunked, SAVEPOINT-isolated persistence and the orchestrator that
sequences ingestion, attribution, pricing and invoice drafting, with tenants
processed in parallel.

Architecture:
    billing_batch/ is a top-level package.  Nothing in kernel/, config/,
    engines/, ingestion/ or services/ imports from billing_batch.
"""

from billing_batch.chunked_writer import ChunkedRunResult, ChunkedWriter, chunked
from billing_batch.orchestrator import BillingRunOrchestrator, BillingRunResult, TenantRunResult

__all__ = [
    "BillingRunOrchestrator",
    "BillingRunResult",
    "ChunkedRunResult",
    "ChunkedWriter",
    "TenantRunResult",
    "chunked",
]
