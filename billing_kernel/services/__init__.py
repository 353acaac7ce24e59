"""Kernel services (write side)."""

from billing_kernel.services.audit_flags import (
    AuditFlagService,
    RaisedFlag,
    flag_dedup_key,
)
from billing_kernel.services.invoice_counter import InvoiceCounterService

__all__ = [
    "AuditFlagService",
    "InvoiceCounterService",
    "RaisedFlag",
    "flag_dedup_key",
]
