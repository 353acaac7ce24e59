"""
Billing Kernel

Persistence, typed errors and structured logging for the vendor billing
pipeline:
- Canonical transactions keyed by the immutable vendor transaction id
- Per-tenant monotonic invoice numbering
- Immutable approved invoices
- Explicit two-decimal currency rounding
"""

__version__ = "0.1.0"
