"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing runs are unattended batch jobs. Whoever reads the run report (or the
JSON log) must be able to tell a retryable vendor hiccup from a data problem
that needs a human, without parsing message strings. Every error therefore:

  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, log/API-safe)
  3. Carries structured DATA as attributes

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingError (base)
    |
    +-- TransientIOError                 retried with bounded backoff
    |   +-- RateLimitedError
    |
    +-- DataIntegrityError               never auto-resolved, surfaced as flags
    |   +-- DuplicateSuspectedError
    |   +-- ReconciliationMismatchError
    |   +-- InvoiceNumberCollisionError
    |   +-- UnresolvedFlagsError
    |   +-- InvoiceTotalsMismatchError
    |
    +-- ConfigurationError               safe default + log, never drops a row
    |   +-- MissingRuleCoverageError
    |   +-- MissingTenantCredentialError
    |   +-- ConfigLoadError
    |
    +-- TerminalStateViolation           rejected outright, no partial write
    |   +-- InvalidInvoiceTransitionError
    |
    +-- ImmutabilityViolationError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- NotFoundError
        +-- InvoiceNotFoundError
        +-- TenantNotFoundError
        +-- AuditFlagNotFoundError
        +-- MarkupRuleNotFoundError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                         | When Raised
----------------|------------------------------|---------------------------------------
Transient       | TRANSIENT_IO                 | Vendor network / 5xx failure
                | RATE_LIMITED                 | Vendor returned 429
----------------|------------------------------|---------------------------------------
Integrity       | DUPLICATE_SUSPECTED          | Same ref/fee/date twice in one invoice
                | RECONCILIATION_MISMATCH      | Sources disagree beyond tolerance
                | INVOICE_NUMBER_COLLISION     | Invoice number already exists
                | UNRESOLVED_FLAGS             | Approval blocked by open flags
                | INVOICE_TOTALS_MISMATCH      | Stored totals != line item sums
----------------|------------------------------|---------------------------------------
Configuration   | MISSING_RULE_COVERAGE        | No markup rule for a transaction
                | MISSING_TENANT_CREDENTIAL    | Tenant has no vendor credential
                | CONFIG_LOAD_ERROR            | Malformed / incomplete YAML
----------------|------------------------------|---------------------------------------
Terminal state  | INVALID_INVOICE_TRANSITION   | e.g. regenerate an approved invoice
----------------|------------------------------|---------------------------------------
Immutability    | IMMUTABILITY_VIOLATION       | Trusted base cost / approved lines
----------------|------------------------------|---------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT     | Conditional write matched no row
----------------|------------------------------|---------------------------------------
Not found       | INVOICE_NOT_FOUND            |
                | TENANT_NOT_FOUND             |
                | AUDIT_FLAG_NOT_FOUND         |
                | MARKUP_RULE_NOT_FOUND        |

===============================================================================
HANDLING PATTERNS
===============================================================================

1. TRANSIENT ERRORS ARE RETRIED, NOTHING ELSE IS:

    retry_transient(lambda: client.lookup(...), attempts=5)

2. INTEGRITY ERRORS BECOME FLAGS:

    except DataIntegrityError as e:
        flags.raise_flag(FlagType.RECONCILIATION_MISMATCH, subject, str(e))

3. TERMINAL STATE VIOLATIONS ABORT THE OPERATION WITH NO PARTIAL WRITE:

    except TerminalStateViolation:
        session.rollback()
"""


class BillingError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_ERROR"


# Transient I/O


class TransientIOError(BillingError):
    """Vendor call failed for a reason that may succeed on retry."""

    code: str = "TRANSIENT_IO"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Transient failure during {operation}: {reason}")


class RateLimitedError(TransientIOError):
    """Vendor enforced its request-rate ceiling."""

    code: str = "RATE_LIMITED"

    def __init__(self, operation: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(operation, "rate limited")


# Data integrity


class DataIntegrityError(BillingError):
    """Base for conditions that must be reviewed by a person."""

    code: str = "DATA_INTEGRITY_ERROR"


class DuplicateSuspectedError(DataIntegrityError):
    """Two transactions share reference, fee type and date in one invoice."""

    code: str = "DUPLICATE_SUSPECTED"

    def __init__(self, vendor_invoice_id: str, transaction_ids: list[str]):
        self.vendor_invoice_id = vendor_invoice_id
        self.transaction_ids = transaction_ids
        super().__init__(
            f"Suspected duplicates in vendor invoice {vendor_invoice_id}: "
            f"{', '.join(transaction_ids)}"
        )


class ReconciliationMismatchError(DataIntegrityError):
    """Independent sources disagree beyond tolerance."""

    code: str = "RECONCILIATION_MISMATCH"

    def __init__(self, subject: str, expected: str, actual: str):
        self.subject = subject
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Reconciliation mismatch for {subject}: "
            f"expected {expected}, actual {actual}"
        )


class InvoiceNumberCollisionError(DataIntegrityError):
    """An invoice with this number already exists."""

    code: str = "INVOICE_NUMBER_COLLISION"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(f"Invoice number already exists: {invoice_number}")


class UnresolvedFlagsError(DataIntegrityError):
    """Approval blocked while review flags are still open."""

    code: str = "UNRESOLVED_FLAGS"

    def __init__(self, invoice_id: str, flag_ids: list[str]):
        self.invoice_id = invoice_id
        self.flag_ids = flag_ids
        super().__init__(
            f"Invoice {invoice_id} has {len(flag_ids)} unresolved flag(s)"
        )


class InvoiceTotalsMismatchError(DataIntegrityError):
    """Stored invoice totals differ from the sum of its line items."""

    code: str = "INVOICE_TOTALS_MISMATCH"

    def __init__(self, invoice_id: str, stored_total: str, line_total: str):
        self.invoice_id = invoice_id
        self.stored_total = stored_total
        self.line_total = line_total
        super().__init__(
            f"Invoice {invoice_id} total {stored_total} != "
            f"line item sum {line_total}"
        )


# Configuration


class ConfigurationError(BillingError):
    """Base for missing or invalid configuration."""

    code: str = "CONFIGURATION_ERROR"


class MissingRuleCoverageError(ConfigurationError):
    """No markup rule covers a transaction."""

    code: str = "MISSING_RULE_COVERAGE"

    def __init__(self, transaction_id: str, billing_category: str):
        self.transaction_id = transaction_id
        self.billing_category = billing_category
        super().__init__(
            f"No markup rule matched transaction {transaction_id} "
            f"({billing_category})"
        )


class MissingTenantCredentialError(ConfigurationError):
    """Tenant has no usable vendor credential."""

    code: str = "MISSING_TENANT_CREDENTIAL"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} has no vendor credential")


class ConfigLoadError(ConfigurationError):
    """Configuration file is malformed or incomplete."""

    code: str = "CONFIG_LOAD_ERROR"

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot load configuration {source}: {reason}")


# Terminal state


class TerminalStateViolation(BillingError):
    """Attempted to mutate a record in a terminal state."""

    code: str = "TERMINAL_STATE_VIOLATION"


class InvalidInvoiceTransitionError(TerminalStateViolation):
    """Invoice status transition not permitted from its current status."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: str, current_status: str, action: str):
        self.invoice_id = invoice_id
        self.current_status = current_status
        self.action = action
        super().__init__(
            f"Cannot {action} invoice {invoice_id} in status {current_status}"
        )


# Immutability


class ImmutabilityViolationError(BillingError):
    """Attempted to modify an immutable field or record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


# Concurrency


class ConcurrencyError(BillingError):
    """Base exception for concurrency errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Conditional write matched no row; someone else changed it first."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected = expected
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id} "
            f"(expected {expected})"
        )


# Not found


class NotFoundError(BillingError):
    """Base exception for missing records."""

    code: str = "NOT_FOUND"


class InvoiceNotFoundError(NotFoundError):
    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class TenantNotFoundError(NotFoundError):
    code: str = "TENANT_NOT_FOUND"

    def __init__(self, tenant_ref: str):
        self.tenant_ref = tenant_ref
        super().__init__(f"Tenant not found: {tenant_ref}")


class AuditFlagNotFoundError(NotFoundError):
    code: str = "AUDIT_FLAG_NOT_FOUND"

    def __init__(self, flag_id: str):
        self.flag_id = flag_id
        super().__init__(f"Audit flag not found: {flag_id}")


class MarkupRuleNotFoundError(NotFoundError):
    code: str = "MARKUP_RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Markup rule not found: {rule_id}")
