"""
Types -- Enumerations and small value records shared across layers.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Imported by models, engines and
    services alike, so every status string lives in exactly one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ReferenceKind(str, Enum):
    """
    What a transaction's ``reference_id`` points at.

    Vendor strings are mapped onto these arms once, at ingestion, via
    ``from_vendor``; nothing downstream compares raw vendor strings.
    """

    SHIPMENT = "shipment"
    RETURN = "return"
    RECEIVING_ORDER = "receiving_order"
    STORAGE_SLOT = "storage_slot"
    OTHER = "other"

    @classmethod
    def from_vendor(cls, value: str | None) -> "ReferenceKind":
        return _VENDOR_REFERENCE_KINDS.get((value or "").strip(), cls.OTHER)

    @property
    def probe_resource(self) -> str | None:
        """Vendor API resource used to look up an opaque id of this kind."""
        return _PROBE_RESOURCES.get(self)


_VENDOR_REFERENCE_KINDS = {
    "Shipment": ReferenceKind.SHIPMENT,
    "Return": ReferenceKind.RETURN,
    "WRO": ReferenceKind.RECEIVING_ORDER,
    "URO": ReferenceKind.RECEIVING_ORDER,
    "FC": ReferenceKind.STORAGE_SLOT,
}

_PROBE_RESOURCES = {
    ReferenceKind.SHIPMENT: "shipment",
    ReferenceKind.RETURN: "return",
    ReferenceKind.RECEIVING_ORDER: "receiving",
}


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def strength(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class AttributionStrategy(str, Enum):
    DIRECT = "direct"
    INVOICE_UNANIMOUS = "invoice_unanimous"
    MAJORITY_VOTE = "majority_vote"
    CREDENTIAL_PROBE = "credential_probe"


class BillingCategory(str, Enum):
    """Which markup rule family prices a transaction."""

    SHIPMENTS = "shipments"
    SHIPMENT_FEES = "shipment_fees"
    STORAGE = "storage"
    CREDITS = "credits"
    RETURNS = "returns"
    RECEIVING = "receiving"

    @property
    def is_pass_through(self) -> bool:
        return self in (BillingCategory.RETURNS, BillingCategory.RECEIVING)


class LineCategory(str, Enum):
    """Invoice summary bucket for a line item."""

    FULFILLMENT = "Fulfillment"
    SHIPPING = "Shipping"
    PICK_FEES = "Pick Fees"
    B2B_FEES = "B2B Fees"
    STORAGE = "Storage"
    RETURNS = "Returns"
    RECEIVING = "Receiving"
    CREDITS = "Credits"
    ADDITIONAL_SERVICES = "Additional Services"


class MarkupType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class SourceKind(str, Enum):
    """Where an observation of a transaction came from."""

    LIVE_FEED = "live_feed"
    INVOICE_FETCH = "invoice_fetch"
    SPREADSHEET = "spreadsheet"


class InvoiceStatus(str, Enum):
    """Transitions are one-way: DRAFT -> APPROVED -> PAID."""

    DRAFT = "draft"
    APPROVED = "approved"
    PAID = "paid"

    @property
    def is_locked(self) -> bool:
        return self is not InvoiceStatus.DRAFT


class FlagType(str, Enum):
    UNATTRIBUTED = "unattributed"
    NO_RULE_MATCHED = "no-rule-matched"
    DUPLICATE_SUSPECTED = "duplicate-suspected"
    RECONCILIATION_MISMATCH = "reconciliation-mismatch"
    LOW_CONFIDENCE_ATTRIBUTION = "low-confidence-attribution"


class FlagStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class ProbeOutcome(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


class RowStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RowOutcome:
    """Per-row result of a batch operation."""

    key: str
    status: RowStatus
    error_code: str | None = None
    message: str | None = None

    @classmethod
    def succeeded(cls, key: str, message: str | None = None) -> "RowOutcome":
        return cls(key=key, status=RowStatus.SUCCEEDED, message=message)

    @classmethod
    def skipped(cls, key: str, message: str | None = None) -> "RowOutcome":
        return cls(key=key, status=RowStatus.SKIPPED, message=message)

    @classmethod
    def failed(cls, key: str, error_code: str, message: str) -> "RowOutcome":
        return cls(
            key=key,
            status=RowStatus.FAILED,
            error_code=error_code,
            message=message,
        )
