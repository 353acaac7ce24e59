"""ORM models for the billing kernel."""

from billing_kernel.models.audit_flag import AuditFlag
from billing_kernel.models.entities import InventorySlot, ReceivingOrder, Return, Shipment
from billing_kernel.models.invoice import Invoice, InvoiceLineItem
from billing_kernel.models.markup_rule import MarkupRule, MarkupRuleHistory
from billing_kernel.models.tenant import Tenant, TenantCredential, TenantMerchantId
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import PAYMENT_INVOICE_TYPE, VendorInvoice

__all__ = [
    "AuditFlag",
    "Invoice",
    "InvoiceLineItem",
    "InventorySlot",
    "MarkupRule",
    "MarkupRuleHistory",
    "PAYMENT_INVOICE_TYPE",
    "ReceivingOrder",
    "Return",
    "Shipment",
    "Tenant",
    "TenantCredential",
    "TenantMerchantId",
    "Transaction",
    "VendorInvoice",
]
