"""Fixtures shared by the invoice service tests."""

from decimal import Decimal

import pytest

from billing_services.invoice_assembler import InvoiceAssembler
from billing_services.invoice_lifecycle import InvoiceLifecycleService


@pytest.fixture
def acme(create_tenant):
    return create_tenant("acme", short_code="AC")


@pytest.fixture
def assembler(session, clock, test_actor_id):
    return InvoiceAssembler(session, clock=clock, actor_id=test_actor_id)


@pytest.fixture
def lifecycle(session, clock):
    return InvoiceLifecycleService(session, clock)


@pytest.fixture
def priced_week(acme, create_vendor_invoice, create_transaction):
    """Two priced acme shipments on one vendor invoice inside the 2025-03-03 week."""
    create_vendor_invoice("VI-1", reported_total=Decimal("10.00"))
    return [
        create_transaction("T1", "5.75", reference_id="S100", tenant_id="acme", billed_amount="6.56"),
        create_transaction("T2", "4.25", reference_id="S101", tenant_id="acme", billed_amount="4.85"),
    ]
