"""
Pytest fixtures for the billing test suite.

Provides:
- An in-memory SQLite database per test (SAVEPOINT-capable engine)
- Sessions, a session factory and a deterministic clock
- Factory fixtures for tenants, entity mirrors, vendor invoices,
  transactions and markup rules
- Structured log capture
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session, sessionmaker

from billing_engines.markup import billing_category_for
from billing_kernel.db.engine import create_sqlite_engine, create_tables
from billing_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from billing_kernel.domain.clock import DeterministicClock
from billing_kernel.domain.types import Confidence, ReferenceKind
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.models.entities import InventorySlot, ReceivingOrder, Return, Shipment
from billing_kernel.models.markup_rule import MarkupRule
from billing_kernel.models.tenant import Tenant, TenantCredential, TenantMerchantId
from billing_kernel.models.transaction import Transaction
from billing_kernel.models.vendor_invoice import VendorInvoice

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

# Monday 2025-03-10 issues the invoice for 2025-03-03 .. 2025-03-09.
RUN_DATE = date(2025, 3, 10)
PERIOD_DAY = date(2025, 3, 5)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, session):
            ...
            logs = captured_logs()
            assert any(r["message"] == "invoice_draft_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _immutability_listeners():
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()


@pytest.fixture
def engine():
    """Fresh in-memory database with every table created."""
    eng = create_sqlite_engine()
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    """Factory for code that opens its own sessions (orchestrator, CLI)."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """Provide a database session for testing; rolled back at teardown."""
    sess = session_factory()
    yield sess
    try:
        sess.rollback()
    finally:
        sess.close()


@pytest.fixture
def test_actor_id() -> UUID:
    """Provide a consistent test actor ID."""
    return TEST_ACTOR_ID


# Clock fixtures


@pytest.fixture
def clock():
    """Deterministic clock fixed inside the billing week of RUN_DATE."""
    return DeterministicClock(datetime(2025, 3, 10, 6, 0, 0, tzinfo=timezone.utc))


# =============================================================================
# Test data generators
# =============================================================================


@pytest.fixture
def create_tenant(session: Session, test_actor_id: UUID):
    """Factory fixture to create tenants with merchant ids and a credential."""

    def _create_tenant(
        tenant_id: str,
        short_code: str | None = None,
        merchant_ids: tuple[str, ...] = (),
        token_env_var: str | None = None,
        is_active: bool = True,
    ) -> Tenant:
        tenant = Tenant(
            id=tenant_id,
            short_code=short_code or tenant_id[:2].upper(),
            name=f"Tenant {tenant_id}",
            is_active=is_active,
            created_by_id=test_actor_id,
        )
        for merchant_id in merchant_ids:
            tenant.merchant_ids.append(
                TenantMerchantId(merchant_id=merchant_id, created_by_id=test_actor_id)
            )
        if token_env_var:
            tenant.credential = TenantCredential(
                token_env_var=token_env_var, created_by_id=test_actor_id
            )
        session.add(tenant)
        session.flush()
        return tenant

    return _create_tenant


@pytest.fixture
def create_shipment(session: Session, test_actor_id: UUID):
    def _create_shipment(
        shipment_id: str,
        tenant_id: str | None,
        order_category: str | None = None,
        carrier_option_id: str | None = None,
        billable_weight_oz: Decimal | None = None,
    ) -> Shipment:
        shipment = Shipment(
            id=shipment_id,
            tenant_id=tenant_id,
            order_category=order_category,
            carrier_option_id=carrier_option_id,
            billable_weight_oz=billable_weight_oz,
            created_by_id=test_actor_id,
        )
        session.add(shipment)
        session.flush()
        return shipment

    return _create_shipment


@pytest.fixture
def create_entity(session: Session, test_actor_id: UUID):
    """Factory for return / receiving order / inventory slot mirrors."""
    models = {
        ReferenceKind.RETURN: Return,
        ReferenceKind.RECEIVING_ORDER: ReceivingOrder,
        ReferenceKind.STORAGE_SLOT: InventorySlot,
    }

    def _create_entity(kind: ReferenceKind, entity_id: str, tenant_id: str | None):
        entity = models[kind](id=entity_id, tenant_id=tenant_id, created_by_id=test_actor_id)
        session.add(entity)
        session.flush()
        return entity

    return _create_entity


@pytest.fixture
def create_vendor_invoice(session: Session, test_actor_id: UUID):
    def _create_vendor_invoice(
        vendor_invoice_id: str,
        invoice_type: str = "Shipping",
        invoice_date: date = PERIOD_DAY,
        reported_total: Decimal | None = None,
    ) -> VendorInvoice:
        vi = VendorInvoice(
            id=vendor_invoice_id,
            invoice_type=invoice_type,
            invoice_date=invoice_date,
            reported_total=reported_total,
            created_by_id=test_actor_id,
        )
        session.add(vi)
        session.flush()
        return vi

    return _create_vendor_invoice


_VENDOR_REFERENCE_TYPES = {
    ReferenceKind.SHIPMENT: "Shipment",
    ReferenceKind.RETURN: "Return",
    ReferenceKind.RECEIVING_ORDER: "WRO",
    ReferenceKind.STORAGE_SLOT: "FC",
    ReferenceKind.OTHER: None,
}


@pytest.fixture
def create_transaction(session: Session, test_actor_id: UUID):
    """
    Factory fixture to create canonical transactions directly.

    ``tenant_id`` without ``confidence`` is stored as a high-confidence
    direct attribution.
    """

    def _create_transaction(
        vendor_transaction_id: str,
        amount: Decimal | str,
        reference_id: str | None = None,
        kind: ReferenceKind = ReferenceKind.SHIPMENT,
        fee_type: str = "Shipping",
        vendor_invoice_id: str | None = "VI-1",
        charge_date: date = PERIOD_DAY,
        tenant_id: str | None = None,
        confidence: Confidence | None = None,
        billed_amount: Decimal | str | None = None,
        additional_details: dict | None = None,
    ) -> Transaction:
        if tenant_id is not None and confidence is None:
            confidence = Confidence.HIGH
        txn = Transaction(
            vendor_transaction_id=vendor_transaction_id,
            reference_id=reference_id,
            reference_type=kind.value,
            vendor_reference_type=_VENDOR_REFERENCE_TYPES[kind],
            fee_type=fee_type,
            fee_category=billing_category_for(kind, fee_type).value,
            base_cost=Decimal(amount),
            billed_amount=Decimal(billed_amount) if billed_amount is not None else None,
            tenant_id=tenant_id,
            attribution_confidence=confidence.value if confidence else None,
            attribution_strategy="direct" if confidence is Confidence.HIGH else None,
            vendor_invoice_id=vendor_invoice_id,
            charge_date=charge_date,
            additional_details=additional_details or {},
            created_by_id=test_actor_id,
        )
        session.add(txn)
        session.flush()
        return txn

    return _create_transaction


@pytest.fixture
def create_rule(session: Session, test_actor_id: UUID):
    """Factory fixture to create markup rules (percentage by default)."""

    def _create_rule(
        name: str,
        billing_category: str,
        markup_value: Decimal | str,
        markup_type: str = "percentage",
        **matchers,
    ) -> MarkupRule:
        rule = MarkupRule(
            name=name,
            billing_category=billing_category,
            markup_type=markup_type,
            markup_value=Decimal(markup_value),
            created_by_id=test_actor_id,
            **matchers,
        )
        session.add(rule)
        session.flush()
        return rule

    return _create_rule
