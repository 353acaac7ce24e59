"""Tests for EntityMirrorService -- local mirrors of vendor entities."""

from decimal import Decimal

import pytest

from billing_ingestion.entity_sync import EntityMirrorService
from billing_kernel.domain.types import RowStatus
from billing_kernel.models.entities import InventorySlot, Return, Shipment


@pytest.fixture
def mirrors(session, create_tenant, test_actor_id):
    create_tenant("acme", merchant_ids=("386350",))
    return EntityMirrorService(session, test_actor_id)


class TestShipments:
    def test_owner_and_weights_are_derived(self, session, mirrors):
        mirrors.upsert_shipment(
            {
                "id": "S100",
                "merchantId": 386350,
                "orderCategory": "FBA",
                "weightOz": "20",
                "lengthIn": 12,
                "widthIn": 12,
                "heightIn": 12,
                "originCountry": "US",
                "destinationCountry": "US",
            }
        )

        shipment = session.get(Shipment, "S100")
        assert shipment.tenant_id == "acme"
        assert shipment.order_category == "FBA"
        assert shipment.dim_weight_oz == Decimal("167")
        assert shipment.billable_weight_oz == Decimal("167")

    def test_snake_case_keys(self, session, mirrors):
        mirrors.upsert_shipment({"id": "S101", "merchant_id": "386350", "carrier_option_id": 146})

        shipment = session.get(Shipment, "S101")
        assert shipment.carrier_option_id == "146"
        assert shipment.billable_weight_oz is None

    def test_unknown_merchant_keeps_known_owner(self, session, mirrors):
        mirrors.upsert_shipment({"id": "S100", "merchantId": "386350"})

        mirrors.upsert_shipment({"id": "S100", "merchantId": "999999", "weightOz": 8})

        shipment = session.get(Shipment, "S100")
        assert shipment.tenant_id == "acme"
        assert shipment.actual_weight_oz == Decimal("8")


class TestSync:
    def test_batch_reports_each_record(self, session, mirrors, captured_logs):
        outcomes = mirrors.sync(
            "return",
            [
                {"id": "R1", "merchantId": "386350", "originalShipmentId": "S100"},
                {"merchantId": "386350"},
                {"id": "R2"},
            ],
        )

        assert [o.status for o in outcomes] == [
            RowStatus.SUCCEEDED,
            RowStatus.FAILED,
            RowStatus.SUCCEEDED,
        ]
        assert outcomes[1].key == "row:1"
        assert session.get(Return, "R1").original_shipment_id == "S100"
        assert session.get(Return, "R2").tenant_id is None
        synced = [r for r in captured_logs() if r["message"] == "entities_synced"]
        assert synced[0]["without_tenant"] == 1

    def test_inventory_slots(self, session, mirrors):
        mirrors.sync("inventory_slot", [{"id": "2114961", "merchantId": "386350"}])

        assert session.get(InventorySlot, "2114961").tenant_id == "acme"

    def test_unknown_kind(self, mirrors):
        with pytest.raises(KeyError):
            mirrors.sync("pallet", [])
