"""Tests for the ``billing`` command-line entry point."""

import json
from uuid import uuid4

import pytest

from billing_batch.cli import main
from billing_kernel.db.engine import reset_engine

DB = ["--db-url", "sqlite://", "--create-tables"]


@pytest.fixture(autouse=True)
def _reset_engine():
    yield
    reset_engine()


def test_sync_config_reports_changes(capsys):
    assert main([*DB, "sync-config"]) == 0

    assert capsys.readouterr().out.strip() == "tenants: +2 ~0  rules: +8 ~0 -0"


def test_ingest_feed_file(tmp_path, capsys):
    feed = tmp_path / "feed.json"
    feed.write_text(
        json.dumps(
            [
                {
                    "transactionId": "T1",
                    "referenceId": "S100",
                    "referenceType": "Shipment",
                    "feeType": "Shipping",
                    "amount": 5.75,
                    "chargeDate": "2025-03-05",
                },
                {"transactionId": "T2", "feeType": "Shipping"},
            ]
        )
    )

    assert main([*DB, "ingest", "--file", str(feed)]) == 1

    assert json.loads(capsys.readouterr().out) == {"succeeded": 1, "failed": 1, "skipped": 0}


def test_invoice_fetch_needs_type_and_date(tmp_path, capsys):
    feed = tmp_path / "inv.json"
    feed.write_text("[]")

    assert main([*DB, "ingest", "--file", str(feed), "--vendor-invoice", "4821"]) == 2

    assert "--invoice-type" in capsys.readouterr().err


def test_billing_errors_exit_nonzero(capsys):
    assert main([*DB, "approve", "--invoice", str(uuid4())]) == 1

    assert "ERROR [INVOICE_NOT_FOUND]" in capsys.readouterr().err


def test_unknown_command_is_rejected():
    with pytest.raises(SystemExit):
        main(["frobnicate"])
