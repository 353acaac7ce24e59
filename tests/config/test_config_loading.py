"""
Tests for billing_config -- fragment assembly, parsing and checksums.
"""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from billing_config import assemble_from_directory, get_active_config
from billing_config.loader import parse_decimal, parse_markup_rule, parse_settings
from billing_kernel.exceptions import ConfigLoadError


def _write(path: Path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


@pytest.fixture
def config_dir(tmp_path):
    _write(
        tmp_path / "root.yaml",
        {"config_id": "test", "version": 3, "settings": {"database_url": "sqlite://"}},
    )
    _write(
        tmp_path / "tenants.yaml",
        {"tenants": [{"id": "acme", "short_code": "AC", "name": "Acme", "merchant_ids": [386350]}]},
    )
    _write(
        tmp_path / "markup_rules" / "global.yaml",
        {
            "rules": [
                {
                    "name": "Standard shipping",
                    "billing_category": "shipments",
                    "markup_type": "percentage",
                    "markup_value": 14,
                }
            ]
        },
    )
    return tmp_path


class TestPackagedDefaultSet:
    def test_default_set_loads(self):
        config = get_active_config()

        assert config.config_id == "default"
        assert [t.short_code for t in config.tenants] == ["AC", "HS"]
        assert config.settings.vendor_api.base_url == "https://api.vendor.example.com/1.0"
        assert config.settings.reconciliation_tolerance == Decimal("0.01")

    def test_tenant_rule_is_parsed(self):
        config = get_active_config()

        heavy = next(r for r in config.markup_rules if r.tenant_id == "henson")
        assert heavy.weight_min_oz == Decimal("80")
        assert heavy.effective_from == date(2025, 1, 1)


class TestAssembly:
    def test_fragments_are_composed(self, config_dir):
        config = assemble_from_directory(config_dir)

        assert config.version == 3
        assert config.tenant("acme").merchant_ids == ("386350",)
        assert config.tenant("nobody") is None
        assert config.markup_rules[0].markup_value == Decimal("14")
        assert config.settings.vendor_api is None

    def test_checksum_is_stable_and_tracks_changes(self, config_dir):
        first = assemble_from_directory(config_dir).checksum
        assert assemble_from_directory(config_dir).checksum == first

        _write(
            config_dir / "root.yaml",
            {"config_id": "test", "version": 4, "settings": {"database_url": "sqlite://"}},
        )
        assert assemble_from_directory(config_dir).checksum != first

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="directory not found"):
            assemble_from_directory(tmp_path / "absent")

    def test_missing_root(self, tmp_path):
        with pytest.raises(ConfigLoadError, match="root.yaml"):
            assemble_from_directory(tmp_path)

    def test_missing_required_key(self, config_dir):
        _write(config_dir / "root.yaml", {"config_id": "test", "settings": {}})

        with pytest.raises(ConfigLoadError) as excinfo:
            assemble_from_directory(config_dir)
        assert "database_url" in excinfo.value.reason
        assert isinstance(excinfo.value.__cause__, KeyError)

    def test_duplicate_short_code(self, config_dir):
        _write(
            config_dir / "tenants.yaml",
            {
                "tenants": [
                    {"id": "a", "short_code": "AC", "name": "A"},
                    {"id": "b", "short_code": "AC", "name": "B"},
                ]
            },
        )

        with pytest.raises(ConfigLoadError, match="short_code"):
            assemble_from_directory(config_dir)

    def test_malformed_yaml(self, config_dir):
        (config_dir / "tenants.yaml").write_text("tenants: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigLoadError):
            assemble_from_directory(config_dir)


class TestParsers:
    def test_yaml_floats_stay_exact(self):
        assert parse_decimal(0.1) == Decimal("0.1")

    def test_bad_decimal(self):
        with pytest.raises(ValueError):
            parse_decimal("abc")

    def test_unknown_markup_type(self):
        with pytest.raises(ValueError, match="markup_type"):
            parse_markup_rule(
                {"name": "x", "billing_category": "shipments", "markup_type": "tiered", "markup_value": 1}
            )

    def test_inverted_weight_bracket(self):
        with pytest.raises(ValueError, match="weight bracket"):
            parse_markup_rule(
                {
                    "name": "x",
                    "billing_category": "shipments",
                    "markup_type": "fixed",
                    "markup_value": 1,
                    "weight_min_oz": 16,
                    "weight_max_oz": 8,
                }
            )

    def test_settings_bounds(self):
        with pytest.raises(ValueError):
            parse_settings({"database_url": "sqlite://", "chunk_size": 0})

    def test_settings_defaults(self):
        settings = parse_settings({"database_url": "sqlite://"})

        assert settings.invoice_number_prefix == "JP"
        assert settings.attribution.probe_before_majority is False
