"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads individual YAML fragment files and parses them into typed
``billing_config.schema`` dataclass instances.  Callers outside this
package use ``billing_config.get_active_config()`` instead.

Invariants enforced
-------------------
* Required keys are never defaulted: a missing key raises ``KeyError``.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Invalid date or decimal  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    AttributionSettings,
    BillingSettings,
    MarkupRuleDef,
    TenantDef,
    VendorApiSettings,
)

_MARKUP_TYPES = ("percentage", "fixed")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict."""
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_decimal(value: Any) -> Decimal:
    """Parse a decimal, going through str() so YAML floats stay exact."""
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Cannot parse decimal from {value!r}") from exc


def _optional(data: dict[str, Any], key: str, parser):
    value = data.get(key)
    return parser(value) if value is not None else None


def parse_vendor_api(data: dict[str, Any]) -> VendorApiSettings:
    return VendorApiSettings(
        base_url=data["base_url"].rstrip("/"),
        requests_per_second=float(data.get("requests_per_second", 2.0)),
        timeout_seconds=float(data.get("timeout_seconds", 15.0)),
        retry_attempts=int(data.get("retry_attempts", 5)),
        retry_base_delay=float(data.get("retry_base_delay", 0.5)),
        retry_max_delay=float(data.get("retry_max_delay", 30.0)),
    )


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    """
    Parse ``BillingSettings`` from the ``settings`` block of root.yaml.

    Raises:
        KeyError: if ``database_url`` is missing.
        ValueError: if a numeric setting is out of range.
    """
    attribution_data = data.get("attribution") or {}
    attribution = AttributionSettings(
        probe_before_majority=bool(attribution_data.get("probe_before_majority", False)),
        probe_workers=int(attribution_data.get("probe_workers", 4)),
    )

    settings = BillingSettings(
        database_url=data["database_url"],
        invoice_number_prefix=str(data.get("invoice_number_prefix", "JP")),
        reconciliation_tolerance=parse_decimal(data.get("reconciliation_tolerance", "0.01")),
        chunk_size=int(data.get("chunk_size", 500)),
        tenant_workers=int(data.get("tenant_workers", 4)),
        attribution=attribution,
        vendor_api=_optional(data, "vendor_api", parse_vendor_api),
    )

    if settings.chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    if settings.tenant_workers < 1 or attribution.probe_workers < 1:
        raise ValueError("worker counts must be >= 1")
    return settings


def parse_tenant(data: dict[str, Any]) -> TenantDef:
    return TenantDef(
        tenant_id=str(data["id"]),
        short_code=str(data["short_code"]),
        name=data["name"],
        merchant_ids=tuple(str(m) for m in data.get("merchant_ids", [])),
        token_env_var=data.get("token_env_var"),
        is_active=bool(data.get("is_active", True)),
    )


def parse_markup_rule(data: dict[str, Any]) -> MarkupRuleDef:
    """
    Parse a ``MarkupRuleDef`` from a dict.

    Raises:
        KeyError: if name, billing_category, markup_type or markup_value
            is missing.
        ValueError: on an unknown markup_type or an inverted weight bracket.
    """
    markup_type = data["markup_type"]
    if markup_type not in _MARKUP_TYPES:
        raise ValueError(f"Unknown markup_type {markup_type!r} in rule {data.get('name')!r}")

    rule = MarkupRuleDef(
        name=data["name"],
        billing_category=data["billing_category"],
        markup_type=markup_type,
        markup_value=parse_decimal(data["markup_value"]),
        tenant_id=_optional(data, "tenant_id", str),
        fee_type=data.get("fee_type"),
        order_category=data.get("order_category"),
        carrier_option_id=_optional(data, "carrier_option_id", str),
        weight_min_oz=_optional(data, "weight_min_oz", parse_decimal),
        weight_max_oz=_optional(data, "weight_max_oz", parse_decimal),
        effective_from=_optional(data, "effective_from", parse_date),
        effective_to=_optional(data, "effective_to", parse_date),
        priority=int(data.get("priority", 0)),
        is_active=bool(data.get("is_active", True)),
        description=data.get("description"),
    )

    if (
        rule.weight_min_oz is not None
        and rule.weight_max_oz is not None
        and rule.weight_min_oz >= rule.weight_max_oz
    ):
        raise ValueError(f"Empty weight bracket in rule {rule.name!r}")
    return rule


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
