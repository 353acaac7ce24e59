"""
BillingConfigurationSet schema.

Defines the human-authored configuration artifact.  YAML fragments are
parsed into these types by the loader and composed by
``billing_config.get_active_config``.  Every type is a frozen dataclass; a
loaded configuration is never mutated at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VendorApiSettings:
    """Vendor HTTP API used for credential probing."""

    base_url: str
    requests_per_second: float = 2.0
    timeout_seconds: float = 15.0
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    retry_max_delay: float = 30.0


@dataclass(frozen=True)
class AttributionSettings:
    """
    Strategy ordering.

    With ``probe_before_majority`` the expensive credential probe runs
    before the low-confidence majority vote, so a probe hit can pre-empt a
    guess.
    """

    probe_before_majority: bool = False
    probe_workers: int = 4


@dataclass(frozen=True)
class BillingSettings:
    database_url: str
    invoice_number_prefix: str = "JP"
    reconciliation_tolerance: Decimal = Decimal("0.01")
    chunk_size: int = 500
    tenant_workers: int = 4
    attribution: AttributionSettings = field(default_factory=AttributionSettings)
    vendor_api: VendorApiSettings | None = None


# ---------------------------------------------------------------------------
# Tenants and pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TenantDef:
    tenant_id: str
    short_code: str
    name: str
    merchant_ids: tuple[str, ...] = ()
    token_env_var: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class MarkupRuleDef:
    """Declarative markup rule; a None matcher is a wildcard."""

    name: str
    billing_category: str
    markup_type: str
    markup_value: Decimal
    tenant_id: str | None = None
    fee_type: str | None = None
    order_category: str | None = None
    carrier_option_id: str | None = None
    weight_min_oz: Decimal | None = None
    weight_max_oz: Decimal | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    priority: int = 0
    is_active: bool = True
    description: str | None = None


# ---------------------------------------------------------------------------
# Assembled configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BillingConfigurationSet:
    config_id: str
    version: int
    settings: BillingSettings
    tenants: tuple[TenantDef, ...] = ()
    markup_rules: tuple[MarkupRuleDef, ...] = ()
    checksum: str = ""

    def tenant(self, tenant_id: str) -> TenantDef | None:
        for tenant in self.tenants:
            if tenant.tenant_id == tenant_id:
                return tenant
        return None
