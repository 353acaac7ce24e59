"""
billing_services.config_sync -- persist a BillingConfigurationSet.

Responsibility:
    Bring the tenant tables and the markup rules in line with the loaded
    YAML configuration before a billing run.

Architecture position:
    Services -- imperative shell between billing_config (frozen dataclasses)
    and the kernel tables.

Invariants enforced:
    - ``tenants.next_invoice_number`` is never written here; the counter is
      owned by InvoiceCounterService.  New tenants start at 1.
    - Merchant ids and credentials are replaced to match the configuration.
    - Rules are matched by (tenant scope, name).  Rules in the database that
      the configuration no longer declares are deactivated, never deleted.
      Every rule change goes through MarkupRuleService and is recorded.
    - Syncing the same configuration twice changes nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config.schema import BillingConfigurationSet, TenantDef
from billing_kernel.db.base import SYSTEM_ACTOR_ID
from billing_kernel.domain.clock import Clock
from billing_kernel.logging_config import get_logger
from billing_kernel.models.markup_rule import MarkupRule
from billing_kernel.models.tenant import Tenant, TenantCredential, TenantMerchantId
from billing_services.markup_rules import MarkupRuleService, values_from_def

logger = get_logger("services.config_sync")


@dataclass
class ConfigSyncResult:
    tenants_created: list[str] = field(default_factory=list)
    tenants_updated: list[str] = field(default_factory=list)
    rules_created: list[str] = field(default_factory=list)
    rules_updated: list[str] = field(default_factory=list)
    rules_deactivated: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return any(
            (
                self.tenants_created,
                self.tenants_updated,
                self.rules_created,
                self.rules_updated,
                self.rules_deactivated,
            )
        )


class ConfigSyncService:
    def __init__(self, session: Session, clock: Clock | None = None, actor_id: UUID | None = None):
        self._session = session
        self._actor_id = actor_id or SYSTEM_ACTOR_ID
        self._rules = MarkupRuleService(session, clock)

    def sync(self, config: BillingConfigurationSet) -> ConfigSyncResult:
        result = ConfigSyncResult()
        for tenant_def in config.tenants:
            self._sync_tenant(tenant_def, result)
        self._session.flush()
        self._sync_rules(config, result)
        logger.info(
            "billing_config_synced",
            extra={
                "config_id": config.config_id,
                "config_version": config.version,
                "checksum": config.checksum,
                "tenants_created": len(result.tenants_created),
                "tenants_updated": len(result.tenants_updated),
                "rules_created": len(result.rules_created),
                "rules_updated": len(result.rules_updated),
                "rules_deactivated": len(result.rules_deactivated),
            },
        )
        return result

    # -- tenants ------------------------------------------------------------------

    def _sync_tenant(self, tenant_def: TenantDef, result: ConfigSyncResult) -> None:
        tenant = self._session.get(Tenant, tenant_def.tenant_id)
        if tenant is None:
            tenant = Tenant(
                id=tenant_def.tenant_id,
                short_code=tenant_def.short_code,
                name=tenant_def.name,
                is_active=tenant_def.is_active,
                created_by_id=self._actor_id,
            )
            self._session.add(tenant)
            result.tenants_created.append(tenant.id)
            changed = True
        else:
            changed = False
            for attr in ("short_code", "name", "is_active"):
                value = getattr(tenant_def, attr)
                if getattr(tenant, attr) != value:
                    setattr(tenant, attr, value)
                    changed = True

        wanted = set(tenant_def.merchant_ids)
        current = {m.merchant_id for m in tenant.merchant_ids}
        if wanted != current:
            tenant.merchant_ids[:] = [m for m in tenant.merchant_ids if m.merchant_id in wanted]
            for merchant_id in sorted(wanted - current):
                tenant.merchant_ids.append(
                    TenantMerchantId(merchant_id=merchant_id, created_by_id=self._actor_id)
                )
            changed = True

        if tenant_def.token_env_var is None:
            if tenant.credential is not None:
                tenant.credential = None
                changed = True
        elif tenant.credential is None:
            tenant.credential = TenantCredential(
                token_env_var=tenant_def.token_env_var, created_by_id=self._actor_id
            )
            changed = True
        elif tenant.credential.token_env_var != tenant_def.token_env_var:
            tenant.credential.token_env_var = tenant_def.token_env_var
            changed = True

        if changed and tenant.id not in result.tenants_created:
            tenant.updated_by_id = self._actor_id
            result.tenants_updated.append(tenant.id)

    # -- rules --------------------------------------------------------------------

    def _sync_rules(self, config: BillingConfigurationSet, result: ConfigSyncResult) -> None:
        reason = f"config {config.config_id} v{config.version}"
        declared = set()
        for rule_def in config.markup_rules:
            declared.add((rule_def.tenant_id, rule_def.name))
            values = values_from_def(rule_def)
            existing = self._rules.find(rule_def.name, rule_def.tenant_id)
            if existing is None:
                self._rules.create_rule(values, self._actor_id, reason)
                result.rules_created.append(rule_def.name)
                continue
            diff = {k: v for k, v in values.items() if getattr(existing, k) != v}
            if diff:
                self._rules.update_rule(existing.id, diff, self._actor_id, reason)
                result.rules_updated.append(rule_def.name)

        active = self._session.execute(
            select(MarkupRule).where(MarkupRule.is_active.is_(True)).order_by(MarkupRule.name)
        ).scalars()
        for rule in list(active):
            if (rule.tenant_id, rule.name) not in declared:
                self._rules.deactivate_rule(rule.id, self._actor_id, reason)
                result.rules_deactivated.append(rule.name)
