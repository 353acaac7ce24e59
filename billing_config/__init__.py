"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a frozen ``BillingConfigurationSet``
    assembled from YAML fragments.

Architecture position:
    Configuration -- sits above ``billing_kernel`` (for ConfigLoadError and
    logging) and below ``billing_services`` / ``billing_batch``.

Fragment layout (one directory per configuration set):
    root.yaml              config_id, version, settings (required)
    tenants.yaml           tenants: [...]                (optional)
    markup_rules/*.yaml    rules: [...]                  (optional, sorted)

Failure modes:
    - ``ConfigLoadError`` -- missing directory, missing root.yaml, malformed
      YAML, missing required key or invalid value.  The original exception
      is chained as ``__cause__``.

Audit relevance:
    Every successful call logs ``billing_config_loaded`` with the config id,
    version and SHA-256 checksum, tying each billing run to the exact
    configuration that priced it.
"""

from __future__ import annotations

from pathlib import Path

import yaml

from billing_config.loader import (
    compute_checksum,
    load_yaml_file,
    parse_markup_rule,
    parse_settings,
    parse_tenant,
)
from billing_config.schema import (
    AttributionSettings,
    BillingConfigurationSet,
    BillingSettings,
    MarkupRuleDef,
    TenantDef,
    VendorApiSettings,
)
from billing_kernel.exceptions import ConfigLoadError
from billing_kernel.logging_config import get_logger

__all__ = [
    "AttributionSettings",
    "BillingConfigurationSet",
    "BillingSettings",
    "MarkupRuleDef",
    "TenantDef",
    "VendorApiSettings",
    "assemble_from_directory",
    "get_active_config",
]

_logger = get_logger("config")

_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets" / "default"


def assemble_from_directory(fragment_dir: Path) -> BillingConfigurationSet:
    """
    Compose fragments from a directory into one BillingConfigurationSet.

    Raises:
        ConfigLoadError: If the directory or a required fragment or key is
            missing, or any fragment is malformed.
    """
    source = str(fragment_dir)
    if not fragment_dir.is_dir():
        raise ConfigLoadError(source, "configuration directory not found")

    root_path = fragment_dir / "root.yaml"
    if not root_path.exists():
        raise ConfigLoadError(source, "root.yaml not found")

    try:
        root_data = load_yaml_file(root_path)

        tenants_data: list[dict] = []
        tenants_path = fragment_dir / "tenants.yaml"
        if tenants_path.exists():
            tenants_data = load_yaml_file(tenants_path).get("tenants", []) or []

        rules_data: list[dict] = []
        rules_dir = fragment_dir / "markup_rules"
        if rules_dir.is_dir():
            for rule_file in sorted(rules_dir.glob("*.yaml")):
                rules_data.extend(load_yaml_file(rule_file).get("rules", []) or [])

        settings = parse_settings(root_data["settings"])
        tenants = tuple(parse_tenant(t) for t in tenants_data)
        rules = tuple(parse_markup_rule(r) for r in rules_data)
        config_id = str(root_data["config_id"])
        version = int(root_data.get("version", 1))
    except KeyError as exc:
        raise ConfigLoadError(source, f"missing required key {exc.args[0]!r}") from exc
    except (ValueError, TypeError, yaml.YAMLError) as exc:
        raise ConfigLoadError(source, str(exc)) from exc

    short_codes = [t.short_code for t in tenants]
    if len(short_codes) != len(set(short_codes)):
        raise ConfigLoadError(source, "duplicate tenant short_code")

    checksum = compute_checksum(
        {
            "root": root_data,
            "tenants": tenants_data,
            "markup_rules": rules_data,
        }
    )

    return BillingConfigurationSet(
        config_id=config_id,
        version=version,
        settings=settings,
        tenants=tenants,
        markup_rules=rules,
        checksum=checksum,
    )


def get_active_config(config_dir: Path | None = None) -> BillingConfigurationSet:
    """
    The ONLY public configuration entrypoint.

    Args:
        config_dir: Fragment directory to load.  Defaults to the packaged
            ``billing_config/sets/default``.

    Raises:
        ConfigLoadError: See ``assemble_from_directory``.
    """
    config = assemble_from_directory(Path(config_dir) if config_dir else _DEFAULT_CONFIG_DIR)

    _logger.info(
        "billing_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "tenant_count": len(config.tenants),
            "markup_rule_count": len(config.markup_rules),
        },
    )
    return config
