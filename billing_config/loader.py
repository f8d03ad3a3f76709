"""
Settings Loader (``billing_config.loader``).

Responsibility
--------------
Reads a YAML settings file and parses it into ``BillingSettings``.
Runtime callers go through ``billing_config.get_active_settings()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Out-of-range values  -> ``ValueError`` with the offending key.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingSettings, GatewaySettings, SmtpSettings


def load_yaml_file(path: Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, key: str) -> Decimal:
    """Parse a YAML scalar as Decimal via ``str`` so 0.1 stays 0.1."""
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{key}: not a decimal: {value!r}") from exc


def parse_gateway(data: dict[str, Any]) -> GatewaySettings:
    defaults = GatewaySettings()
    timeout = float(data.get("timeout_seconds", defaults.timeout_seconds))
    if timeout <= 0:
        raise ValueError(f"gateway.timeout_seconds must be positive, got {timeout}")
    return GatewaySettings(
        provider=data.get("provider", defaults.provider),
        base_url=data.get("base_url", defaults.base_url).rstrip("/"),
        key_id=data.get("key_id", defaults.key_id),
        timeout_seconds=timeout,
    )


def parse_smtp(data: dict[str, Any]) -> SmtpSettings:
    defaults = SmtpSettings()
    return SmtpSettings(
        host=data.get("host", defaults.host),
        port=int(data.get("port", defaults.port)),
        username=data.get("username", defaults.username),
        sender=data.get("sender", defaults.sender),
        use_tls=bool(data.get("use_tls", defaults.use_tls)),
        enabled=bool(data.get("enabled", defaults.enabled)),
    )


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    """
    Build ``BillingSettings`` from a parsed YAML mapping.

    Missing keys fall back to the dataclass defaults.
    """
    defaults = BillingSettings()
    billing = data.get("billing", {})

    tax_rate = parse_decimal(
        billing.get("checkout_tax_rate", defaults.checkout_tax_rate),
        "billing.checkout_tax_rate",
    )
    if tax_rate < 0 or tax_rate > 100:
        raise ValueError(f"billing.checkout_tax_rate out of range: {tax_rate}")

    due_days = int(billing.get("invoice_due_days", defaults.invoice_due_days))
    if due_days < 0:
        raise ValueError(f"billing.invoice_due_days must not be negative, got {due_days}")

    ttl = int(billing.get("payment_link_ttl_hours", defaults.payment_link_ttl_hours))
    if ttl <= 0:
        raise ValueError(f"billing.payment_link_ttl_hours must be positive, got {ttl}")

    return BillingSettings(
        currency=billing.get("currency", defaults.currency).upper(),
        checkout_tax_rate=tax_rate,
        invoice_due_days=due_days,
        payment_link_ttl_hours=ttl,
        default_tax_country=billing.get("default_tax_country", defaults.default_tax_country),
        gateway=parse_gateway(data.get("gateway", {})),
        smtp=parse_smtp(data.get("smtp", {})),
        database_url=data.get("database", {}).get("url", defaults.database_url),
    )


def load_settings(path: Path | str) -> BillingSettings:
    return parse_settings(load_yaml_file(Path(path)))


def compute_checksum(data: dict[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed settings mapping."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
