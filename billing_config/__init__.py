"""
billing_config -- single public entrypoint for billing settings.

Responsibility:
    ``get_active_settings()`` is the only way runtime code obtains settings.
    The YAML path comes from ``BILLING_CONFIG`` (default: ``sets/default.yaml``
    beside this package); secrets come only from the environment.

Failure modes:
    - ``FileNotFoundError`` -- the configured YAML file does not exist.
    - ``ValueError`` -- a value is out of range.

Every successful call emits a ``billing_config_loaded`` log entry carrying
the path and checksum of the settings file.
"""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

from billing_config.loader import (
    compute_checksum,
    load_settings,
    load_yaml_file,
    parse_settings,
)
from billing_config.schema import BillingSettings, GatewaySettings, SmtpSettings
from billing_kernel.db.engine import create_tables, init_engine_from_url
from billing_kernel.logging_config import get_logger

__all__ = [
    "BillingSettings",
    "GatewaySettings",
    "SmtpSettings",
    "get_active_settings",
    "init_database",
    "load_settings",
]

_logger = get_logger("config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_ENV = "BILLING_CONFIG"
GATEWAY_SECRET_ENV = "BILLING_GATEWAY_KEY_SECRET"
SMTP_PASSWORD_ENV = "BILLING_SMTP_PASSWORD"


def get_active_settings(path: Path | str | None = None) -> BillingSettings:
    """The ONLY runtime settings entrypoint."""
    path = Path(path or os.environ.get(CONFIG_ENV) or _DEFAULT_CONFIG_PATH)
    data = load_yaml_file(path)
    settings = parse_settings(data)

    secret = os.environ.get(GATEWAY_SECRET_ENV)
    if secret:
        settings = replace(settings, gateway=settings.gateway.with_secret(secret))
    password = os.environ.get(SMTP_PASSWORD_ENV)
    if password:
        settings = replace(settings, smtp=settings.smtp.with_password(password))

    _logger.info(
        "billing_config_loaded",
        extra={
            "config_path": str(path),
            "checksum": compute_checksum(data),
            "currency": settings.currency,
            "gateway_provider": settings.gateway.provider,
            "gateway_key_configured": bool(settings.gateway.key_secret),
        },
    )
    return settings


def init_database(settings: BillingSettings | None = None, *, create: bool = True):
    """Open the engine named by ``database.url`` and, by default, create the tables."""
    settings = settings or get_active_settings()
    engine = init_engine_from_url(settings.database_url)
    if create:
        create_tables()
    return engine
