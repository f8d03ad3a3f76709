"""Settings loading from YAML and the environment."""

from decimal import Decimal

import pytest
import yaml

from sqlalchemy import inspect

from billing_config import get_active_settings, init_database, load_settings
from billing_kernel.db.engine import reset_engine
from billing_config.loader import compute_checksum, parse_settings


@pytest.fixture
def write_config(tmp_path):
    def _write(data):
        path = tmp_path / "billing.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write


class TestDefaults:
    def test_bundled_file(self, monkeypatch):
        monkeypatch.delenv("BILLING_CONFIG", raising=False)
        monkeypatch.delenv("BILLING_GATEWAY_KEY_SECRET", raising=False)
        settings = get_active_settings()
        assert settings.currency == "INR"
        assert settings.checkout_tax_rate == Decimal("18")
        assert settings.invoice_due_days == 30
        assert settings.gateway.key_secret == ""
        assert settings.smtp.enabled is False

    def test_empty_mapping_uses_dataclass_defaults(self):
        settings = parse_settings({})
        assert settings.payment_link_ttl_hours == 24
        assert settings.gateway.base_url == "https://api.razorpay.com/v1"


class TestParsing:
    def test_decimal_kept_exact(self, write_config):
        settings = load_settings(write_config({"billing": {"checkout_tax_rate": 0.1}}))
        assert settings.checkout_tax_rate == Decimal("0.1")

    def test_trailing_slash_stripped(self):
        settings = parse_settings({"gateway": {"base_url": "https://gw.example.com/v1/"}})
        assert settings.gateway.base_url == "https://gw.example.com/v1"

    @pytest.mark.parametrize(
        "data",
        [
            {"billing": {"checkout_tax_rate": 101}},
            {"billing": {"checkout_tax_rate": "abc"}},
            {"billing": {"invoice_due_days": -1}},
            {"billing": {"payment_link_ttl_hours": 0}},
            {"gateway": {"timeout_seconds": 0}},
        ],
    )
    def test_out_of_range(self, data):
        with pytest.raises(ValueError):
            parse_settings(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "absent.yaml")


class TestEnvironment:
    def test_secrets_from_environment(self, write_config, monkeypatch):
        monkeypatch.setenv("BILLING_CONFIG", str(write_config({"billing": {"currency": "usd"}})))
        monkeypatch.setenv("BILLING_GATEWAY_KEY_SECRET", "env-secret")
        monkeypatch.setenv("BILLING_SMTP_PASSWORD", "env-pw")
        settings = get_active_settings()
        assert settings.currency == "USD"
        assert settings.gateway.key_secret == "env-secret"
        assert settings.smtp.password == "env-pw"

    def test_load_is_logged_with_checksum(self, write_config, captured_logs, monkeypatch):
        monkeypatch.delenv("BILLING_GATEWAY_KEY_SECRET", raising=False)
        data = {"billing": {"invoice_due_days": 15}}
        get_active_settings(write_config(data))
        [record] = [r for r in captured_logs() if r["message"] == "billing_config_loaded"]
        assert record["checksum"] == compute_checksum(data)
        assert "key_secret" not in record
        assert record["gateway_key_configured"] is False


def test_checksum_ignores_key_order():
    assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})


class TestInitDatabase:
    def test_opens_configured_url_and_creates_tables(self, tmp_path, write_config):
        db_path = tmp_path / "configured.db"
        settings = load_settings(write_config({"database": {"url": f"sqlite:///{db_path}"}}))
        try:
            engine = init_database(settings)
            tables = set(inspect(engine).get_table_names())
        finally:
            reset_engine()
        assert db_path.exists()
        assert {"subscriptions", "invoices", "sequence_counters"} <= tables
