import pytest

from config import GatewayEnvironment, Settings


def test_defaults(monkeypatch):
    for name in ("PHONEPE_ENVIRONMENT", "PHONEPE_CLIENT_ID", "PHONEPE_CLIENT_SECRET", "POLLER_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.environment == GatewayEnvironment.SANDBOX
    assert not settings.has_gateway_credentials
    assert not settings.poller_enabled
    assert settings.status_freshness_seconds == 5.0


def test_from_env(monkeypatch):
    monkeypatch.setenv("PHONEPE_ENVIRONMENT", "production")
    monkeypatch.setenv("PHONEPE_CLIENT_ID", "CID")
    monkeypatch.setenv("PHONEPE_CLIENT_SECRET", "SECRET")
    monkeypatch.setenv("PHONEPE_AUTO_MERCHANT_ORDER_ID", "yes")
    monkeypatch.setenv("POLLER_ENABLED", "1")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example,https://b.example")

    settings = Settings.from_env()

    assert settings.environment == GatewayEnvironment.PRODUCTION
    assert settings.has_gateway_credentials
    assert settings.auto_merchant_order_id
    assert settings.poller_enabled
    assert settings.cors_origins == ["https://a.example", "https://b.example"]


def test_invalid_environment_rejected(monkeypatch):
    monkeypatch.setenv("PHONEPE_ENVIRONMENT", "STAGING")
    with pytest.raises(ValueError, match="SANDBOX or PRODUCTION"):
        Settings.from_env()
