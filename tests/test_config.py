"""Tests for cert_engine.config."""

import pytest

from conftest import TEST_ENCRYPTION_KEY


@pytest.fixture(autouse=True)
def _base_env(monkeypatch, tmp_path):
    for name in (
        "ACME_CONTACT_EMAIL",
        "ACME_DIRECTORY_URL",
        "ACME_STAGING",
        "ACME_SANDBOX_MODE",
        "KEY_VAULT_PROVIDER",
        "RATE_LIMIT_PER_WEEK",
        "RATE_LIMIT_BACKEND",
        "SSL_RENEWAL_THRESHOLD_DAYS",
        "SSL_RENEWAL_BATCH_SIZE",
        "INTERNAL_API_SECRET",
        "CRON_SECRET",
        "AGENT_URL",
        "AGENT_SECRET",
        "NGINX_AGENT_URL",
        "NGINX_AGENT_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "certs.db"))
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)


def test_load_config_defaults(monkeypatch):
    from cert_engine.config import load_config

    cfg = load_config()
    assert cfg.acme_directory_url == "https://acme-v02.api.letsencrypt.org/directory"
    assert cfg.sandbox_mode is False
    assert cfg.rate_limit_per_week == 45
    assert cfg.rate_limit_backend == "memory"
    assert cfg.renewal_threshold_days == 30
    assert cfg.renewal_batch_size == 10
    assert cfg.key_vault_provider == "local"
    assert cfg.contact_email is None


def test_load_config_staging_directory(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("ACME_STAGING", "true")

    cfg = load_config()
    assert cfg.acme_directory_url == "https://acme-staging-v02.api.letsencrypt.org/directory"


def test_load_config_explicit_directory_wins_over_staging(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("ACME_STAGING", "true")
    monkeypatch.setenv("ACME_DIRECTORY_URL", "https://acme.zerossl.com/v2/DV90")

    assert load_config().acme_directory_url == "https://acme.zerossl.com/v2/DV90"


def test_load_config_custom_optionals(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("ACME_CONTACT_EMAIL", "ops@example.com")
    monkeypatch.setenv("ACME_SANDBOX_MODE", "TRUE")
    monkeypatch.setenv("SANDBOX_DELAY_SECONDS", "0.5")
    monkeypatch.setenv("SSL_RENEWAL_THRESHOLD_DAYS", "14")
    monkeypatch.setenv("SSL_RENEWAL_BATCH_SIZE", "2")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "store")
    monkeypatch.setenv("DNS_NAMESERVERS", "1.1.1.1, 8.8.8.8")
    monkeypatch.setenv("CRON_SECRET", "s3cret")

    cfg = load_config()
    assert cfg.contact_email == "ops@example.com"
    assert cfg.sandbox_mode is True
    assert cfg.sandbox_delay_seconds == 0.5
    assert cfg.renewal_threshold_days == 14
    assert cfg.renewal_batch_size == 2
    assert cfg.rate_limit_backend == "store"
    assert cfg.dns_nameservers == ("1.1.1.1", "8.8.8.8")
    assert cfg.internal_api_secret == "s3cret"


def test_load_config_agent_settings_accept_nginx_names(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("NGINX_AGENT_URL", "http://agent.internal:9000")
    monkeypatch.setenv("NGINX_AGENT_SECRET", "legacy-secret")

    cfg = load_config()
    assert cfg.agent_url == "http://agent.internal:9000"
    assert cfg.agent_secret == "legacy-secret"

    monkeypatch.setenv("AGENT_URL", "http://agent-v2.internal")
    assert load_config().agent_url == "http://agent-v2.internal"


def test_load_config_missing_database_path(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.delenv("DATABASE_PATH")

    with pytest.raises(ValueError, match="DATABASE_PATH"):
        load_config()


def test_load_config_local_vault_requires_encryption_key(monkeypatch):
    from cert_engine.config import load_config
    from cert_engine.errors import ConfigurationError

    monkeypatch.delenv("ENCRYPTION_KEY")

    with pytest.raises(ConfigurationError, match="ENCRYPTION_KEY"):
        load_config()


def test_load_config_azure_vault_requires_url_and_key(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("KEY_VAULT_PROVIDER", "azure")
    monkeypatch.setenv("AZURE_KEYVAULT_URL", "https://myvault.vault.azure.net")
    monkeypatch.delenv("AZURE_KEYVAULT_KEY_NAME", raising=False)

    with pytest.raises(ValueError, match="AZURE_KEYVAULT_KEY_NAME"):
        load_config()


def test_load_config_non_integer_batch_size(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("SSL_RENEWAL_BATCH_SIZE", "ten")

    with pytest.raises(ValueError, match="SSL_RENEWAL_BATCH_SIZE must be an integer"):
        load_config()


def test_load_config_zero_rate_limit_rejected(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("RATE_LIMIT_PER_WEEK", "0")

    with pytest.raises(ValueError, match="RATE_LIMIT_PER_WEEK must be >= 1"):
        load_config()


def test_load_config_unknown_rate_limit_backend(monkeypatch):
    from cert_engine.config import load_config

    monkeypatch.setenv("RATE_LIMIT_BACKEND", "redis")

    with pytest.raises(ValueError, match="RATE_LIMIT_BACKEND"):
        load_config()
