"""Configuration loading and validation from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

from cert_engine.errors import ConfigurationError

_LETS_ENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
_LETS_ENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
_DEFAULT_RENEWAL_THRESHOLD_DAYS = 30
_DEFAULT_RENEWAL_BATCH_SIZE = 10
_DEFAULT_RATE_LIMIT_PER_WEEK = 45
_DEFAULT_SANDBOX_DELAY_SECONDS = 3.0
_DEFAULT_COMPLETION_DEADLINE_SECONDS = 180
_DEFAULT_COMPLETION_MAX_ATTEMPTS = 3
_DEFAULT_COMPLETION_WORKERS = 4

_KEY_VAULT_PROVIDERS = ("local", "azure")
_RATE_LIMIT_BACKENDS = ("memory", "store")


@dataclass(frozen=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    database_path: str
    contact_email: str | None = None
    acme_directory_url: str = _LETS_ENCRYPT_DIRECTORY
    sandbox_mode: bool = False
    sandbox_delay_seconds: float = _DEFAULT_SANDBOX_DELAY_SECONDS
    rate_limit_per_week: int = _DEFAULT_RATE_LIMIT_PER_WEEK
    rate_limit_backend: str = "memory"
    renewal_threshold_days: int = _DEFAULT_RENEWAL_THRESHOLD_DAYS
    renewal_batch_size: int = _DEFAULT_RENEWAL_BATCH_SIZE
    completion_deadline_seconds: int = _DEFAULT_COMPLETION_DEADLINE_SECONDS
    completion_max_attempts: int = _DEFAULT_COMPLETION_MAX_ATTEMPTS
    completion_workers: int = _DEFAULT_COMPLETION_WORKERS
    key_vault_provider: str = "local"
    encryption_key: str | None = None
    azure_keyvault_url: str | None = None
    azure_keyvault_key_name: str | None = None
    agent_url: str | None = None
    agent_secret: str | None = None
    internal_api_secret: str | None = None
    dns_nameservers: tuple[str, ...] = ()


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigurationError(f"Required environment variable {name} is not set")
    return value


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() == "true"


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.environ.get(name, default).strip().lower()
    if value not in choices:
        raise ConfigurationError(f"{name} must be one of {', '.join(choices)}, got: {value!r}")
    return value


def load_config() -> AppConfig:
    """Load and validate application configuration from environment variables."""
    database_path = _require_env("DATABASE_PATH")

    default_directory = _LETS_ENCRYPT_STAGING_DIRECTORY if _env_flag("ACME_STAGING") else _LETS_ENCRYPT_DIRECTORY
    acme_directory_url = os.environ.get("ACME_DIRECTORY_URL") or default_directory

    raw_delay = os.environ.get("SANDBOX_DELAY_SECONDS", str(_DEFAULT_SANDBOX_DELAY_SECONDS))
    try:
        sandbox_delay_seconds = float(raw_delay)
    except ValueError:
        raise ConfigurationError(f"SANDBOX_DELAY_SECONDS must be a number, got: {raw_delay!r}")
    if sandbox_delay_seconds < 0:
        raise ConfigurationError(f"SANDBOX_DELAY_SECONDS must not be negative, got: {sandbox_delay_seconds}")

    key_vault_provider = _env_choice("KEY_VAULT_PROVIDER", "local", _KEY_VAULT_PROVIDERS)
    encryption_key = os.environ.get("ENCRYPTION_KEY")
    azure_keyvault_url = os.environ.get("AZURE_KEYVAULT_URL")
    azure_keyvault_key_name = os.environ.get("AZURE_KEYVAULT_KEY_NAME")
    if key_vault_provider == "local" and not encryption_key:
        raise ConfigurationError("ENCRYPTION_KEY is required when KEY_VAULT_PROVIDER=local")
    if key_vault_provider == "azure" and not (azure_keyvault_url and azure_keyvault_key_name):
        raise ConfigurationError(
            "AZURE_KEYVAULT_URL and AZURE_KEYVAULT_KEY_NAME are required when KEY_VAULT_PROVIDER=azure"
        )

    return AppConfig(
        database_path=database_path,
        contact_email=os.environ.get("ACME_CONTACT_EMAIL") or None,
        acme_directory_url=acme_directory_url,
        sandbox_mode=_env_flag("ACME_SANDBOX_MODE"),
        sandbox_delay_seconds=sandbox_delay_seconds,
        rate_limit_per_week=_env_int("RATE_LIMIT_PER_WEEK", _DEFAULT_RATE_LIMIT_PER_WEEK),
        rate_limit_backend=_env_choice("RATE_LIMIT_BACKEND", "memory", _RATE_LIMIT_BACKENDS),
        renewal_threshold_days=_env_int("SSL_RENEWAL_THRESHOLD_DAYS", _DEFAULT_RENEWAL_THRESHOLD_DAYS),
        renewal_batch_size=_env_int("SSL_RENEWAL_BATCH_SIZE", _DEFAULT_RENEWAL_BATCH_SIZE),
        completion_deadline_seconds=_env_int("COMPLETION_DEADLINE_SECONDS", _DEFAULT_COMPLETION_DEADLINE_SECONDS),
        completion_max_attempts=_env_int("COMPLETION_MAX_ATTEMPTS", _DEFAULT_COMPLETION_MAX_ATTEMPTS),
        completion_workers=_env_int("COMPLETION_WORKERS", _DEFAULT_COMPLETION_WORKERS),
        key_vault_provider=key_vault_provider,
        encryption_key=encryption_key,
        azure_keyvault_url=azure_keyvault_url,
        azure_keyvault_key_name=azure_keyvault_key_name,
        agent_url=os.environ.get("AGENT_URL") or os.environ.get("NGINX_AGENT_URL") or None,
        agent_secret=os.environ.get("AGENT_SECRET") or os.environ.get("NGINX_AGENT_SECRET") or None,
        internal_api_secret=os.environ.get("INTERNAL_API_SECRET") or os.environ.get("CRON_SECRET") or None,
        dns_nameservers=tuple(ns.strip() for ns in os.environ.get("DNS_NAMESERVERS", "").split(",") if ns.strip()),
    )
