"""Service container: wires the engine's collaborators from an AppConfig."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from cert_engine.acme_client import AcmeAccountManager, AcmeCertificateAuthority, CertificateAuthority
from cert_engine.config import AppConfig
from cert_engine.dns import get_dns_resolver
from cert_engine.dns.base import DnsResolver
from cert_engine.issuance import IssuanceService
from cert_engine.jobs import CompletionWorker
from cert_engine.keyvault import KeyVault, get_key_vault
from cert_engine.rate_limit import InMemoryRateLimiter, RateLimiter, StoreRateLimiter
from cert_engine.renewal import RenewalScheduler
from cert_engine.sandbox import SandboxCertificateAuthority
from cert_engine.ssrf import HostnameGuard
from cert_engine.store import CertificateStore
from cert_engine.webhook import AgentNotifier

logger = logging.getLogger(__name__)


@dataclass
class CertificateEngine:
    config: AppConfig
    store: CertificateStore
    issuance: IssuanceService
    worker: CompletionWorker
    renewal: RenewalScheduler
    notifier: AgentNotifier

    def close(self) -> None:
        self.worker.shutdown()
        self.notifier.close()


def build_engine(
    config: AppConfig,
    *,
    resolver: DnsResolver | None = None,
    vault: KeyVault | None = None,
    authority: CertificateAuthority | None = None,
    notifier: AgentNotifier | None = None,
) -> CertificateEngine:
    """Build a ready-to-use engine. Keyword arguments replace the configured collaborators."""
    store = CertificateStore(config.database_path)
    store.initialize()

    resolver = resolver or get_dns_resolver(config)
    vault = vault or get_key_vault(config)

    if authority is None:
        if config.sandbox_mode:
            logger.warning("ACME sandbox mode enabled: certificates are simulated and untrusted")
            authority = SandboxCertificateAuthority(delay_seconds=config.sandbox_delay_seconds)
        else:
            accounts = AcmeAccountManager(store, vault, config.acme_directory_url, config.contact_email)
            authority = AcmeCertificateAuthority(accounts, resolver, config.completion_deadline_seconds)

    rate_limiter: RateLimiter
    if config.rate_limit_backend == "store":
        rate_limiter = StoreRateLimiter(store, limit=config.rate_limit_per_week)
    else:
        rate_limiter = InMemoryRateLimiter(limit=config.rate_limit_per_week)

    notifier = notifier or AgentNotifier(config.agent_url, config.agent_secret, sandbox_mode=config.sandbox_mode)

    issuance = IssuanceService(
        store,
        vault,
        authority,
        HostnameGuard(resolver),
        rate_limiter,
        notifier,
        sandbox_mode=config.sandbox_mode,
    )
    worker = CompletionWorker(
        store,
        issuance,
        max_workers=config.completion_workers,
        max_attempts=config.completion_max_attempts,
        deadline_seconds=config.completion_deadline_seconds,
    )
    issuance.set_job_listener(worker.wake)

    renewal = RenewalScheduler(
        store,
        issuance,
        threshold_days=config.renewal_threshold_days,
        batch_size=config.renewal_batch_size,
    )
    return CertificateEngine(
        config=config,
        store=store,
        issuance=issuance,
        worker=worker,
        renewal=renewal,
        notifier=notifier,
    )
