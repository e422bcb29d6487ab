"""Challenge orchestrator: drives a certificate from order creation to ISSUED or FAILED, and on to REVOKED.

HTTP-01 is two-step: initiation persists the pending record together with a
durable completion job and returns; the job worker later calls
``complete_http01``. DNS-01 is two explicit calls: ``initiate_dns01`` hands
back the TXT record to publish, ``complete_dns01`` verifies and finalizes.

Every transition out of a pending state is a compare-and-set in the store, so
a cancelled record is never overwritten by a late completion.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime

from cert_engine.acme_client import CertificateAuthority, generate_key_and_csr
from cert_engine.dns.util import challenge_record_name
from cert_engine.errors import (
    CertificateNotFoundError,
    DomainNotFoundError,
    DomainNotVerifiedError,
    IssuanceConflictError,
    IssuanceFailure,
    StateMismatchError,
)
from cert_engine.keyvault import KeyVault
from cert_engine.models import (
    CertBundle,
    CertificateStatus,
    ChallengeType,
    Dns01ChallengeInfo,
    Domain,
    DomainCertificate,
    IssuedCertificate,
    JobKind,
    SslMode,
)
from cert_engine.pem import certificate_expiry, split_chain
from cert_engine.rate_limit import RateLimiter
from cert_engine.ssrf import HostnameGuard
from cert_engine.store import CertificateStore
from cert_engine.webhook import CERT_ISSUED, CERT_REVOKED, AgentEvent, AgentNotifier

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Certificate issuance cancelled by user"
REVOKED_MESSAGE = "Certificate revoked by user"
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{20,128}$")


class IssuanceService:
    """Owns the certificate state machine for HTTP-01 and DNS-01 issuance."""

    def __init__(
        self,
        store: CertificateStore,
        vault: KeyVault,
        authority: CertificateAuthority,
        guard: HostnameGuard,
        rate_limiter: RateLimiter,
        notifier: AgentNotifier,
        *,
        sandbox_mode: bool = False,
    ) -> None:
        self._store = store
        self._vault = vault
        self._authority = authority
        self._guard = guard
        self._rate_limiter = rate_limiter
        self._notifier = notifier
        self._sandbox_mode = sandbox_mode
        self._on_enqueued: Callable[[], object] | None = None

    def set_job_listener(self, listener: Callable[[], object]) -> None:
        """Register a callback invoked after a completion job is enqueued."""
        self._on_enqueued = listener

    # --- Entry point ---

    def request_certificate(self, domain_id: str, challenge_type: ChallengeType) -> str | Dns01ChallengeInfo:
        """Start issuance for a verified domain that has no active or in-progress certificate.

        Returns the certificate id for HTTP-01, or the TXT record to publish for DNS-01.
        """
        domain = self._require_domain(domain_id)
        if not domain.verified:
            raise DomainNotVerifiedError(f"Domain {domain.hostname} must be verified before requesting a certificate")
        if self._store.has_pending(domain.id):
            raise IssuanceConflictError(f"Certificate issuance already in progress for {domain.hostname}")
        if self._store.latest_issued(domain.id) is not None:
            raise IssuanceConflictError(f"{domain.hostname} already has an active certificate; use renew instead")

        if challenge_type is ChallengeType.HTTP01:
            return self.initiate_http01(domain.id, domain.hostname)
        return self.initiate_dns01(domain.id, domain.hostname)

    # --- HTTP-01 ---

    def initiate_http01(self, domain_id: str, hostname: str) -> str:
        """Create the order and pending record, enqueue completion, return the certificate id."""
        key_pem, csr_pem = self._prepare_order(domain_id, hostname)
        challenge = self._authority.create_order(hostname, csr_pem, ChallengeType.HTTP01)

        cert = self._store.create_certificate(
            domain_id=domain_id,
            challenge_type=ChallengeType.HTTP01,
            private_key_pem=self._vault.encrypt(key_pem),
            csr_pem=csr_pem.decode(),
            acme_order_url=challenge.order_url,
            challenge_token=challenge.token,
            challenge_key_auth=challenge.validation,
            job_kind=JobKind.COMPLETE_HTTP01,
        )
        logger.info("HTTP-01 issuance started for %s (certificate %s)", hostname, cert.id)

        if self._on_enqueued is not None:
            self._on_enqueued()
        return cert.id

    def complete_http01(self, cert_id: str) -> bool:
        """Finish a pending HTTP-01 issuance. Called by the completion worker.

        Returns False when the record has left PENDING_HTTP01 (e.g. cancelled).
        CA and network errors propagate to the worker, which decides between
        retry and FAILED.
        """
        cert = self._require_certificate(cert_id)
        if cert.status is not CertificateStatus.PENDING_HTTP01:
            logger.info("Certificate %s is %s; skipping HTTP-01 completion", cert_id, cert.status)
            return False

        domain = self._require_domain(cert.domain_id)
        full_chain = self._authority.complete_order(
            cert.acme_order_url, domain.hostname, cert.csr_pem.encode(), ChallengeType.HTTP01
        )
        return self._finish(cert, domain, full_chain)

    def fail(self, cert_id: str, error: str) -> bool:
        """Record a terminal completion failure. No-op when the record is no longer pending."""
        changed = self._store.mark_failed(cert_id, error)
        if changed:
            logger.warning("Certificate %s failed: %s", cert_id, error)
        return changed

    def key_authorization_for(self, hostname: str, token: str) -> str | None:
        """Key authorization to serve at ``/.well-known/acme-challenge/{token}``, if pending."""
        if not _TOKEN_RE.match(token):
            return None
        cert = self._store.find_pending_http01(hostname, token)
        return cert.challenge_key_auth if cert else None

    # --- DNS-01 ---

    def initiate_dns01(self, domain_id: str, hostname: str) -> Dns01ChallengeInfo:
        """Create the order and pending record, return the TXT record the owner must publish."""
        key_pem, csr_pem = self._prepare_order(domain_id, hostname)
        challenge = self._authority.create_order(hostname, csr_pem, ChallengeType.DNS01)

        cert = self._store.create_certificate(
            domain_id=domain_id,
            challenge_type=ChallengeType.DNS01,
            private_key_pem=self._vault.encrypt(key_pem),
            csr_pem=csr_pem.decode(),
            acme_order_url=challenge.order_url,
            challenge_token=challenge.token,
            dns_txt_value=challenge.validation,
        )
        logger.info("DNS-01 issuance started for %s (certificate %s)", hostname, cert.id)
        return Dns01ChallengeInfo(
            cert_id=cert.id,
            txt_name=challenge_record_name(hostname),
            txt_value=challenge.validation,
        )

    def complete_dns01(self, cert_id: str) -> None:
        """Verify the published TXT record and finalize the order.

        Raises:
            CertificateNotFoundError: Unknown id.
            StateMismatchError: The record is not PENDING_DNS01. No CA call is made.
            PropagationError: TXT record not visible yet. The record stays pending.
            IssuanceFailure: The CA rejected the challenge or order. The record is FAILED.
        """
        cert = self._require_certificate(cert_id)
        if cert.status is not CertificateStatus.PENDING_DNS01:
            raise StateMismatchError(cert_id, str(cert.status), str(CertificateStatus.PENDING_DNS01))

        domain = self._require_domain(cert.domain_id)
        self._authority.verify_dns01(challenge_record_name(domain.hostname), cert.dns_txt_value)

        try:
            full_chain = self._authority.complete_order(
                cert.acme_order_url, domain.hostname, cert.csr_pem.encode(), ChallengeType.DNS01
            )
        except IssuanceFailure as e:
            self.fail(cert_id, str(e))
            raise

        if not self._finish(cert, domain, full_chain):
            current = self._require_certificate(cert_id)
            raise StateMismatchError(cert_id, str(current.status), str(CertificateStatus.PENDING_DNS01))

    # --- Reads and cancellation ---

    def get_status(self, cert_id: str) -> dict:
        cert = self._require_certificate(cert_id)
        domain = self._store.get_domain(cert.domain_id)
        status = {
            "id": cert.id,
            "domainId": cert.domain_id,
            "domain": domain.hostname if domain else None,
            "status": str(cert.status),
            "challengeType": str(cert.challenge_type),
            "issuedAt": cert.issued_at.isoformat() if cert.issued_at else None,
            "expiresAt": cert.expires_at.isoformat() if cert.expires_at else None,
            "lastError": cert.last_error,
            "renewalAttempts": cert.renewal_attempts,
        }
        if cert.status is CertificateStatus.PENDING_DNS01 and domain is not None:
            status["txtName"] = challenge_record_name(domain.hostname)
            status["txtValue"] = cert.dns_txt_value
        return status

    def cancel(self, cert_id: str) -> None:
        """Abandon a pending issuance. Cancelling does not count as a renewal attempt."""
        cert = self._require_certificate(cert_id)
        if not cert.is_pending or not self._store.mark_failed(cert_id, CANCELLED_MESSAGE, count_attempt=False):
            current = self._require_certificate(cert_id)
            raise StateMismatchError(cert_id, str(current.status), "PENDING_HTTP01 or PENDING_DNS01")
        logger.info("Certificate %s cancelled", cert_id)

    def revoke(self, cert_id: str) -> None:
        """Revoke an ISSUED certificate with the CA and tell the agent to stop serving it.

        Raises:
            CertificateNotFoundError: Unknown id.
            StateMismatchError: The record is not ISSUED. No CA call is made.
            IssuanceFailure: The CA refused the revocation. The record stays ISSUED.
        """
        cert = self._require_certificate(cert_id)
        if cert.status is not CertificateStatus.ISSUED or cert.certificate_pem is None:
            raise StateMismatchError(cert_id, str(cert.status), str(CertificateStatus.ISSUED))

        domain = self._require_domain(cert.domain_id)
        self._authority.revoke_certificate(cert.certificate_pem)
        if not self._store.mark_revoked(cert_id, REVOKED_MESSAGE):
            current = self._require_certificate(cert_id)
            raise StateMismatchError(cert_id, str(current.status), str(CertificateStatus.ISSUED))

        logger.info("Certificate %s for %s revoked", cert_id, domain.hostname)
        self._notifier.notify(AgentEvent(event=CERT_REVOKED, domain=domain.hostname))

    def get_active_bundle(self, hostname: str) -> CertBundle | None:
        """Decrypted key and chain of the newest ISSUED certificate for a CA-issued domain."""
        domain = self._store.get_domain_by_hostname(hostname)
        if domain is None or domain.ssl_mode is not SslMode.CA_ISSUED:
            return None
        cert = self._store.latest_issued(domain.id)
        if cert is None or cert.full_chain_pem is None or cert.expires_at is None:
            return None
        return CertBundle(
            private_key=self._vault.decrypt(cert.private_key_pem),
            certificate=cert.certificate_pem,
            full_chain=cert.full_chain_pem,
            expires_at=cert.expires_at,
        )

    # --- Internals ---

    def _prepare_order(self, domain_id: str, hostname: str) -> tuple[str, bytes]:
        # Checked before any rate-limit slot or CA order is spent.
        if self._store.has_pending(domain_id):
            raise IssuanceConflictError(f"Certificate issuance already in progress for {hostname}")
        self._guard.assert_not_internal(hostname)
        if not self._sandbox_mode:
            self._rate_limiter.check_and_record(hostname)
        return generate_key_and_csr(hostname)

    def _finish(self, cert: DomainCertificate, domain: Domain, full_chain_pem: str) -> bool:
        leaf_pem, chain_pem = split_chain(full_chain_pem)
        issued = IssuedCertificate(
            certificate_pem=leaf_pem,
            full_chain_pem=chain_pem,
            issued_at=datetime.now(UTC),
            expires_at=certificate_expiry(leaf_pem),
        )
        if not self._store.mark_issued(cert.id, issued):
            logger.warning("Certificate %s left pending state before completion; discarding result", cert.id)
            return False

        logger.info("Certificate issued for %s (certificate %s, expires %s)", domain.hostname, cert.id, issued.expires_at)
        self._notifier.notify(AgentEvent(event=CERT_ISSUED, domain=domain.hostname, cert_id=cert.id))
        return True

    def _require_certificate(self, cert_id: str) -> DomainCertificate:
        cert = self._store.get_certificate(cert_id)
        if cert is None:
            raise CertificateNotFoundError(f"Certificate {cert_id} not found")
        return cert

    def _require_domain(self, domain_id: str) -> Domain:
        domain = self._store.get_domain(domain_id)
        if domain is None:
            raise DomainNotFoundError(f"Domain {domain_id} not found")
        return domain
