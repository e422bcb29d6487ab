"""Renewal scheduler: re-issues certificates nearing expiry and reports certificate health."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cert_engine.errors import CertificateNotFoundError, DomainNotFoundError, IssuanceConflictError, StateMismatchError
from cert_engine.issuance import IssuanceService
from cert_engine.models import (
    CertificateHealth,
    CertificateStatus,
    ChallengeType,
    Dns01ChallengeInfo,
    Domain,
    DomainCertificate,
    RenewalError,
    RenewalSummary,
)
from cert_engine.store import CertificateStore

logger = logging.getLogger(__name__)

DNS01_MANUAL_RENEWAL = "DNS-01 certificate requires manual renewal: request a new DNS-01 challenge"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RenewalScheduler:
    def __init__(
        self,
        store: CertificateStore,
        issuance: IssuanceService,
        threshold_days: int = 30,
        batch_size: int = 10,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._issuance = issuance
        self._threshold = timedelta(days=threshold_days)
        self._batch_size = batch_size
        self._clock = clock

    def run_auto_renewal(self) -> RenewalSummary:
        """Renew up to one batch of certificates expiring inside the threshold, soonest first.

        Certificates whose domain already has a pending issuance are skipped.
        A failure for one certificate is recorded on it and does not stop the
        batch. DNS-01 certificates are flagged for manual renewal only.
        """
        candidates = self._store.find_renewal_candidates(self._clock() + self._threshold, self._batch_size)
        renewed = 0
        errors: list[RenewalError] = []

        for cert, domain in candidates:
            if self._store.has_pending(domain.id):
                logger.info("Skipping renewal of %s: issuance already in progress", domain.hostname)
                continue
            try:
                if self._renew(cert, domain):
                    renewed += 1
            except IssuanceConflictError:
                logger.info("Skipping renewal of %s: issuance started concurrently", domain.hostname)
            except Exception as e:
                logger.warning("Auto-renewal failed for %s: %s", domain.hostname, e)
                self._store.record_error(cert.id, f"Auto-renewal failed: {e}")
                errors.append(RenewalError(domain=domain.hostname, error=str(e)))

        summary = RenewalSummary(checked=len(candidates), renewed=renewed, failed=len(errors), errors=errors)
        logger.info(
            "Auto-renewal: checked=%d renewed=%d failed=%d", summary.checked, summary.renewed, summary.failed
        )
        return summary

    def renew_certificate(self, cert_id: str) -> str | Dns01ChallengeInfo:
        """Manually renew one ISSUED certificate with its original challenge type.

        The owner is present, so DNS-01 starts a new cycle and returns the TXT
        record to publish instead of being flagged.
        """
        cert = self._store.get_certificate(cert_id)
        if cert is None:
            raise CertificateNotFoundError(f"Certificate {cert_id} not found")
        if cert.status is not CertificateStatus.ISSUED:
            raise StateMismatchError(cert_id, str(cert.status), str(CertificateStatus.ISSUED))
        domain = self._store.get_domain(cert.domain_id)
        if domain is None:
            raise DomainNotFoundError(f"Domain {cert.domain_id} not found")
        if cert.challenge_type is ChallengeType.DNS01:
            return self._issuance.initiate_dns01(domain.id, domain.hostname)
        return self._issuance.initiate_http01(domain.id, domain.hostname)

    def _renew(self, cert: DomainCertificate, domain: Domain) -> bool:
        if cert.challenge_type is ChallengeType.HTTP01:
            new_id = self._issuance.initiate_http01(domain.id, domain.hostname)
            logger.info("Renewal of %s started as certificate %s", domain.hostname, new_id)
            return True

        # The existing certificate keeps serving until the owner completes a new DNS-01 cycle.
        self._store.record_error(cert.id, DNS01_MANUAL_RENEWAL, count_attempt=False)
        logger.info("%s uses DNS-01; flagged for manual renewal", domain.hostname)
        return False

    def check_certificate_health(self) -> CertificateHealth:
        now = self._clock()
        return self._store.health_counts(now, now + self._threshold)
