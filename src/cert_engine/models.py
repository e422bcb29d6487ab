"""Data classes and enums shared by the store, the orchestrator and the HTTP surface."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class CertificateStatus(StrEnum):
    """Lifecycle state of a DomainCertificate record."""

    PENDING_HTTP01 = "PENDING_HTTP01"
    PENDING_DNS01 = "PENDING_DNS01"
    ISSUED = "ISSUED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


PENDING_STATUSES = (CertificateStatus.PENDING_HTTP01, CertificateStatus.PENDING_DNS01)


class ChallengeType(StrEnum):
    """Domain validation method used for an issuance."""

    HTTP01 = "HTTP01"
    DNS01 = "DNS01"

    @property
    def acme_name(self) -> str:
        """Challenge type as named by RFC 8555 ("http-01", "dns-01")."""
        return "http-01" if self is ChallengeType.HTTP01 else "dns-01"

    @property
    def pending_status(self) -> CertificateStatus:
        if self is ChallengeType.HTTP01:
            return CertificateStatus.PENDING_HTTP01
        return CertificateStatus.PENDING_DNS01


class SslMode(StrEnum):
    """How TLS is terminated for a tenant domain."""

    NONE = "NONE"
    CA_ISSUED = "CA_ISSUED"


class JobKind(StrEnum):
    """Kinds of durable background work. Dispatch must cover every member."""

    COMPLETE_HTTP01 = "COMPLETE_HTTP01"


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class AcmeAccount:
    """The single process-wide ACME account. ``account_key_pem`` is encrypted."""

    account_key_pem: str
    account_url: str
    email: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class Domain:
    """Tenant-facing custom hostname."""

    id: str
    hostname: str
    verified: bool = False
    ssl_mode: SslMode = SslMode.NONE


@dataclass(frozen=True)
class DomainCertificate:
    """One issuance attempt or result for one Domain.

    ``private_key_pem`` is always ciphertext produced by the key vault adapter.
    Challenge artifacts are populated only while pending; result material only
    once issued.
    """

    id: str
    domain_id: str
    status: CertificateStatus
    challenge_type: ChallengeType
    private_key_pem: str
    csr_pem: str
    acme_order_url: str | None = None
    challenge_token: str | None = None
    challenge_key_auth: str | None = None
    dns_txt_value: str | None = None
    certificate_pem: str | None = None
    full_chain_pem: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None
    last_error: str | None = None
    renewal_attempts: int = 0
    created_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


@dataclass(frozen=True)
class OrderChallenge:
    """Challenge details returned by a CA backend when an order is created."""

    order_url: str
    challenge_type: ChallengeType
    token: str
    validation: str


@dataclass(frozen=True)
class IssuedCertificate:
    """Result material downloaded from the CA."""

    certificate_pem: str
    full_chain_pem: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class Dns01ChallengeInfo:
    """TXT record the domain owner must publish before DNS-01 phase 2."""

    cert_id: str
    txt_name: str
    txt_value: str

    def to_dict(self) -> dict:
        return {
            "certId": self.cert_id,
            "txtName": self.txt_name,
            "txtValue": self.txt_value,
        }


@dataclass(frozen=True)
class CertBundle:
    """Decrypted material handed to the TLS-terminating proxy."""

    private_key: str
    certificate: str
    full_chain: str
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "privateKey": self.private_key,
            "certificate": self.certificate,
            "fullChain": self.full_chain,
            "expiresAt": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class RenewalError:
    domain: str
    error: str

    def to_dict(self) -> dict:
        return {"domain": self.domain, "error": self.error}


@dataclass(frozen=True)
class RenewalSummary:
    """Outcome of one auto-renewal batch."""

    checked: int
    renewed: int
    failed: int
    errors: list[RenewalError] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "renewed": self.renewed,
            "failed": self.failed,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass(frozen=True)
class CertificateHealth:
    """Aggregate certificate counts for observability."""

    total: int
    issued: int
    expiring_soon: int
    expired: int
    pending: int
    failed: int

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "issued": self.issued,
            "expiringSoon": self.expiring_soon,
            "expired": self.expired,
            "pending": self.pending,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class CompletionJob:
    """Durable unit of detached work, resumable after a restart."""

    id: str
    kind: JobKind
    cert_id: str
    status: JobStatus
    attempts: int
    next_run_at: datetime
    lease_until: datetime | None = None
    last_error: str | None = None
