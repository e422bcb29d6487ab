"""Exceptions raised by the certificate lifecycle engine."""

from __future__ import annotations


class CertEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(CertEngineError, ValueError):
    """Required configuration is missing or malformed."""


class SsrfError(CertEngineError):
    """Hostname resolves to a loopback, private, link-local or multicast address."""

    def __init__(self, hostname: str, address: str):
        self.hostname = hostname
        self.address = address
        super().__init__(f"{hostname} resolves to internal address {address}; cannot issue certificate")


class RateLimitError(CertEngineError):
    """Weekly issuance ceiling reached for a registered domain."""

    def __init__(self, registered_domain: str, count: int, limit: int):
        self.registered_domain = registered_domain
        self.count = count
        self.limit = limit
        super().__init__(
            f"Too many certificate issuances for {registered_domain} this week ({count}/{limit})"
        )


class ChallengeUnavailableError(CertEngineError, ValueError):
    """The CA did not offer the requested challenge type."""

    def __init__(self, challenge_type: str, hostname: str):
        self.challenge_type = challenge_type
        self.hostname = hostname
        hint = " Try DNS-01 instead." if challenge_type == "http-01" else ""
        super().__init__(f"No {challenge_type.upper()} challenge offered for {hostname}.{hint}")


class StateMismatchError(CertEngineError):
    """Operation requires the certificate to be in a different state."""

    def __init__(self, cert_id: str, current: str, expected: str):
        self.cert_id = cert_id
        self.current = current
        self.expected = expected
        super().__init__(f"Certificate {cert_id} is in state {current}, expected {expected}")


class PropagationError(CertEngineError):
    """DNS-01 TXT record not found or not yet visible. Retry phase 2 later."""

    retryable = True

    def __init__(self, txt_name: str):
        self.txt_name = txt_name
        super().__init__(
            f"TXT record {txt_name} not found or not propagated yet; wait a few minutes and try again."
        )


class IssuanceFailure(CertEngineError):
    """The CA rejected or failed the order after initiation."""


class CertificateNotFoundError(CertEngineError, LookupError):
    """No certificate record with the given id."""


class DomainNotFoundError(CertEngineError, LookupError):
    """No domain record with the given id or hostname."""


class IssuanceConflictError(CertEngineError):
    """The domain already has an active or in-progress certificate."""


class DomainNotVerifiedError(CertEngineError):
    """Ownership of the domain has not been verified yet."""
