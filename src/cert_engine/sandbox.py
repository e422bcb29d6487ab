"""Sandbox certificate authority: simulates the CA so the full lifecycle runs without outbound calls.

Orders, tokens and key authorizations are shaped like real ones. Completion
waits a short delay, then signs a 90-day leaf for the CSR's public key with a
throwaway "sandbox intermediate", so the issued pair loads in a TLS stack but
is trusted by nobody.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from cert_engine.acme_client import CertificateAuthority
from cert_engine.models import ChallengeType, OrderChallenge

logger = logging.getLogger(__name__)

SANDBOX_VALIDITY = timedelta(days=90)
_ORDER_URL_PREFIX = "https://sandbox.invalid/acme/order/"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Sandbox CA"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


class SandboxCertificateAuthority(CertificateAuthority):
    """In-process stand-in for an ACME directory."""

    def __init__(self, delay_seconds: float = 3.0, sleep: Callable[[float], None] = time.sleep) -> None:
        self._delay_seconds = delay_seconds
        self._sleep = sleep
        # Simulated account thumbprint, stable for the process like a real account key.
        self._thumbprint = _b64url(secrets.token_bytes(32))

    def create_order(self, hostname: str, csr_pem: bytes, challenge_type: ChallengeType) -> OrderChallenge:
        token = _b64url(secrets.token_bytes(32))
        key_authorization = f"{token}.{self._thumbprint}"
        if challenge_type is ChallengeType.DNS01:
            validation = _b64url(hashlib.sha256(key_authorization.encode()).digest())
        else:
            validation = key_authorization
        order_url = f"{_ORDER_URL_PREFIX}{uuid.uuid4().hex}"
        logger.info("[sandbox] Created simulated order %s for %s", order_url, hostname)
        return OrderChallenge(
            order_url=order_url,
            challenge_type=challenge_type,
            token=token,
            validation=validation,
        )

    def verify_dns01(self, txt_name: str, txt_value: str) -> None:
        logger.info("[sandbox] Skipping TXT lookup for %s", txt_name)

    def complete_order(
        self,
        order_url: str,
        hostname: str,
        csr_pem: bytes,
        challenge_type: ChallengeType,
    ) -> str:
        logger.info("[sandbox] Simulating %s validation for %s", challenge_type.acme_name, hostname)
        self._sleep(self._delay_seconds)
        csr = x509.load_pem_x509_csr(csr_pem)
        leaf_pem, intermediate_pem = self._sign(hostname, csr.public_key())
        return leaf_pem + intermediate_pem

    def _sign(self, hostname: str, public_key) -> tuple[str, str]:
        now = datetime.now(UTC)
        ca_key = ec.generate_private_key(ec.SECP256R1())
        ca_name = _name("Sandbox Intermediate (not trusted)")
        ca_cert = (
            x509.CertificateBuilder()
            .subject_name(ca_name)
            .issuer_name(ca_name)
            .public_key(ca_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=5))
            .not_valid_after(now + SANDBOX_VALIDITY + timedelta(days=1))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(ca_key, hashes.SHA256())
        )
        leaf = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)]))
            .issuer_name(ca_name)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + SANDBOX_VALIDITY)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(ca_key, hashes.SHA256())
        )
        encoding = serialization.Encoding.PEM
        return leaf.public_bytes(encoding).decode(), ca_cert.public_bytes(encoding).decode()

    def revoke_certificate(self, certificate_pem: str) -> None:
        logger.info("[sandbox] Skipping revocation; nothing was issued by a real CA")
