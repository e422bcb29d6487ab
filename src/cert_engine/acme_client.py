"""ACME protocol operations: account bootstrap, order creation, challenge completion, chain download."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta

import josepy
import requests
from acme import challenges, crypto_util, messages
from acme import errors as acme_errors
from acme.client import ClientNetwork, ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from cert_engine.dns.base import DnsResolver
from cert_engine.errors import ChallengeUnavailableError, ConfigurationError, IssuanceFailure, PropagationError
from cert_engine.keyvault import KeyVault
from cert_engine.models import AcmeAccount, ChallengeType, OrderChallenge
from cert_engine.store import CertificateStore

logger = logging.getLogger(__name__)

_USER_AGENT = "tenant-cert-engine"
_REASON_UNSPECIFIED = 0

_CHALLENGE_CLASSES = {
    ChallengeType.HTTP01: challenges.HTTP01,
    ChallengeType.DNS01: challenges.DNS01,
}

# Failures worth retrying later: the CA is still processing, or it was unreachable.
TRANSIENT_ERRORS = (
    acme_errors.TimeoutError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
)


def _generate_ec_key() -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA P-256 private key."""
    return ec.generate_private_key(ec.SECP256R1())


def _serialize_key(key: ec.EllipticCurvePrivateKey) -> str:
    """Serialize a private key to unencrypted PKCS#8 PEM text."""
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


def _deserialize_key(key_pem: str) -> ec.EllipticCurvePrivateKey:
    key = serialization.load_pem_private_key(key_pem.encode(), password=None)
    if not isinstance(key, ec.EllipticCurvePrivateKey):
        raise ValueError("Stored ACME account key is not an ECDSA key")
    return key


def _build_client(
    directory_url: str,
    account_key: josepy.JWKEC,
    account_uri: str | None = None,
) -> ClientV2:
    """Construct a ClientV2 instance, optionally bound to an existing account."""
    net = ClientNetwork(account_key, alg=josepy.ES256, user_agent=_USER_AGENT)
    directory = ClientV2.get_directory(directory_url, net)
    client = ClientV2(directory, net=net)

    if account_uri:
        net.account = messages.RegistrationResource(uri=account_uri, body=messages.Registration())

    return client


def generate_key_and_csr(hostname: str) -> tuple[str, bytes]:
    """Generate an ECDSA certificate key and a single-name CSR.

    Returns:
        Tuple of (private key PEM text, CSR PEM bytes).
    """
    key_pem = _serialize_key(_generate_ec_key())
    csr_pem = crypto_util.make_csr(key_pem.encode(), [hostname])
    return key_pem, csr_pem


class AcmeAccountManager:
    """Owns the single ACME account: registers it once, then rebuilds clients from the stored key."""

    def __init__(
        self,
        store: CertificateStore,
        vault: KeyVault,
        directory_url: str,
        contact_email: str | None,
    ) -> None:
        self._store = store
        self._vault = vault
        self._directory_url = directory_url
        self._contact_email = contact_email
        self._lock = threading.Lock()

    def get_client(self) -> ClientV2:
        """Return a client bound to the stored account, registering the account on first use.

        Raises:
            ConfigurationError: No account exists yet and no contact email is configured.
        """
        existing = self._store.get_account()
        if existing is not None:
            return self._client_for(existing)

        with self._lock:
            existing = self._store.get_account()
            if existing is not None:
                return self._client_for(existing)
            return self._register()

    def _client_for(self, account: AcmeAccount) -> ClientV2:
        key = _deserialize_key(self._vault.decrypt(account.account_key_pem))
        return _build_client(self._directory_url, josepy.JWKEC(key=key), account_uri=account.account_url)

    def _register(self) -> ClientV2:
        if not self._contact_email:
            raise ConfigurationError("ACME_CONTACT_EMAIL is required for certificate issuance")

        key = _generate_ec_key()
        client = _build_client(self._directory_url, josepy.JWKEC(key=key))
        regr = client.new_account(
            messages.NewRegistration.from_data(email=self._contact_email, terms_of_service_agreed=True)
        )
        logger.info("Registered new ACME account %s", regr.uri)

        stored = self._store.create_account_if_absent(
            AcmeAccount(
                account_key_pem=self._vault.encrypt(_serialize_key(key)),
                account_url=regr.uri,
                email=self._contact_email,
            )
        )
        if stored.account_url != regr.uri:
            # Another instance registered first; its account is the one of record.
            return self._client_for(stored)
        return client


class CertificateAuthority(ABC):
    """The CA-facing half of issuance. Implemented against a real ACME directory or simulated."""

    @abstractmethod
    def create_order(self, hostname: str, csr_pem: bytes, challenge_type: ChallengeType) -> OrderChallenge:
        """Create an order for ``hostname`` and return the requested challenge.

        Raises:
            ChallengeUnavailableError: The CA did not offer ``challenge_type``.
        """

    @abstractmethod
    def verify_dns01(self, txt_name: str, txt_value: str) -> None:
        """Check that the DNS-01 TXT record is visible.

        Raises:
            PropagationError: The record is missing or has a different value.
        """

    @abstractmethod
    def complete_order(
        self,
        order_url: str,
        hostname: str,
        csr_pem: bytes,
        challenge_type: ChallengeType,
    ) -> str:
        """Answer the challenge, wait for validation, finalize and return the full chain PEM.

        Raises:
            IssuanceFailure: The CA rejected the challenge or the order.
        """

    @abstractmethod
    def revoke_certificate(self, certificate_pem: str) -> None:
        """Ask the CA to revoke the leaf certificate.

        Raises:
            IssuanceFailure: The CA refused the revocation.
        """


def _find_challenge(authz: messages.AuthorizationResource, challenge_type: ChallengeType) -> messages.ChallengeBody:
    challenge_cls = _CHALLENGE_CLASSES[challenge_type]
    for challb in authz.body.challenges:
        if isinstance(challb.chall, challenge_cls):
            return challb
    raise ChallengeUnavailableError(challenge_type.acme_name, authz.body.identifier.value)


def _fetch_order(
    client: ClientV2,
    order_url: str,
    csr_pem: bytes,
) -> messages.OrderResource:
    """Reconstruct an OrderResource by fetching the order and its authorizations.

    The ACME server is the source of truth: the order body and each
    authorization are refetched rather than persisted between steps.

    Uses ``client.net.post`` for POST-as-GET (JWS-signed empty payload per RFC 8555).
    """
    order_response = client.net.post(order_url, None)
    order_body = messages.Order.from_json(order_response.json())

    authzrs = []
    for auth_url in order_body.authorizations:
        auth_response = client.net.post(auth_url, None)
        authz_body = messages.Authorization.from_json(auth_response.json())
        authzrs.append(messages.AuthorizationResource(body=authz_body, uri=auth_url))

    return messages.OrderResource(
        body=order_body,
        uri=order_url,
        authorizations=authzrs,
        csr_pem=csr_pem,
    )


class AcmeCertificateAuthority(CertificateAuthority):
    """Talks to the configured ACME directory through the account manager's client."""

    def __init__(
        self,
        accounts: AcmeAccountManager,
        resolver: DnsResolver,
        deadline_seconds: int = 180,
    ) -> None:
        self._accounts = accounts
        self._resolver = resolver
        self._deadline_seconds = deadline_seconds

    def create_order(self, hostname: str, csr_pem: bytes, challenge_type: ChallengeType) -> OrderChallenge:
        client = self._accounts.get_client()
        order = client.new_order(csr_pem)
        logger.info("Created ACME order %s for %s", order.uri, hostname)

        challb = _find_challenge(order.authorizations[0], challenge_type)
        _response, validation = challb.response_and_validation(client.net.key)
        return OrderChallenge(
            order_url=order.uri,
            challenge_type=challenge_type,
            token=challb.chall.encode("token"),
            validation=validation,
        )

    def verify_dns01(self, txt_name: str, txt_value: str) -> None:
        if txt_value not in self._resolver.resolve_txt(txt_name):
            raise PropagationError(txt_name)

    def complete_order(
        self,
        order_url: str,
        hostname: str,
        csr_pem: bytes,
        challenge_type: ChallengeType,
    ) -> str:
        client = self._accounts.get_client()
        order = _fetch_order(client, order_url, csr_pem)

        # Calculate deadline before answering challenges so the full window is available for polling
        deadline = datetime.now(UTC) + timedelta(seconds=self._deadline_seconds)

        for authz in order.authorizations:
            if authz.body.status == messages.STATUS_VALID:
                continue
            challb = _find_challenge(authz, challenge_type)
            if challb.status == messages.STATUS_PENDING:
                response, _validation = challb.response_and_validation(client.net.key)
                client.answer_challenge(challb, response)
                logger.info("Answered %s challenge for %s", challenge_type.acme_name, hostname)

        logger.info("Polling order %s, deadline in %d seconds", order_url, self._deadline_seconds)
        try:
            finalized = client.poll_and_finalize(order, deadline)
        except acme_errors.ValidationError as e:
            details = "; ".join(
                str(challb.error) for authzr in e.failed_authzrs for challb in authzr.body.challenges if challb.error
            )
            raise IssuanceFailure(f"Challenge validation failed for {hostname}: {details or 'no detail'}") from e
        except messages.Error as e:
            raise IssuanceFailure(f"CA rejected order for {hostname}: {e}") from e

        logger.info("Order finalized: %s", order_url)
        return finalized.fullchain_pem

    def revoke_certificate(self, certificate_pem: str) -> None:
        client = self._accounts.get_client()
        certificate = x509.load_pem_x509_certificate(certificate_pem.encode())
        try:
            client.revoke(certificate, _REASON_UNSPECIFIED)
        except messages.Error as e:
            if e.code == "alreadyRevoked":
                logger.info("Certificate %x was already revoked", certificate.serial_number)
                return
            raise IssuanceFailure(f"CA refused to revoke certificate: {e}") from e
        logger.info("Revoked certificate %x", certificate.serial_number)
