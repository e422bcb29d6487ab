"""Tests for cert_engine.sandbox."""

import re
from datetime import UTC, datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from cert_engine.acme_client import generate_key_and_csr
from cert_engine.models import ChallengeType
from cert_engine.pem import certificate_expiry, split_chain
from cert_engine.sandbox import SandboxCertificateAuthority

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{20,128}$")


def test_create_order_http01_shapes_like_real_challenge():
    authority = SandboxCertificateAuthority(delay_seconds=0)
    _, csr = generate_key_and_csr("shop.example.com")

    challenge = authority.create_order("shop.example.com", csr, ChallengeType.HTTP01)

    assert _TOKEN_RE.match(challenge.token)
    assert challenge.validation.startswith(challenge.token + ".")
    assert challenge.challenge_type is ChallengeType.HTTP01
    assert challenge.order_url.startswith("https://")


def test_create_order_dns01_returns_digest():
    authority = SandboxCertificateAuthority(delay_seconds=0)
    _, csr = generate_key_and_csr("shop.example.com")

    challenge = authority.create_order("shop.example.com", csr, ChallengeType.DNS01)

    # base64url(SHA-256) without padding
    assert re.match(r"^[A-Za-z0-9_-]{43}$", challenge.validation)


def test_complete_order_waits_then_signs_csr_key():
    sleeps = []
    authority = SandboxCertificateAuthority(delay_seconds=3, sleep=sleeps.append)
    key_pem, csr = generate_key_and_csr("shop.example.com")
    challenge = authority.create_order("shop.example.com", csr, ChallengeType.HTTP01)

    chain = authority.complete_order(challenge.order_url, "shop.example.com", csr, ChallengeType.HTTP01)

    assert sleeps == [3]
    leaf_pem, full_chain = split_chain(chain)
    assert full_chain.count("BEGIN CERTIFICATE") == 2

    leaf = x509.load_pem_x509_certificate(leaf_pem.encode())
    san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert san.get_values_for_type(x509.DNSName) == ["shop.example.com"]

    private_key = serialization.load_pem_private_key(key_pem.encode(), password=None)
    assert leaf.public_key().public_numbers() == private_key.public_key().public_numbers()

    remaining = certificate_expiry(leaf_pem) - datetime.now(UTC)
    assert timedelta(days=89) < remaining <= timedelta(days=90)


def test_verify_dns01_never_fails():
    SandboxCertificateAuthority(delay_seconds=0).verify_dns01("_acme-challenge.shop.example.com", "anything")


def test_revoke_certificate_makes_no_outbound_call():
    sleep_calls = []
    authority = SandboxCertificateAuthority(delay_seconds=5, sleep=sleep_calls.append)

    authority.revoke_certificate("-----BEGIN CERTIFICATE-----\n...\n-----END CERTIFICATE-----\n")

    assert sleep_calls == []
