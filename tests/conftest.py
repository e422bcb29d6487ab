"""Shared test fixtures for tenant-cert-engine."""

import base64
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

import cert_engine.keyvault as _kv
from cert_engine.dns.base import DnsResolver

PUBLIC_ADDRESS = "93.184.216.34"
TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode()


def pytest_runtest_setup(item):
    """Reset module-level caches between tests."""
    _kv._credential = None


class FakeResolver(DnsResolver):
    """In-memory DNS: every unknown hostname resolves to a public address."""

    def __init__(self, addresses=None, txt=None):
        self.addresses = addresses or {}
        self.txt = txt or {}
        self.lookups = []

    def resolve_addresses(self, hostname):
        self.lookups.append(hostname)
        return self.addresses.get(hostname, [PUBLIC_ADDRESS])

    def resolve_txt(self, name):
        return self.txt.get(name, [])


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def store(tmp_path):
    from cert_engine.store import CertificateStore

    s = CertificateStore(tmp_path / "certs.db")
    s.initialize()
    return s


@pytest.fixture
def vault():
    from cert_engine.keyvault import LocalKeyVault

    return LocalKeyVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def notifier():
    from cert_engine.webhook import AgentNotifier

    return MagicMock(spec=AgentNotifier)


@pytest.fixture
def sandbox_config(tmp_path):
    from cert_engine.config import AppConfig

    return AppConfig(
        database_path=str(tmp_path / "engine.db"),
        sandbox_mode=True,
        sandbox_delay_seconds=0,
        encryption_key=TEST_ENCRYPTION_KEY,
        internal_api_secret="operator-secret",
    )


@pytest.fixture
def sandbox_engine(sandbox_config, resolver, notifier):
    """Fully wired engine using the sandbox CA and no outbound calls."""
    from cert_engine.engine import build_engine

    engine = build_engine(sandbox_config, resolver=resolver, notifier=notifier)
    yield engine
    engine.worker.shutdown()


def _self_signed(common_name, not_after, key=None):
    key = key or ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def make_chain_pem(hostname="shop.example.com", days=90):
    """Leaf + intermediate PEM text, as a CA returns it. Returns (chain, leaf, leaf_not_after)."""
    not_after = (datetime.now(UTC) + timedelta(days=days)).replace(microsecond=0)
    leaf = _self_signed(hostname, not_after)
    intermediate = _self_signed("Test Intermediate", not_after + timedelta(days=365))
    return leaf + intermediate, leaf, not_after
