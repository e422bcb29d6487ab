"""Tests for cert_engine.pem."""

import pytest

from cert_engine.pem import certificate_expiry, split_chain
from conftest import make_chain_pem


def test_split_chain_first_block_is_leaf():
    chain, leaf, _ = make_chain_pem()

    leaf_pem, full_chain = split_chain(chain)

    assert leaf_pem == leaf
    assert full_chain == chain
    assert leaf_pem.count("BEGIN CERTIFICATE") == 1


def test_split_chain_single_certificate():
    _, leaf, _ = make_chain_pem()

    assert split_chain(leaf) == (leaf, leaf)


def test_split_chain_without_certificates_raises():
    with pytest.raises(ValueError, match="No certificates"):
        split_chain("not a certificate")


def test_certificate_expiry_reads_not_after():
    _, leaf, not_after = make_chain_pem(days=42)

    expires_at = certificate_expiry(leaf)

    assert expires_at == not_after
    assert expires_at.tzinfo is not None
