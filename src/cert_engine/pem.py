"""Helpers for PEM certificate chains returned by the CA."""

from __future__ import annotations

import re
from datetime import datetime

from cryptography import x509

_CERT_BOUNDARY = re.compile(r"(?=-----BEGIN CERTIFICATE-----)")


def split_chain(full_chain_pem: str) -> tuple[str, str]:
    """Split a downloaded chain into ``(leaf_pem, full_chain_pem)``.

    The CA returns the end-entity certificate first, followed by any
    intermediates. The full chain is returned unchanged.
    """
    blocks = [block for block in _CERT_BOUNDARY.split(full_chain_pem) if block.strip()]
    if not blocks:
        raise ValueError("No certificates found in chain PEM data")
    return blocks[0], full_chain_pem


def certificate_expiry(certificate_pem: str) -> datetime:
    """Return the leaf certificate's notAfter as an aware UTC datetime."""
    cert = x509.load_pem_x509_certificate(certificate_pem.encode())
    return cert.not_valid_after_utc
