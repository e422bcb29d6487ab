"""DNS utility functions."""

from __future__ import annotations

_CHALLENGE_LABEL = "_acme-challenge"


def challenge_record_name(hostname: str) -> str:
    """Return the DNS-01 TXT record name for a hostname (e.g. ``_acme-challenge.example.com``)."""
    return f"{_CHALLENGE_LABEL}.{hostname.rstrip('.').lower()}"


def registered_domain(hostname: str) -> str:
    """Approximate the registered domain (eTLD+1) as the last two labels.

    Note: This is wrong for multi-label public suffixes such as ``co.uk``,
    where every customer collapses onto ``co.uk``. That over-counts and
    therefore only makes rate limiting stricter, never looser. A public
    suffix list lookup would make it exact.

    Args:
        hostname: Fully qualified hostname (e.g. "status.example.com").

    Returns:
        Registered domain (e.g. "example.com").
    """
    labels = [label for label in hostname.rstrip(".").lower().split(".") if label]
    return ".".join(labels[-2:])
