"""Hostname safety guard: refuse to act on hostnames that resolve to internal addresses."""

from __future__ import annotations

import ipaddress
import logging

import dns.exception

from cert_engine.dns.base import DnsResolver
from cert_engine.errors import SsrfError

logger = logging.getLogger(__name__)


def is_internal_address(address: str) -> bool:
    """True for loopback, private (RFC 1918 / ULA), link-local, multicast and unspecified addresses."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback or ip.is_private or ip.is_link_local or ip.is_multicast or ip.is_unspecified


class HostnameGuard:
    """Gate for every outbound validation tied to a user-supplied hostname."""

    def __init__(self, resolver: DnsResolver) -> None:
        self._resolver = resolver

    def assert_not_internal(self, hostname: str) -> None:
        """Raise SsrfError if any A/AAAA record for ``hostname`` is internal.

        Resolution failures are not errors here: the CA performs its own
        lookups and will reject an unresolvable name.
        """
        try:
            addresses = self._resolver.resolve_addresses(hostname)
        except dns.exception.DNSException as e:
            logger.warning("Could not resolve %s before issuance (%s); deferring to the CA", hostname, e)
            return

        for address in addresses:
            if is_internal_address(address):
                raise SsrfError(hostname, address)
