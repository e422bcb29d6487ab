"""DNS resolver backed by dnspython."""

from __future__ import annotations

import logging

import dns.exception
import dns.resolver

from cert_engine.dns.base import DnsResolver

logger = logging.getLogger(__name__)

_LOOKUP_LIFETIME = 10.0
_MISSING = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers)


class SystemDnsResolver(DnsResolver):
    """Resolve through the system resolver, or through explicit nameservers when given.

    Explicit public nameservers are useful for DNS-01 checks, which should see
    what the CA will see rather than a local cache.
    """

    def __init__(
        self,
        nameservers: list[str] | None = None,
        lifetime: float = _LOOKUP_LIFETIME,
        _resolver: dns.resolver.Resolver | None = None,
    ) -> None:
        self._resolver = _resolver or dns.resolver.Resolver(configure=not nameservers)
        if nameservers:
            self._resolver.nameservers = list(nameservers)
        self._lifetime = lifetime

    def resolve_addresses(self, hostname: str) -> list[str]:
        addresses: list[str] = []
        for rdtype in ("A", "AAAA"):
            try:
                answer = self._resolver.resolve(hostname, rdtype, lifetime=self._lifetime)
            except _MISSING:
                continue
            addresses.extend(rdata.to_text() for rdata in answer)
        return addresses

    def resolve_txt(self, name: str) -> list[str]:
        try:
            answer = self._resolver.resolve(name, "TXT", lifetime=self._lifetime)
        except _MISSING:
            return []
        except dns.exception.Timeout:
            logger.warning("TXT lookup for %s timed out", name)
            return []
        # Long TXT values arrive split into 255-byte character-strings.
        return [b"".join(rdata.strings).decode(errors="replace") for rdata in answer]
