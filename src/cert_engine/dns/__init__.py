"""DNS resolver factory."""

from __future__ import annotations

from cert_engine.config import AppConfig
from cert_engine.dns.base import DnsResolver
from cert_engine.dns.system import SystemDnsResolver


def get_dns_resolver(config: AppConfig) -> DnsResolver:
    """Instantiate the DNS resolver, honouring ``DNS_NAMESERVERS`` when configured."""
    return SystemDnsResolver(nameservers=list(config.dns_nameservers) or None)
