"""Abstract base class for DNS resolvers."""

from __future__ import annotations

from abc import ABC, abstractmethod


class DnsResolver(ABC):
    """Interface for the DNS lookups the engine performs before and during validation."""

    @abstractmethod
    def resolve_addresses(self, hostname: str) -> list[str]:
        """Return every A and AAAA address for ``hostname``.

        Returns an empty list when the name does not exist or has no address
        records.
        """

    @abstractmethod
    def resolve_txt(self, name: str) -> list[str]:
        """Return the TXT strings published at ``name`` (empty when absent)."""
