"""Tests for cert_engine.dns."""

from unittest.mock import MagicMock, patch

import dns.exception
import dns.resolver
import pytest

from cert_engine.dns.system import SystemDnsResolver
from cert_engine.dns.util import challenge_record_name, registered_domain


def _rdata(text=None, strings=None):
    rdata = MagicMock()
    rdata.to_text.return_value = text
    rdata.strings = strings
    return rdata


class TestChallengeRecordName:
    def test_prefixes_hostname(self):
        assert challenge_record_name("shop.example.com") == "_acme-challenge.shop.example.com"

    def test_normalizes_case_and_trailing_dot(self):
        assert challenge_record_name("Shop.Example.COM.") == "_acme-challenge.shop.example.com"


class TestRegisteredDomain:
    @pytest.mark.parametrize(
        "hostname, expected",
        [
            ("example.com", "example.com"),
            ("status.example.com", "example.com"),
            ("a.b.c.Example.com.", "example.com"),
            ("localhost", "localhost"),
        ],
    )
    def test_last_two_labels(self, hostname, expected):
        assert registered_domain(hostname) == expected

    def test_multi_label_suffix_collapses(self):
        # Naive eTLD+1: distinct customers under co.uk share one bucket.
        assert registered_domain("shop.acme.co.uk") == registered_domain("blog.other.co.uk") == "co.uk"


class TestSystemDnsResolver:
    def test_resolve_addresses_collects_a_and_aaaa(self):
        inner = MagicMock()
        inner.resolve.side_effect = lambda name, rdtype, lifetime: {
            "A": [_rdata("93.184.216.34")],
            "AAAA": [_rdata("2606:2800:220:1::1")],
        }[rdtype]

        addresses = SystemDnsResolver(_resolver=inner).resolve_addresses("example.com")

        assert addresses == ["93.184.216.34", "2606:2800:220:1::1"]

    def test_resolve_addresses_missing_records_is_empty(self):
        inner = MagicMock()
        inner.resolve.side_effect = dns.resolver.NXDOMAIN()

        assert SystemDnsResolver(_resolver=inner).resolve_addresses("nope.example.com") == []

    def test_resolve_addresses_timeout_propagates(self):
        inner = MagicMock()
        inner.resolve.side_effect = dns.exception.Timeout()

        with pytest.raises(dns.exception.Timeout):
            SystemDnsResolver(_resolver=inner).resolve_addresses("slow.example.com")

    def test_resolve_txt_joins_character_strings(self):
        inner = MagicMock()
        inner.resolve.return_value = [_rdata(strings=(b"abc", b"def")), _rdata(strings=(b"xyz",))]

        values = SystemDnsResolver(_resolver=inner).resolve_txt("_acme-challenge.example.com")

        assert values == ["abcdef", "xyz"]
        inner.resolve.assert_called_once_with("_acme-challenge.example.com", "TXT", lifetime=10.0)

    def test_resolve_txt_non_utf8_value_does_not_raise(self):
        inner = MagicMock()
        inner.resolve.return_value = [_rdata(strings=(b"\xff\xfe",)), _rdata(strings=(b"digest",))]

        values = SystemDnsResolver(_resolver=inner).resolve_txt("_acme-challenge.example.com")

        assert values == ["\ufffd\ufffd", "digest"]

    def test_resolve_txt_absent_or_timed_out_is_empty(self):
        inner = MagicMock()
        inner.resolve.side_effect = [dns.resolver.NoAnswer(), dns.exception.Timeout()]
        resolver = SystemDnsResolver(_resolver=inner)

        assert resolver.resolve_txt("_acme-challenge.example.com") == []
        assert resolver.resolve_txt("_acme-challenge.example.com") == []

    def test_explicit_nameservers_are_applied(self):
        inner = MagicMock()
        SystemDnsResolver(nameservers=["1.1.1.1"], _resolver=inner)
        assert inner.nameservers == ["1.1.1.1"]


@patch("cert_engine.dns.SystemDnsResolver")
def test_get_dns_resolver_uses_configured_nameservers(mock_resolver_cls):
    from cert_engine.config import AppConfig
    from cert_engine.dns import get_dns_resolver

    resolver = get_dns_resolver(AppConfig(database_path="/tmp/x.db", dns_nameservers=("9.9.9.9",)))

    assert resolver is mock_resolver_cls.return_value
    mock_resolver_cls.assert_called_once_with(nameservers=["9.9.9.9"])
