"""
Test Suite: Identity Signal Extractor

Tests:
1. Address normalization (IPv4, IPv6 /64, IPv4-mapped, garbage)
2. Salted fingerprints
3. Proxy header trust
4. Contact and client-signal handling
"""
import pytest

from consensus_engine.services.identity import (
    IdentitySignalExtractor,
    fingerprint_address,
    normalize_address,
    normalize_contact,
)


class TestNormalizeAddress:
    """Canonical address forms."""

    def test_ipv4_unchanged(self):
        assert normalize_address("203.0.113.7") == "203.0.113.7"

    def test_ipv6_collapses_to_64(self):
        assert normalize_address("2001:db8:abcd:12:1:2:3:4") == "2001:db8:abcd:12::/64"

    def test_ipv6_same_prefix_same_key(self):
        """Rotating the interface id inside one /64 does not change identity."""
        a = normalize_address("2001:db8:abcd:12::1")
        b = normalize_address("2001:db8:abcd:12:ffff:ffff:ffff:fffe")
        assert a == b

    def test_ipv4_mapped_ipv6(self):
        assert normalize_address("::ffff:198.51.100.9") == "198.51.100.9"

    @pytest.mark.parametrize("raw", [None, ""])
    def test_missing_address(self, raw):
        assert normalize_address(raw) == "unknown"

    def test_unparseable_address_lowercased(self):
        assert normalize_address(" Some-Host ") == "some-host"


class TestFingerprint:
    """Salted address hashing."""

    def test_deterministic(self):
        assert fingerprint_address("203.0.113.7", "salt") == fingerprint_address("203.0.113.7", "salt")

    def test_salt_changes_fingerprint(self):
        assert fingerprint_address("203.0.113.7", "a") != fingerprint_address("203.0.113.7", "b")

    def test_raw_address_not_in_fingerprint(self):
        fp = fingerprint_address("203.0.113.7", "salt")
        assert "203.0.113.7" not in fp
        assert len(fp) == 64


class TestNormalizeContact:

    def test_trimmed_and_lowercased(self):
        assert normalize_contact("  Jane@Example.COM ") == "jane@example.com"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_is_absent(self, raw):
        assert normalize_contact(raw) is None


class TestIdentitySignalExtractor:
    """End-to-end identity extraction."""

    def test_peer_address_used_by_default(self):
        extractor = IdentitySignalExtractor(salt="s")
        identity = extractor.extract("203.0.113.7", {"x-forwarded-for": "198.51.100.1"})
        assert identity.fingerprint == fingerprint_address("203.0.113.7", "s")

    def test_forwarded_for_honored_behind_trusted_proxy(self):
        extractor = IdentitySignalExtractor(salt="s", trust_proxy_headers=True)
        identity = extractor.extract(
            "10.0.0.2", {"x-forwarded-for": "198.51.100.1, 10.0.0.2"},
        )
        assert identity.fingerprint == fingerprint_address("198.51.100.1", "s")

    def test_empty_forwarded_for_falls_back_to_peer(self):
        extractor = IdentitySignalExtractor(salt="s", trust_proxy_headers=True)
        identity = extractor.extract("10.0.0.2", {"x-forwarded-for": " "})
        assert identity.fingerprint == fingerprint_address("10.0.0.2", "s")

    def test_contact_and_client_signal(self):
        extractor = IdentitySignalExtractor(salt="s")
        identity = extractor.extract(
            "203.0.113.7",
            {"user-agent": "x" * 400},
            contact=" Caller@Example.com ",
        )
        assert identity.contact == "caller@example.com"
        assert len(identity.client_signal) == 255

    def test_missing_user_agent(self):
        extractor = IdentitySignalExtractor(salt="s")
        identity = extractor.extract("203.0.113.7", {})
        assert identity.client_signal is None
        assert identity.contact is None
