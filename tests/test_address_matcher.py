"""Test IP, CIDR and MAC address matching."""

import pytest

from sentinel.models.access_models import AddressMatch, ClientInfo, IpVersion
from sentinel.security.address_matcher import (
    describe_rule,
    ip_version_of,
    is_valid_cidr,
    is_valid_ip,
    match_address,
    match_ip_or_range,
    match_mac,
    normalize_mac,
)


class TestMatchIpOrRange:
    """Test exact, CIDR and wildcard IP matching."""

    def test_exact_match(self):
        assert match_ip_or_range("10.0.0.5", "10.0.0.5") is True
        assert match_ip_or_range("10.0.0.6", "10.0.0.5") is False

    def test_cidr_membership(self):
        """192.168.1.10 is inside 192.168.1.0/24, 192.168.2.10 is not."""
        assert match_ip_or_range("192.168.1.10", "192.168.1.0/24") is True
        assert match_ip_or_range("192.168.2.10", "192.168.1.0/24") is False

    def test_ipv6_cidr(self):
        assert match_ip_or_range("2001:db8::1", "2001:db8::/32") is True
        assert match_ip_or_range("2001:db9::1", "2001:db8::/32") is False

    def test_exact_ipv6_compares_parsed_addresses(self):
        assert match_ip_or_range("2001:db8:0:0:0:0:0:1", "2001:db8::1") is True

    def test_cross_family_never_matches(self):
        assert match_ip_or_range("10.0.0.5", "::/0") is False
        assert match_ip_or_range("2001:db8::1", "0.0.0.0/0") is False
        assert match_ip_or_range("2001:db8::1", "10.0.0.5") is False

    def test_ipv4_mapped_address_is_unwrapped(self):
        assert match_ip_or_range("::ffff:10.0.0.5", "10.0.0.0/24") is True

    @pytest.mark.parametrize("pattern", ["any", "ANY", "*"])
    def test_wildcards_match_everything(self, pattern):
        assert match_ip_or_range("10.0.0.5", pattern) is True
        assert match_ip_or_range("2001:db8::1", pattern) is True

    def test_host_bits_in_cidr_are_tolerated(self):
        assert match_ip_or_range("10.0.0.5", "10.0.0.1/24") is True

    @pytest.mark.parametrize(
        "ip,pattern",
        [
            ("not-an-ip", "10.0.0.0/8"),
            ("10.0.0.5", "10.0.0.0/33"),
            ("10.0.0.5", "banana"),
            ("10.0.0.5", ""),
            ("", "10.0.0.5"),
            (None, "10.0.0.5"),
            ("10.0.0.5", None),
            ("999.1.1.1", "999.1.1.1"),
        ],
    )
    def test_malformed_input_returns_false(self, ip, pattern):
        assert match_ip_or_range(ip, pattern) is False


class TestMacNormalization:
    """Test MAC normalization to AA-BB-CC-DD-EE-FF."""

    @pytest.mark.parametrize(
        "value",
        [
            "aa:bb:cc:dd:ee:ff",
            "AA-BB-CC-DD-EE-FF",
            "aabbccddeeff",
            "aabb.ccdd.eeff",
            "MAC:aa:bb:cc:dd:ee:ff",
        ],
    )
    def test_normalizes_common_forms(self, value):
        assert normalize_mac(value) == "AA-BB-CC-DD-EE-FF"

    @pytest.mark.parametrize(
        "value", ["", None, "aa:bb:cc", "aa:bb:cc:dd:ee:ff:00", "gg:hh:ii:jj:kk:ll", "aa!bb!cc!dd!ee!ff"]
    )
    def test_invalid_mac_returns_empty(self, value):
        assert normalize_mac(value) == ""


class TestMacMatching:
    """Test MAC pattern matching with wildcards."""

    MAC = "AA-BB-CC-DD-EE-FF"

    def test_exact_match_ignores_separators_and_case(self):
        assert match_mac(self.MAC, "MAC:aa:bb:cc:dd:ee:ff") is True
        assert match_mac(self.MAC, "MAC:AA-BB-CC-DD-EE-00") is False

    def test_per_octet_wildcards(self):
        assert match_mac(self.MAC, "MAC:AA-BB-CC-*-*-*") is True
        assert match_mac(self.MAC, "MAC:AA-*-CC-*-EE-*") is True
        assert match_mac(self.MAC, "MAC:AB-*-*-*-*-*") is False

    def test_trailing_wildcard_covers_remaining_octets(self):
        assert match_mac(self.MAC, "MAC:AA-BB-*") is True
        assert match_mac(self.MAC, "MAC:AA-BC-*") is False

    def test_bare_wildcard_needs_valid_mac(self):
        assert match_mac(self.MAC, "MAC:*") is True
        assert match_mac("garbage", "MAC:*") is False

    def test_unnormalizable_mac_never_matches(self):
        assert match_mac("not-a-mac", "MAC:AA-BB-CC-DD-EE-FF") is False
        assert match_mac(None, "MAC:AA-BB-*") is False

    def test_malformed_wildcard_pattern_never_matches(self):
        assert match_mac(self.MAC, "MAC:AA-ZZ-*") is False
        assert match_mac(self.MAC, "MAC:AA-BB-CC-DD-EE-FF-*") is False


class TestMatchAddress:
    """Test dispatch between IP, MAC and compound patterns."""

    def test_string_patterns(self, mac_client):
        assert match_address(mac_client, "192.168.1.0/24") is True
        assert match_address(mac_client, "MAC:AA-BB-CC-*") is True
        assert match_address(mac_client, "any") is True
        assert match_address(mac_client, "10.0.0.0/8") is False

    def test_mac_pattern_without_client_mac(self, ipv4_client):
        assert match_address(ipv4_client, "MAC:AA-BB-CC-*") is False

    def test_any_of(self, ipv4_client):
        rule = AddressMatch(any_of=["192.168.0.0/16", "10.0.0.5"])
        assert match_address(ipv4_client, rule) is True

    def test_all_of_requires_every_pattern(self, mac_client):
        both = AddressMatch(all_of=["192.168.1.0/24", "MAC:AA-BB-CC-DD-EE-FF"])
        wrong_mac = AddressMatch(all_of=["192.168.1.0/24", "MAC:00-11-22-33-44-55"])
        assert match_address(mac_client, both) is True
        assert match_address(mac_client, wrong_mac) is False

    def test_empty_address_match_never_matches(self, ipv4_client):
        assert match_address(ipv4_client, AddressMatch()) is False

    def test_arbitrary_strings_never_raise(self):
        client = ClientInfo(ip="not an ip", mac=None)
        junk = ["", " ", "/", "MAC:", "::::", "1.2.3.4/abc", "MAC:*-*", "\x00", "10.0.0.0/-1", "ÿÿ"]
        for pattern in junk:
            assert match_address(client, pattern) in (True, False)


class TestHelpers:
    """Test validation helpers and rule rendering."""

    def test_is_valid_ip(self):
        assert is_valid_ip("10.0.0.1") is True
        assert is_valid_ip("2001:db8::1") is True
        assert is_valid_ip("10.0.0.0/8") is False
        assert is_valid_ip("nope") is False

    def test_is_valid_cidr(self):
        assert is_valid_cidr("10.0.0.0/8") is True
        assert is_valid_cidr("2001:db8::/32") is True
        assert is_valid_cidr("10.0.0.1") is False
        assert is_valid_cidr("10.0.0.0/40") is False

    def test_ip_version_of(self):
        assert ip_version_of("10.0.0.1") == IpVersion.IPV4
        assert ip_version_of("2001:db8::1") == IpVersion.IPV6
        assert ip_version_of("::ffff:10.0.0.1") == IpVersion.IPV4
        assert ip_version_of("unknown") is None

    def test_describe_rule(self):
        assert describe_rule("10.0.0.5") == "10.0.0.5"
        rendered = describe_rule(AddressMatch(any_of=["10.0.0.1"], all_of=["MAC:AA-*"]))
        assert rendered == "anyOf(10.0.0.1) allOf(MAC:AA-*)"
