"""Test client address derivation and header and query redaction."""

from sentinel.models.access_models import IpVersion
from sentinel.security.network import (
    REDACTED,
    derive_client_info,
    resolve_client_ip,
    sanitize_headers,
    sanitize_query,
)


class TestResolveClientIp:
    """Test forwarding header handling."""

    def test_first_forwarded_for_element_wins(self):
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1, 10.0.0.2", "X-Real-IP": "198.51.100.1"}
        assert resolve_client_ip(headers, "10.0.0.99") == "203.0.113.7"

    def test_real_ip_used_without_forwarded_for(self):
        assert resolve_client_ip({"x-real-ip": "198.51.100.1"}, "10.0.0.99") == "198.51.100.1"

    def test_peer_address_fallback(self):
        assert resolve_client_ip({}, "10.0.0.99") == "10.0.0.99"

    def test_forwarding_headers_ignored_without_trust_proxy(self):
        headers = {"x-forwarded-for": "203.0.113.7"}
        assert resolve_client_ip(headers, "10.0.0.99", trust_proxy=False) == "10.0.0.99"

    def test_ipv4_mapped_prefix_is_stripped(self):
        assert resolve_client_ip({}, "::ffff:10.0.0.1") == "10.0.0.1"

    def test_unknown_address_is_empty(self):
        assert resolve_client_ip({}, None) == ""


class TestDeriveClientInfo:
    """Test ClientInfo construction."""

    def test_ipv4_client_with_mac(self):
        info = derive_client_info({"x-client-mac": "aa:bb:cc:dd:ee:ff"}, "192.168.1.10")
        assert info.ip == "192.168.1.10"
        assert info.ip_version == IpVersion.IPV4
        assert info.mac == "AA-BB-CC-DD-EE-FF"

    def test_ipv6_client(self):
        info = derive_client_info({}, "2001:db8::1")
        assert info.ip_version == IpVersion.IPV6
        assert info.mac is None

    def test_unparseable_address_has_no_version(self):
        info = derive_client_info({}, "testclient")
        assert info.ip == "testclient"
        assert info.ip_version is None

    def test_malformed_mac_is_dropped(self):
        info = derive_client_info({"x-client-mac": "not-a-mac"}, "10.0.0.1")
        assert info.mac is None

    def test_custom_mac_header(self):
        info = derive_client_info({"X-Device-Mac": "001122334455"}, "10.0.0.1", mac_header="x-device-mac")
        assert info.mac == "00-11-22-33-44-55"


class TestSanitizeHeaders:
    """Test credential redaction in logged headers."""

    def test_sensitive_headers_are_redacted(self):
        headers = {
            "Authorization": "Bearer secret",
            "Cookie": "session=abc",
            "X-API-Key": "ak_secret",
            "X-Auth-Token": "t",
            "X-Access-Token": "t",
            "Accept": "application/json",
        }
        sanitized = sanitize_headers(headers)
        assert sanitized["authorization"] == REDACTED
        assert sanitized["cookie"] == REDACTED
        assert sanitized["x-api-key"] == REDACTED
        assert sanitized["x-auth-token"] == REDACTED
        assert sanitized["x-access-token"] == REDACTED
        assert sanitized["accept"] == "application/json"

    def test_names_are_lower_cased(self):
        assert sanitize_headers({"User-Agent": "pytest"}) == {"user-agent": "pytest"}

    def test_configured_key_header_is_redacted(self):
        sanitized = sanitize_headers({"X-Service-Key": "secret"}, extra_sensitive=("X-Service-Key",))
        assert sanitized["x-service-key"] == REDACTED


class TestSanitizeQuery:
    """Test query parameter redaction."""

    def test_credential_params_are_redacted(self):
        sanitized = sanitize_query({"page": "2", "api_key": "ak_secret", "Token": "abc"})
        assert sanitized == {"page": "2", "api_key": REDACTED, "Token": REDACTED}

    def test_sensitive_header_names_count(self):
        sanitized = sanitize_query({"x-service-key": "ak_secret"}, extra_sensitive=("X-Service-Key",))
        assert sanitized["x-service-key"] == REDACTED
