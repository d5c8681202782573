"""Address matching for access rules: IP, CIDR, MAC and wildcard patterns.

This module answers one question: does a concrete client address satisfy a
rule pattern? Matching is total over arbitrary string input. Malformed
addresses or patterns never raise, they simply do not match, so a typo in a
rule can only make access stricter.

Pattern Forms:
    - Wildcards: ``any`` and ``*`` match every client
    - Exact IP: ``10.0.0.5`` or ``2001:db8::1`` (compared as parsed addresses)
    - CIDR range: ``192.168.1.0/24`` or ``2001:db8::/32``
    - MAC: ``MAC:AA-BB-CC-DD-EE-FF``; separators and case are normalized and
      ``*`` may replace individual octets (``MAC:AA-BB-CC-*-*-*``) or close
      the pattern (``MAC:AA-BB-*``)
    - Compound: ``AddressMatch(any_of=[...], all_of=[...])``

Family Rules:
    IPv4 addresses only ever match IPv4 patterns and IPv6 addresses only
    IPv6 patterns. IPv4-mapped IPv6 addresses (``::ffff:10.0.0.1``) are
    unwrapped before comparison.

Dependencies:
    - ipaddress: For address and network parsing
    - re: For MAC normalization
    - structlog: For debug logging of rejected patterns

Called by:
    - sentinel.engine.evaluator: allow and deny list evaluation
    - sentinel.security.network: ClientInfo derivation (MAC normalization)

Complexity:
    - Single pattern match: O(1)
    - Compound match: O(p) where p is the number of sub-patterns
"""

import ipaddress
import re
from typing import Optional, Union

import structlog

from ..models.access_models import AddressMatch, AddressRule, ClientInfo, IpVersion

logger = structlog.get_logger()

MAC_PREFIX = "MAC:"
WILDCARDS = frozenset({"any", "*"})

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class AddressMatcher:
    """Pure matching of IP and MAC values against rule patterns.

    The class holds no state besides compiled patterns. A module level
    instance backs the convenience functions below.
    """

    # Anything that is not a hex digit is treated as a separator
    NON_HEX_PATTERN = re.compile(r"[^0-9A-Fa-f]")
    MAC_SEPARATOR_PATTERN = re.compile(r"[-:.\s]")
    OCTET_PATTERN = re.compile(r"^[0-9A-F]{2}$")

    @staticmethod
    def parse_ip(value: Optional[str]) -> Optional[IPAddress]:
        """Parse an address, unwrapping IPv4-mapped IPv6 forms.

        Returns None for anything that is not a single address.
        """
        if not value or not isinstance(value, str):
            return None
        try:
            address = ipaddress.ip_address(value.strip())
        except ValueError:
            return None
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            return address.ipv4_mapped
        return address

    def ip_version_of(self, value: Optional[str]) -> Optional[IpVersion]:
        address = self.parse_ip(value)
        if address is None:
            return None
        return IpVersion.IPV4 if address.version == 4 else IpVersion.IPV6

    def is_valid_ip(self, value: Optional[str]) -> bool:
        return self.parse_ip(value) is not None

    def is_valid_cidr(self, value: Optional[str]) -> bool:
        if not value or "/" not in value:
            return False
        try:
            ipaddress.ip_network(value.strip(), strict=False)
        except ValueError:
            return False
        return True

    def match_ip_or_range(self, ip: Optional[str], pattern: Optional[str]) -> bool:
        """Match an IP address against an exact address, CIDR range or wildcard.

        Args:
            ip: Concrete client address
            pattern: Exact address, CIDR range, or ``any``/``*``

        Returns:
            True on match. Cross-family comparisons and malformed input
            return False.
        """
        if not pattern or not isinstance(pattern, str):
            return False
        pattern = pattern.strip()
        if pattern.lower() in WILDCARDS:
            return True

        address = self.parse_ip(ip)
        if address is None:
            return False

        if "/" in pattern:
            try:
                network = ipaddress.ip_network(pattern, strict=False)
            except ValueError:
                logger.debug("Ignoring malformed CIDR pattern", pattern=pattern)
                return False
            if network.version != address.version:
                return False
            return address in network

        expected = self.parse_ip(pattern)
        if expected is None or expected.version != address.version:
            return False
        return address == expected

    def normalize_mac(self, value: Optional[str]) -> str:
        """Normalize a MAC address to ``AA-BB-CC-DD-EE-FF``.

        Accepts any separator (or none) and an optional ``MAC:`` prefix.
        Returns an empty string when the input does not hold exactly twelve
        hex digits.
        """
        if not value or not isinstance(value, str):
            return ""
        cleaned = value.strip()
        if cleaned.upper().startswith(MAC_PREFIX):
            cleaned = cleaned[len(MAC_PREFIX):]
        digits = self.NON_HEX_PATTERN.sub("", cleaned).upper()
        if len(digits) != 12:
            return ""
        # Every stripped character must have been a separator, not junk
        if len(self.MAC_SEPARATOR_PATTERN.sub("", cleaned)) != 12:
            return ""
        return "-".join(digits[i:i + 2] for i in range(0, 12, 2))

    def match_mac(self, mac: Optional[str], pattern: Optional[str]) -> bool:
        """Match a MAC address against a MAC pattern.

        Both sides are normalized before comparison. Wildcard octets are
        supported in the pattern only; an unnormalizable address never
        matches.
        """
        if not pattern or not isinstance(pattern, str):
            return False
        pattern = pattern.strip()
        if pattern.upper().startswith(MAC_PREFIX):
            pattern = pattern[len(MAC_PREFIX):].strip()
        if pattern.lower() in WILDCARDS:
            return bool(self.normalize_mac(mac))

        normalized = self.normalize_mac(mac)
        if not normalized:
            return False

        if "*" not in pattern:
            expected = self.normalize_mac(pattern)
            return bool(expected) and expected == normalized

        octets = self._wildcard_octets(pattern)
        if octets is None:
            return False
        return all(
            expected == "*" or expected == actual
            for expected, actual in zip(octets, normalized.split("-"))
        )

    def _wildcard_octets(self, pattern: str) -> Optional[list[str]]:
        tokens = [token for token in self.MAC_SEPARATOR_PATTERN.split(pattern.upper()) if token]
        if not tokens or len(tokens) > 6:
            return None
        # A trailing wildcard covers all remaining octets
        if tokens[-1] == "*" and len(tokens) < 6:
            tokens = tokens + ["*"] * (6 - len(tokens))
        if len(tokens) != 6:
            return None
        for token in tokens:
            if token != "*" and not self.OCTET_PATTERN.match(token):
                return None
        return tokens

    def match_pattern(self, client: ClientInfo, pattern: str) -> bool:
        """Match a single string pattern against the client's IP or MAC."""
        if not isinstance(pattern, str):
            return False
        stripped = pattern.strip()
        if stripped.lower() in WILDCARDS:
            return True
        if stripped.upper().startswith(MAC_PREFIX):
            return self.match_mac(client.mac, stripped)
        return self.match_ip_or_range(client.ip, stripped)

    def match_address(self, client: ClientInfo, rule: AddressRule) -> bool:
        """Match a client against a string pattern or an ``AddressMatch``."""
        if isinstance(rule, AddressMatch):
            if any(self.match_pattern(client, item) for item in rule.any_of):
                return True
            if rule.all_of:
                return all(self.match_pattern(client, item) for item in rule.all_of)
            return False
        return self.match_pattern(client, rule)

    def first_match(self, client: ClientInfo, rules: list[AddressRule]) -> Optional[AddressRule]:
        """Return the first rule in ``rules`` matching the client, or None."""
        for rule in rules:
            if self.match_address(client, rule):
                return rule
        return None


_matcher = AddressMatcher()


def match_ip_or_range(ip: Optional[str], pattern: Optional[str]) -> bool:
    return _matcher.match_ip_or_range(ip, pattern)


def normalize_mac(value: Optional[str]) -> str:
    return _matcher.normalize_mac(value)


def match_mac(mac: Optional[str], pattern: Optional[str]) -> bool:
    return _matcher.match_mac(mac, pattern)


def match_address(client: ClientInfo, rule: AddressRule) -> bool:
    return _matcher.match_address(client, rule)


def is_valid_ip(value: Optional[str]) -> bool:
    return _matcher.is_valid_ip(value)


def is_valid_cidr(value: Optional[str]) -> bool:
    return _matcher.is_valid_cidr(value)


def ip_version_of(value: Optional[str]) -> Optional[IpVersion]:
    return _matcher.ip_version_of(value)


def describe_rule(rule: AddressRule) -> str:
    """Render a rule for reasons and log lines."""
    if isinstance(rule, AddressMatch):
        parts = []
        if rule.any_of:
            parts.append("anyOf(" + ", ".join(rule.any_of) + ")")
        if rule.all_of:
            parts.append("allOf(" + ", ".join(rule.all_of) + ")")
        return " ".join(parts) or "AddressMatch()"
    return rule
