"""Address matching and request network helpers for Sentinel."""

from .address_matcher import (
    AddressMatcher,
    describe_rule,
    ip_version_of,
    is_valid_cidr,
    is_valid_ip,
    match_address,
    match_ip_or_range,
    match_mac,
    normalize_mac,
)
from .network import REDACTED, derive_client_info, resolve_client_ip, sanitize_headers

__all__ = [
    'AddressMatcher',
    'describe_rule',
    'ip_version_of',
    'is_valid_cidr',
    'is_valid_ip',
    'match_address',
    'match_ip_or_range',
    'match_mac',
    'normalize_mac',
    'REDACTED',
    'derive_client_info',
    'resolve_client_ip',
    'sanitize_headers',
]
