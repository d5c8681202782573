"""Request network facts: client address derivation and header redaction.

Framework independent helpers that turn raw header mappings and the peer
address into a ``ClientInfo`` and a log-safe copy of the request headers.

Proxy Handling:
    When ``trust_proxy`` is enabled the first ``X-Forwarded-For`` element is
    used, then ``X-Real-IP``, then the peer address. Without it only the peer
    address counts, so clients cannot spoof their address through headers.

Dependencies:
    - structlog: For debug logging of unparseable addresses

Used by:
    - sentinel.service.dependencies: ClientInfo for access evaluation
    - sentinel.service.middleware: ClientInfo, sanitized headers and query for traffic logs
"""

from collections.abc import Iterable, Mapping
from typing import Optional

import structlog

from ..models.access_models import ClientInfo
from .address_matcher import AddressMatcher

logger = structlog.get_logger()

REDACTED = "[REDACTED]"

# Headers that never reach the audit log in clear text
SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "x-auth-token",
        "x-access-token",
    }
)

_IPV4_MAPPED_PREFIX = "::ffff:"

_matcher = AddressMatcher()


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts and framework mappings."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    return value


def _strip_mapped_prefix(ip: str) -> str:
    if ip.lower().startswith(_IPV4_MAPPED_PREFIX) and "." in ip:
        return ip[len(_IPV4_MAPPED_PREFIX):]
    return ip


def resolve_client_ip(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    trust_proxy: bool = True,
) -> str:
    """Pick the client address from forwarding headers or the peer address.

    Returns an empty string when no address is known.
    """
    candidate: Optional[str] = None
    if trust_proxy:
        forwarded = _header(headers, "x-forwarded-for")
        if forwarded:
            candidate = forwarded.split(",")[0].strip()
        if not candidate:
            real_ip = _header(headers, "x-real-ip")
            if real_ip:
                candidate = real_ip.strip()
    if not candidate and remote_addr:
        candidate = remote_addr.strip()
    if not candidate:
        return ""
    return _strip_mapped_prefix(candidate)


def derive_client_info(
    headers: Mapping[str, str],
    remote_addr: Optional[str],
    trust_proxy: bool = True,
    mac_header: str = "x-client-mac",
) -> ClientInfo:
    """Build the immutable ClientInfo for one request.

    Args:
        headers: Request headers (any mapping, case-insensitive lookup)
        remote_addr: Peer address of the connection, if known
        trust_proxy: Whether forwarding headers are honoured
        mac_header: Header carrying the client MAC address

    Returns:
        ClientInfo with ``ip_version`` None when the address is unparseable
        and ``mac`` None when the header is absent or malformed.
    """
    ip = resolve_client_ip(headers, remote_addr, trust_proxy)
    ip_version = _matcher.ip_version_of(ip)
    if ip and ip_version is None:
        logger.debug("Client address could not be parsed", ip=ip)

    raw_mac = _header(headers, mac_header) if mac_header else None
    mac = _matcher.normalize_mac(raw_mac) or None
    if raw_mac and mac is None:
        logger.debug("Ignoring malformed client MAC header", header=mac_header)

    return ClientInfo(ip=ip, ip_version=ip_version, mac=mac)


def sanitize_headers(
    headers: Mapping[str, str],
    extra_sensitive: Iterable[str] = (),
) -> dict[str, str]:
    """Return a lower-cased copy of ``headers`` with credentials redacted."""
    sensitive = SENSITIVE_HEADERS | {name.lower() for name in extra_sensitive if name}
    sanitized: dict[str, str] = {}
    for key, value in headers.items():
        lowered = key.lower()
        sanitized[lowered] = REDACTED if lowered in sensitive else value
    return sanitized


# Query parameters commonly used to pass credentials in the URL
SENSITIVE_QUERY_PARAMS = frozenset(
    {
        "api_key",
        "apikey",
        "api-key",
        "key",
        "token",
        "access_token",
        "auth",
        "password",
        "secret",
    }
)


def sanitize_query(
    params: Mapping[str, str],
    extra_sensitive: Iterable[str] = (),
) -> dict[str, str]:
    """Return a copy of the query parameters with credential values redacted.

    Header names listed as sensitive also count, so a key accepted in the
    ``x-api-key`` header is redacted when sent as ``?x-api-key=``.
    """
    sensitive = (
        SENSITIVE_QUERY_PARAMS
        | SENSITIVE_HEADERS
        | {name.lower() for name in extra_sensitive if name}
    )
    return {
        key: REDACTED if key.lower() in sensitive else value
        for key, value in params.items()
    }
