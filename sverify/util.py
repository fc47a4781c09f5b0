"""
Utility functions for SVerify.

Provides timestamp conversion, IPv4 validation and client address resolution.
"""

import ipaddress
import time
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Tuple

# Injectable time source; returns Unix seconds
Clock = Callable[[], float]


def now_epoch() -> float:
    """Get current Unix timestamp."""
    return time.time()


def utc_iso(ts_epoch: float) -> str:
    """Convert Unix timestamp to ISO-8601 UTC string with millisecond precision."""
    dt = datetime.fromtimestamp(ts_epoch, tz=timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def parse_iso(s: str) -> float:
    """Parse an ISO-8601 string ('Z' or offset suffix) to a Unix timestamp."""
    if not isinstance(s, str):
        raise ValueError("timestamp must be a string")
    if s.endswith('Z'):
        s = s[:-1] + '+00:00'
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def is_ipv4(value: object) -> bool:
    """Validate that a value is a well-formed dotted-quad IPv4 literal."""
    if not isinstance(value, str):
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def normalize_transport_ip(ip: Optional[str]) -> Optional[str]:
    """Map IPv6 loopback and IPv4-mapped addresses to plain IPv4."""
    if not ip:
        return ip
    if ip in ('::1', '::ffff:127.0.0.1'):
        return '127.0.0.1'
    if ip.startswith('::ffff:'):
        return ip[7:]
    return ip


def resolve_client_ip(
    headers: Mapping[str, str],
    transport_ip: Optional[str]
) -> Tuple[Optional[str], str]:
    """
    Determine the client address observed by the server.

    Prefers the CDN-asserted address over the generic forwarded-for chain,
    then X-Real-IP, then the raw transport address.

    Args:
        headers: Request headers (lowercase keys or a case-insensitive mapping)
        transport_ip: Peer address of the connection, if known

    Returns:
        Tuple of (detected address or None, detection method)
    """
    cf_ip = headers.get('cf-connecting-ip')
    if cf_ip:
        return cf_ip.strip(), 'cloudflare'

    forwarded = headers.get('x-forwarded-for')
    if forwarded:
        first_hop = forwarded.split(',')[0].strip()
        if first_hop:
            return first_hop, 'forwarded'

    real_ip = headers.get('x-real-ip')
    if real_ip:
        return real_ip.strip(), 'real-ip'

    return normalize_transport_ip(transport_ip), 'direct'
