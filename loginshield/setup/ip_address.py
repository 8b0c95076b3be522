# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Remote address resolution and normalization.

The connection type tells us where the real client address lives:
directly on the socket, or in a header set by a reverse proxy / CDN.
Header values may carry a comma-separated chain; the first hop is the client.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Mapping, Optional

from loginshield.core.errors import InvalidAddress

logger = logging.getLogger("loginshield.setup")

# Direct connection
REMOTE_ADDR = "REMOTE_ADDR"
# Reverse proxy or load balancer, may contain multiple addresses
HTTP_X_FORWARDED_FOR = "HTTP_X_FORWARDED_FOR"
# Presumably real client address, set by some proxies
HTTP_X_REAL_IP = "HTTP_X_REAL_IP"
# CloudFlare CDN
HTTP_CF_CONNECTING_IP = "HTTP_CF_CONNECTING_IP"

CONNECTION_TYPES: dict[str, str] = {
    REMOTE_ADDR: "Direct connection to the Internet",
    HTTP_CF_CONNECTING_IP: "Behind CloudFlare CDN and reverse proxy",
    HTTP_X_FORWARDED_FOR: "Behind a reverse proxy or load balancer",
    HTTP_X_REAL_IP: "Behind a reverse proxy or load balancer",
}

# connection type -> HTTP header name
_HEADER_NAMES = {
    HTTP_X_FORWARDED_FOR: "x-forwarded-for",
    HTTP_X_REAL_IP: "x-real-ip",
    HTTP_CF_CONNECTING_IP: "cf-connecting-ip",
}

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _strip_port(raw: str) -> str:
    """Drop a trailing :port from '1.2.3.4:80' or '[::1]:80'."""
    if raw.startswith("["):
        end = raw.find("]")
        return raw[1:end] if end > 0 else raw
    if raw.count(":") == 1 and "." in raw:
        return raw.split(":", 1)[0]
    return raw


def normalize_address(raw: str) -> str:
    """Return the canonical text form of a single IP address.

    IPv4-mapped IPv6 addresses collapse to plain IPv4 so that one client
    never ends up under two keys.

    Raises:
        InvalidAddress: If ``raw`` is not a single IPv4/IPv6 address.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidAddress(str(raw), "empty")
    candidate = _strip_port(raw.strip())
    try:
        addr = ipaddress.ip_address(candidate)
    except ValueError as exc:
        raise InvalidAddress(raw, str(exc)) from None
    if addr.version == 6 and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped
    return str(addr)


def parse_range(spec: str) -> tuple[int, int, int]:
    """Parse an address, CIDR block or 'start-end' span.

    Returns:
        (ip_version, range_start, range_end) with integer bounds.

    Raises:
        InvalidAddress: On malformed input, mixed families or start > end.
    """
    if not isinstance(spec, str) or not spec.strip():
        raise InvalidAddress(str(spec), "empty")
    text = spec.strip()

    if "/" in text:
        try:
            net = ipaddress.ip_network(text, strict=False)
        except ValueError as exc:
            raise InvalidAddress(spec, str(exc)) from None
        return net.version, int(net.network_address), int(net.broadcast_address)

    if "-" in text:
        left, _, right = text.partition("-")
        start = ipaddress.ip_address(normalize_address(left))
        end = ipaddress.ip_address(normalize_address(right))
        if start.version != end.version:
            raise InvalidAddress(spec, "mixed address families")
        if int(start) > int(end):
            raise InvalidAddress(spec, "range start is after range end")
        return start.version, int(start), int(end)

    addr = ipaddress.ip_address(normalize_address(text))
    return addr.version, int(addr), int(addr)


def format_range(version: int, start: int, end: int) -> str:
    """Render integer bounds back as text (CIDR when the span is a block)."""
    cls = ipaddress.IPv4Address if version == 4 else ipaddress.IPv6Address
    first = cls(start)
    if start == end:
        return str(first)
    last = cls(end)
    blocks = list(ipaddress.summarize_address_range(first, last))
    if len(blocks) == 1:
        return str(blocks[0])
    return f"{first}-{last}"


def parse_networks(entries: Iterable[str]) -> list[IPNetwork]:
    """Parse trusted proxy entries, skipping (and logging) invalid ones."""
    networks: list[IPNetwork] = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Invalid trusted proxy entry: %s", entry)
    return networks


def _first(value: str) -> str:
    return value.split(",")[0].strip()


def resolve_remote_address(
    connection_type: str,
    headers: Mapping[str, str],
    direct_address: str,
    trusted_proxies: Optional[list[IPNetwork]] = None,
) -> str:
    """Pick the client address according to ``connection_type``.

    Unknown connection types fall back to the direct address. When the
    configured header is missing the direct address is used as well; this
    keeps a half-configured site working but lets clients forge headers, so
    ``trusted_proxies`` can restrict header use to known proxy peers.

    Args:
        connection_type: One of CONNECTION_TYPES.
        headers: Request headers; looked up case-insensitively.
        direct_address: Socket peer address.
        trusted_proxies: If given, headers are only honoured when the direct
            peer is inside one of these networks.

    Returns:
        The raw (not yet normalized) address, or "" if none is known.
    """
    if connection_type not in CONNECTION_TYPES:
        logger.warning("Unknown connection type %r, using direct address", connection_type)
        connection_type = REMOTE_ADDR

    direct = _first(direct_address or "")
    if connection_type == REMOTE_ADDR:
        return direct

    if trusted_proxies is not None and not _is_trusted(direct, trusted_proxies):
        return direct

    header = _HEADER_NAMES[connection_type]
    lowered = {k.lower(): v for k, v in headers.items()}
    value = lowered.get(header)
    if value:
        return _first(value)
    return direct


def _is_trusted(address: str, networks: list[IPNetwork]) -> bool:
    try:
        addr = ipaddress.ip_address(normalize_address(address))
    except InvalidAddress:
        return False
    return any(addr in net for net in networks)
