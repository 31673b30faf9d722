"""Structural classification of literal IP addresses.

Ranges follow the special-purpose registries (RFC 6890 and friends) and are
evaluated on every call. Nothing is cached: a host name may resolve to a
different address on the next lookup, so each resolved address is
reclassified from its own bytes.
"""
import ipaddress
from enum import Enum
from typing import Optional, Tuple, Union

from .errors import InvalidEntryError

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class AddressRange(str, Enum):
    UNICAST = "unicast"
    PRIVATE = "private"
    LOOPBACK = "loopback"
    LINK_LOCAL = "link-local"
    UNSPECIFIED = "unspecified"
    MULTICAST = "multicast"
    RESERVED = "reserved"
    OTHER = "other"


def _networks(*cidrs):
    return tuple(ipaddress.ip_network(cidr) for cidr in cidrs)


# First match wins.
_IPV4_RANGES = (
    (AddressRange.UNSPECIFIED, _networks("0.0.0.0/8")),
    (AddressRange.RESERVED, _networks("255.255.255.255/32")),
    (AddressRange.MULTICAST, _networks("224.0.0.0/4")),
    (AddressRange.LINK_LOCAL, _networks("169.254.0.0/16")),
    (AddressRange.LOOPBACK, _networks("127.0.0.0/8")),
    # 100.64.0.0/10 is carrier-grade NAT space.
    (AddressRange.PRIVATE, _networks("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16", "100.64.0.0/10")),
    (
        AddressRange.RESERVED,
        _networks(
            "192.0.0.0/24",
            "192.0.2.0/24",
            "192.88.99.0/24",
            "198.18.0.0/15",
            "198.51.100.0/24",
            "203.0.113.0/24",
            "240.0.0.0/4",
        ),
    ),
)

_IPV6_RANGES = (
    (AddressRange.UNSPECIFIED, _networks("::/128")),
    (AddressRange.LINK_LOCAL, _networks("fe80::/10")),
    (AddressRange.MULTICAST, _networks("ff00::/8")),
    (AddressRange.LOOPBACK, _networks("::1/128")),
    (AddressRange.PRIVATE, _networks("fc00::/7")),
    # Translation and tunnelling prefixes: NAT64, SIIT, 6to4, Teredo.
    (AddressRange.OTHER, _networks("64:ff9b::/96", "::ffff:0:0:0/96", "2002::/16", "2001::/32")),
    # Documentation, IETF protocol assignments (benchmarking, ORCHID),
    # discard-only, and deprecated IPv4-compatible addresses.
    (AddressRange.RESERVED, _networks("2001:db8::/32", "2001::/23", "100::/64", "::/96")),
)


def parse_ip(address) -> IPAddress:
    """Parse a literal IPv4/IPv6 address; raises ValueError otherwise."""
    text = str(address).strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    return ipaddress.ip_address(text)


def is_ip(address) -> bool:
    if address is None:
        return False
    try:
        parse_ip(address)
    except ValueError:
        return False
    return True


def ip_family(address) -> Optional[int]:
    """Return 4 or 6 for a literal IP, None for anything else."""
    try:
        return parse_ip(address).version
    except ValueError:
        return None


def _unwrap(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is not None:
            return ip.ipv4_mapped
        if ip.scope_id:
            return ipaddress.IPv6Address(ip.packed)
    return ip


def _unwrap_network(network):
    # ::ffff:a.b.c.d/N with N >= 96 is an IPv4 network in mapped form
    if network.version == 6 and network.prefixlen >= 96:
        mapped = network.network_address.ipv4_mapped
        if mapped is not None:
            return ipaddress.IPv4Network(f"{mapped}/{network.prefixlen - 96}", strict=False)
    return network


def classify(address) -> AddressRange:
    """Classify a literal IP address.

    Raises ValueError (the parse error) when ``address`` is not a literal IP;
    callers are expected to check :func:`is_ip` first. IPv4-mapped IPv6
    addresses (``::ffff:a.b.c.d``) are classified by their IPv4 address.
    """
    ip = _unwrap(parse_ip(address))
    table = _IPV4_RANGES if ip.version == 4 else _IPV6_RANGES
    for address_range, networks in table:
        if any(ip in network for network in networks):
            return address_range
    return AddressRange.UNICAST


def match_entry(address, entry) -> Tuple[bool, Optional[InvalidEntryError]]:
    """Test ``address`` against one allow/deny list entry.

    Literal entries match on address equality, CIDR entries on containment.
    A malformed entry never raises: it yields ``(False, InvalidEntryError)``
    so the caller can report it and move on to the next entry.
    """
    ip = _unwrap(parse_ip(address))
    text = str(entry).strip()
    if "/" in text:
        try:
            network = _unwrap_network(ipaddress.ip_network(text, strict=False))
        except ValueError as exc:
            return False, InvalidEntryError(entry, exc)
        if network.version != ip.version:
            return False, None
        return ip in network, None

    try:
        candidate = _unwrap(parse_ip(text))
    except ValueError as exc:
        return False, InvalidEntryError(entry, exc)
    return ip == candidate, None
