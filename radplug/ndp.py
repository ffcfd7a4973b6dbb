"""Neighbor Discovery Protocol option types used to build router advertisements."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import timedelta

UNRESTRICTED = "urn:ietf:params:capport:unrestricted"
"""Captive portal URI indicating that the network is not captive."""

INFINITY = timedelta(seconds=0xFFFFFFFF)
"""Lifetime value that NDP treats as infinite."""

HOP_LIMIT = 255
"""Hop limit that every NDP message must carry."""


class Preference(enum.IntEnum):
    """Router or route preference as carried in NDP messages."""

    MEDIUM = 0
    HIGH = 1
    PROHIBITED = 2
    LOW = 3

    def __str__(self) -> str:
        return self.name.capitalize()


class Direction(enum.IntEnum):
    """Whether a link-layer address option describes the source or target."""

    SOURCE = 1
    TARGET = 2

    def __str__(self) -> str:
        return self.name.capitalize()


class Option:
    """Base class of all NDP options."""


@dataclass
class CaptivePortal(Option):
    """Captive Portal option."""

    uri: str


def new_captive_portal(uri: str) -> CaptivePortal:
    """Create a CaptivePortal option, validating the URI."""
    if not uri:
        raise ValueError("captive portal option requires a non-empty URI")
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in uri):
        raise ValueError(f"invalid captive portal URI: {uri!r}")
    return CaptivePortal(uri=uri)


@dataclass
class DNSSearchList(Option):
    """DNS Search List option."""

    lifetime: timedelta
    domain_names: list[str] = field(default_factory=list)


@dataclass
class LinkLayerAddress(Option):
    """Source or Target Link-Layer Address option."""

    direction: Direction
    addr: bytes


@dataclass
class MTU(Option):
    """MTU option."""

    mtu: int


@dataclass
class PrefixInformation(Option):
    """Prefix Information option."""

    prefix_length: int
    prefix: ipaddress.IPv6Address
    on_link: bool = False
    autonomous_address_configuration: bool = False
    valid_lifetime: timedelta = timedelta(0)
    preferred_lifetime: timedelta = timedelta(0)


@dataclass
class RouteInformation(Option):
    """Route Information option."""

    prefix_length: int
    prefix: ipaddress.IPv6Address
    preference: Preference = Preference.MEDIUM
    route_lifetime: timedelta = timedelta(0)


@dataclass
class RecursiveDNSServer(Option):
    """Recursive DNS Server option."""

    lifetime: timedelta
    servers: list[ipaddress.IPv6Address] = field(default_factory=list)


@dataclass
class RouterAdvertisement:
    """A router advertisement message and its options."""

    current_hop_limit: int = 0
    managed_configuration: bool = False
    other_configuration: bool = False
    mobile_ipv6_home_agent: bool = False
    router_selection_preference: Preference = Preference.MEDIUM
    neighbor_discovery_proxy: bool = False
    router_lifetime: timedelta = timedelta(0)
    reachable_time: timedelta = timedelta(0)
    retransmit_timer: timedelta = timedelta(0)
    options: list[Option] = field(default_factory=list)


def _with_fraction(whole: int, rest: int, width: int) -> str:
    if not rest:
        return str(whole)
    return f"{whole}." + f"{rest:0{width}d}".rstrip("0")


def format_duration(d: timedelta) -> str:
    """Format a duration compactly, rendering the NDP infinity value as 'infinite'."""
    if d == INFINITY:
        return "infinite"

    micros = d // timedelta(microseconds=1)
    sign = "-" if micros < 0 else ""
    micros = abs(micros)

    if micros == 0:
        return "0s"
    if micros < 1000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        whole, rest = divmod(micros, 1000)
        return f"{sign}{_with_fraction(whole, rest, 3)}ms"

    secs, frac = divmod(micros, 1_000_000)
    hours, rem = divmod(secs, 3600)
    minutes, seconds = divmod(rem, 60)
    sec = _with_fraction(seconds, frac, 6)

    if hours:
        return f"{sign}{hours}h{minutes}m{sec}s"
    if minutes:
        return f"{sign}{minutes}m{sec}s"
    return f"{sign}{sec}s"