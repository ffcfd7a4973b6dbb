"""Plugins which add options to router advertisements."""

from __future__ import annotations

import abc
import ipaddress
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import ClassVar, Union

from radplug.addresser import IP, Route, new_addresser
from radplug.conn import Interface
from radplug.ndp import (
    MTU,
    UNRESTRICTED,
    CaptivePortal,
    Direction,
    DNSSearchList,
    LinkLayerAddress,
    Preference,
    PrefixInformation,
    RecursiveDNSServer,
    RouteInformation,
    RouterAdvertisement,
    format_duration,
    new_captive_portal,
)

AnyAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
AnyNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)
_IPV4_BROADCAST = ipaddress.IPv4Address("255.255.255.255")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _addr_key(addr: AnyAddress) -> tuple[int, int]:
    return addr.version, int(addr)


class Plugin(abc.ABC):
    """A configurable producer of router advertisement options."""

    name: ClassVar[str]

    @abc.abstractmethod
    def __str__(self) -> str:
        """Describe the plugin's configuration."""

    @abc.abstractmethod
    def prepare(self, ifi: Interface) -> None:
        """Prepare the plugin for use with the network interface ifi."""

    @abc.abstractmethod
    def apply(self, ra: RouterAdvertisement) -> None:
        """Add the plugin's options to ra."""


@dataclass
class CaptivePortalPlugin(Plugin):
    """Adds a Captive Portal option."""

    name: ClassVar[str] = "captive-portal"

    portal: CaptivePortal

    def __str__(self) -> str:
        return f"URI: {json.dumps(self.portal.uri, ensure_ascii=False)}"

    def prepare(self, ifi: Interface) -> None:
        pass

    def apply(self, ra: RouterAdvertisement) -> None:
        ra.options.append(self.portal)


def new_captive_portal_plugin(uri: str) -> CaptivePortalPlugin:
    """Create a CaptivePortalPlugin for uri, validating it."""
    return CaptivePortalPlugin(portal=new_captive_portal(uri))


def unrestricted_portal() -> CaptivePortalPlugin:
    """Create a CaptivePortalPlugin which advertises the network as unrestricted."""
    return CaptivePortalPlugin(portal=CaptivePortal(uri=UNRESTRICTED))


@dataclass
class DNSSL(Plugin):
    """Adds a DNS Search List option."""

    name: ClassVar[str] = "dnssl"

    lifetime: timedelta
    domain_names: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"domain names: [{', '.join(self.domain_names)}], "
            f"lifetime: {format_duration(self.lifetime)}"
        )

    def prepare(self, ifi: Interface) -> None:
        pass

    def apply(self, ra: RouterAdvertisement) -> None:
        ra.options.append(
            DNSSearchList(lifetime=self.lifetime, domain_names=list(self.domain_names))
        )


@dataclass
class LLA(Plugin):
    """Adds a Source Link-Layer Address option."""

    name: ClassVar[str] = "lla"

    addr: bytes | None = None

    def __str__(self) -> str:
        s = self.addr.hex(":") if self.addr is not None else "n/a"
        return f"source link-layer address: {s}"

    def prepare(self, ifi: Interface) -> None:
        self.addr = ifi.hardware_addr

    def apply(self, ra: RouterAdvertisement) -> None:
        # Point-to-point links, for example, have no link-layer address.
        if self.addr is None:
            return
        ra.options.append(LinkLayerAddress(direction=Direction.SOURCE, addr=self.addr))


@dataclass
class MTUPlugin(Plugin):
    """Adds an MTU option."""

    name: ClassVar[str] = "mtu"

    mtu: int

    def __str__(self) -> str:
        return f"MTU: {self.mtu}"

    def prepare(self, ifi: Interface) -> None:
        pass

    def apply(self, ra: RouterAdvertisement) -> None:
        ra.options.append(MTU(mtu=self.mtu & 0xFFFFFFFF))


def _remaining(epoch: datetime | None, lifetime: timedelta, now: datetime, what: str) -> timedelta:
    if epoch is None:
        raise ValueError(f"cannot calculate deprecated {what} lifetimes with no epoch")
    end = epoch + lifetime
    if now >= end:
        return timedelta(0)
    return end - now


@dataclass
class Prefix(Plugin):
    """Adds Prefix Information options, for a fixed prefix or for the interface's own."""

    name: ClassVar[str] = "prefix"

    prefix: ipaddress.IPv6Network
    auto: bool = False
    on_link: bool = False
    autonomous: bool = False
    valid_lifetime: timedelta = timedelta(0)
    preferred_lifetime: timedelta = timedelta(0)
    epoch: datetime | None = None
    deprecated: bool = False
    time_now: Callable[[], datetime] = _now
    addrs: Callable[[], list[IP]] | None = None

    def __str__(self) -> str:
        prefix = str(self.prefix)
        if self.auto:
            # Best effort: list the current prefixes if they can be fetched.
            try:
                current = self._current()
            except Exception:
                pass
            else:
                prefix = f"{prefix} [{', '.join(str(p) for p in current)}]"

        flags = []
        if self.deprecated:
            flags.append("DEPRECATED")
        if self.on_link:
            flags.append("on-link")
        if self.autonomous:
            flags.append("autonomous")

        return (
            f"{prefix} [{', '.join(flags)}], "
            f"preferred: {format_duration(self.preferred_lifetime)}, "
            f"valid: {format_duration(self.valid_lifetime)}"
        )

    def prepare(self, ifi: Interface) -> None:
        self.time_now = _now
        addresser = new_addresser()
        index = ifi.index
        self.addrs = lambda: addresser.addresses_by_index(index)

    def apply(self, ra: RouterAdvertisement) -> None:
        prefixes = self._current() if self.auto else [self.prefix]
        self._apply(prefixes, ra)

    def _current(self) -> list[AnyNetwork]:
        if self.addrs is None:
            raise RuntimeError("failed to fetch IP addresses: plugin is not prepared")
        try:
            addrs = self.addrs()
        except Exception as err:
            raise RuntimeError(f"failed to fetch IP addresses: {err}") from err

        prefixes: list[AnyNetwork] = []
        seen: set[AnyNetwork] = set()
        for a in addrs:
            if a.address is None:
                continue
            ip = a.address.ip
            # Only non-link-local IPv6 prefixes with a matching length.
            if (
                ip.version == 4
                or ip.is_link_local
                or a.address.network.prefixlen != self.prefix.prefixlen
            ):
                continue
            # Temporary and tentative addresses are not advertised.
            if a.temporary or a.tentative:
                continue

            pfx = a.address.network
            if pfx in seen:
                continue
            seen.add(pfx)
            prefixes.append(pfx)

        prefixes.sort(key=lambda p: _addr_key(p.network_address))
        return prefixes

    def _apply(self, prefixes: list[AnyNetwork], ra: RouterAdvertisement) -> None:
        valid, preferred = self._lifetimes()
        ra.options.extend(
            PrefixInformation(
                prefix_length=pfx.prefixlen,
                prefix=pfx.network_address,
                on_link=self.on_link,
                autonomous_address_configuration=self.autonomous,
                valid_lifetime=valid,
                preferred_lifetime=preferred,
            )
            for pfx in prefixes
        )

    def _lifetimes(self) -> tuple[timedelta, timedelta]:
        if not self.deprecated:
            return self.valid_lifetime, self.preferred_lifetime
        if self.epoch is None:
            raise ValueError("cannot calculate deprecated Prefix lifetimes with no epoch")
        now = self.time_now()
        return (
            _remaining(self.epoch, self.valid_lifetime, now, "Prefix"),
            _remaining(self.epoch, self.preferred_lifetime, now, "Prefix"),
        )


@dataclass
class RoutePlugin(Plugin):
    """Adds Route Information options, for a fixed route or for loopback routes."""

    name: ClassVar[str] = "route"

    prefix: ipaddress.IPv6Network = field(
        default_factory=lambda: ipaddress.IPv6Network("::/0")
    )
    auto: bool = False
    preference: Preference = Preference.MEDIUM
    lifetime: timedelta = timedelta(0)
    epoch: datetime | None = None
    deprecated: bool = False
    time_now: Callable[[], datetime] = _now
    routes: Callable[[], list[Route]] | None = None

    def __str__(self) -> str:
        prefix = str(self.prefix)
        if self.auto:
            try:
                current = self._current()
            except Exception:
                pass
            else:
                prefix = f"{prefix} [{', '.join(str(r) for r in current)}]"

        deprecated = " [DEPRECATED]" if self.deprecated else ""
        return (
            f"{prefix}{deprecated}, preference: {self.preference}, "
            f"lifetime: {format_duration(self.lifetime)}"
        )

    def prepare(self, ifi: Interface) -> None:
        self.time_now = _now
        self.routes = new_addresser().loopback_routes

    def apply(self, ra: RouterAdvertisement) -> None:
        routes = self._current() if self.auto else [self.prefix]
        lifetime = self._lifetime()
        ra.options.extend(
            RouteInformation(
                prefix_length=rt.prefixlen,
                prefix=rt.network_address,
                preference=self.preference,
                route_lifetime=lifetime,
            )
            for rt in routes
        )

    def _current(self) -> list[AnyNetwork]:
        if self.routes is None:
            raise RuntimeError("failed to fetch routes: plugin is not prepared")
        routes = self.routes()

        prefixes: list[AnyNetwork] = []
        for rt in routes:
            p = rt.prefix
            # Skip IPv4 and single-address routes.
            if p.version == 4 or p.prefixlen == p.max_prefixlen:
                continue
            # Skip routes covered by another, different route.
            covered = any(
                rt2.prefix.version == p.version
                and rt2.prefix != p
                and p.network_address in rt2.prefix
                for rt2 in routes
            )
            if not covered:
                prefixes.append(p)

        prefixes.sort(key=lambda p: _addr_key(p.network_address))
        return prefixes

    def _lifetime(self) -> timedelta:
        if not self.deprecated:
            return self.lifetime
        return _remaining(self.epoch, self.lifetime, self.time_now(), "Route")


@dataclass
class RDNSS(Plugin):
    """Adds a Recursive DNS Servers option, optionally choosing a server automatically."""

    name: ClassVar[str] = "rdnss"

    lifetime: timedelta = timedelta(0)
    servers: list[ipaddress.IPv6Address] = field(default_factory=list)
    auto: bool = False
    addrs: Callable[[], list[IP]] | None = None

    def __str__(self) -> str:
        servers = []
        if self.auto:
            try:
                servers.append(f":: [{self._current()}]")
            except Exception:
                servers.append("::")

        # Unspecified addresses are already shown by the automatic entry.
        servers.extend(str(s) for s in self.servers if not s.is_unspecified)
        return f"servers: [{', '.join(servers)}], lifetime: {format_duration(self.lifetime)}"

    def prepare(self, ifi: Interface) -> None:
        addresser = new_addresser()
        index = ifi.index
        self.addrs = lambda: addresser.addresses_by_index(index)

    def apply(self, ra: RouterAdvertisement) -> None:
        servers = list(self.servers)
        if self.auto:
            servers.insert(0, self._current())
        ra.options.append(RecursiveDNSServer(lifetime=self.lifetime, servers=servers))

    def _current(self) -> AnyAddress:
        if self.addrs is None:
            raise RuntimeError("failed to fetch IP addresses: plugin is not prepared")
        try:
            addrs = self.addrs()
        except Exception as err:
            raise RuntimeError(f"failed to fetch IP addresses: {err}") from err

        best = IP()
        for a in addrs:
            if a.address is None:
                continue
            if a.address.ip.version == 4 or a.deprecated or a.temporary or a.tentative:
                continue
            best = better_rdnss(best, a)

        if best.address is None:
            raise RuntimeError("interface has no usable IPv6 addresses")
        return best.address.ip


def _is_private(ip: AnyAddress) -> bool:
    return any(ip.version == n.version and ip in n for n in _PRIVATE_NETWORKS)


def _is_global_unicast(ip: AnyAddress) -> bool:
    if ip == _IPV4_BROADCAST:
        return False
    return not (ip.is_unspecified or ip.is_loopback or ip.is_multicast or ip.is_link_local)


def _is_link_local_unicast(ip: AnyAddress) -> bool:
    return ip.is_link_local


def better_rdnss(best: IP, current: IP) -> IP:
    """Return whichever of best and current is preferable as an automatic RDNSS server.

    Stability flags win first, then unique local, global unicast and
    link-local addresses in that order; ties go to the lesser address.
    """
    if best.address is None:
        return current
    if current.address is None:
        return best

    ok_c, ok_b = is_stable(current), is_stable(best)
    if ok_c and not ok_b:
        return current
    if ok_b and not ok_c:
        return best

    c_ip, b_ip = current.address.ip, best.address.ip
    for check in (_is_private, _is_global_unicast, _is_link_local_unicast):
        ok_c, ok_b = check(c_ip), check(b_ip)
        if ok_c and not ok_b:
            return current
        if ok_b and not ok_c:
            return best
        if ok_c and ok_b:
            return current if _addr_key(c_ip) < _addr_key(b_ip) else best

    return current if _addr_key(c_ip) < _addr_key(b_ip) else best


def is_stable(ip: IP) -> bool:
    """Report whether the flags or form of ip suggest it is meant for long-term use."""
    return (
        ip.valid_forever
        or ip.manage_temporary_addresses
        or ip.stable_privacy
        or (ip.address is not None and is_eui64(ip.address.ip))
    )


def is_eui64(ip: AnyAddress) -> bool:
    """Report whether ip looks like an EUI-64 format IPv6 address."""
    if ip.version == 4:
        b = b"\0" * 10 + b"\xff\xff" + ip.packed
    else:
        b = ip.packed
    return b[11] == 0xFF and b[12] == 0xFE