"""Portable access to the IP addresses and routes of the system's network interfaces."""

from __future__ import annotations

import abc
import ipaddress
import os
import socket
import struct
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import psutil

from radplug.ndp import Preference

AnyInterface = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]
AnyNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# Address family value used by rtnetlink for IPv6 (Linux AF_INET6).
AF_INET6 = 10
AF_INET = 2

# Netlink message types.
NLMSG_ERROR = 2
NLMSG_DONE = 3
RTM_NEWLINK = 16
RTM_DELLINK = 17
RTM_GETLINK = 18
RTM_NEWADDR = 20
RTM_DELADDR = 21
RTM_GETADDR = 22
RTM_NEWROUTE = 24
RTM_DELROUTE = 25
RTM_GETROUTE = 26

# Netlink header flags.
NLM_F_REQUEST = 0x1
NLM_F_MULTI = 0x2
NLM_F_DUMP = 0x300

# Address flags.
IFA_F_TEMPORARY = 0x01
IFA_F_DEPRECATED = 0x20
IFA_F_TENTATIVE = 0x40
IFA_F_MANAGETEMPADDR = 0x100
IFA_F_STABLE_PRIVACY = 0x800

RT_TABLE_MAIN = 254

_IFA_ADDRESS = 1
_IFA_LOCAL = 2
_IFA_LABEL = 3
_IFA_CACHEINFO = 6
_IFA_FLAGS = 8

_RTA_DST = 1
_RTA_OIF = 4
_RTA_TABLE = 15
_RTA_PREF = 20

_IFF_UP = 0x1
_IFF_LOOPBACK = 0x8

_NETLINK_ROUTE = 0
_SOL_NETLINK = 270
_NETLINK_GET_STRICT_CHK = 12

_VALID_FOREVER = 0xFFFFFFFF

_NLMSG_HDR = struct.Struct("=IHHII")
_RTA_HDR = struct.Struct("=HH")
_IFADDRMSG = struct.Struct("=BBBBI")
_RTMSG = struct.Struct("=BBBBBBBBI")
_IFINFOMSG = struct.Struct("=BxHiII")
_CACHEINFO = struct.Struct("=IIII")


@dataclass(frozen=True)
class IP:
    """An interface IP address, with its mask, and operating system flags.

    The address keeps its host bits, as in 2001:db8::1/64. An IP whose
    address is None is the empty value.
    """

    address: AnyInterface | None = None
    deprecated: bool = False
    manage_temporary_addresses: bool = False
    stable_privacy: bool = False
    temporary: bool = False
    tentative: bool = False
    valid_forever: bool = False


@dataclass(frozen=True)
class Route:
    """A destination route and the interface which holds it."""

    prefix: AnyNetwork
    index: int = 0
    preference: Preference = Preference.MEDIUM


class Addresser(abc.ABC):
    """Fetches IP address and route information from the operating system."""

    @abc.abstractmethod
    def addresses_by_index(self, index: int) -> list[IP]:
        """Return the IPv6 addresses of the interface with this index."""

    @abc.abstractmethod
    def loopback_routes(self) -> list[Route]:
        """Return the IPv6 routes of the loopback interfaces."""


class InvalidMessageError(RuntimeError):
    """An rtnetlink response broke the invariants the kernel guarantees."""


@dataclass
class CacheInfo:
    """Address lifetime information."""

    preferred: int = 0
    valid: int = 0
    created: int = 0
    updated: int = 0


@dataclass
class AddressAttributes:
    """Attributes of an rtnetlink address message."""

    address: bytes | None = None
    local: bytes | None = None
    label: str = ""
    cache_info: CacheInfo = field(default_factory=CacheInfo)
    flags: int = 0


@dataclass
class AddressMessage:
    """An rtnetlink address message."""

    family: int = 0
    prefix_length: int = 0
    flags: int = 0
    scope: int = 0
    index: int = 0
    attributes: AddressAttributes | None = None


@dataclass
class RouteAttributes:
    """Attributes of an rtnetlink route message."""

    dst: bytes | None = None
    out_iface: int = 0
    table: int = 0
    pref: int | None = None


@dataclass
class RouteMessage:
    """An rtnetlink route message."""

    family: int = 0
    dst_length: int = 0
    src_length: int = 0
    tos: int = 0
    table: int = 0
    protocol: int = 0
    scope: int = 0
    type: int = 0
    flags: int = 0
    attributes: RouteAttributes = field(default_factory=RouteAttributes)


@dataclass
class LinkMessage:
    """An rtnetlink link message."""

    family: int = 0
    type: int = 0
    index: int = 0
    flags: int = 0
    change: int = 0


Message = Union[AddressMessage, RouteMessage, LinkMessage]
Execute = Callable[[Message, int, int], "list[Message]"]


def _align(n: int) -> int:
    return (n + 3) & ~3


def _attr(kind: int, payload: bytes) -> bytes:
    length = _RTA_HDR.size + len(payload)
    return _RTA_HDR.pack(length, kind) + payload + b"\0" * (_align(length) - length)


def _iter_attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _RTA_HDR.size <= len(data):
        length, kind = _RTA_HDR.unpack_from(data, offset)
        if length < _RTA_HDR.size or offset + length > len(data):
            break
        yield kind & 0x3FFF, data[offset + _RTA_HDR.size : offset + length]
        offset += _align(length)


def _iter_nlmsgs(data: bytes) -> Iterator[tuple[int, int, bytes]]:
    offset = 0
    while offset + _NLMSG_HDR.size <= len(data):
        length, kind, flags, _seq, _pid = _NLMSG_HDR.unpack_from(data, offset)
        if length < _NLMSG_HDR.size or offset + length > len(data):
            break
        yield kind, flags, data[offset + _NLMSG_HDR.size : offset + length]
        offset += _align(length)


def _encode(message: Message) -> bytes:
    if isinstance(message, AddressMessage):
        body = _IFADDRMSG.pack(
            message.family,
            message.prefix_length,
            message.flags & 0xFF,
            message.scope,
            message.index,
        )
        attrs = message.attributes
        if attrs is not None:
            if attrs.address is not None:
                body += _attr(_IFA_ADDRESS, attrs.address)
            if attrs.local is not None:
                body += _attr(_IFA_LOCAL, attrs.local)
        return body
    if isinstance(message, RouteMessage):
        body = _RTMSG.pack(
            message.family,
            message.dst_length,
            message.src_length,
            message.tos,
            message.table,
            message.protocol,
            message.scope,
            message.type,
            message.flags,
        )
        attrs = message.attributes
        if attrs.dst is not None:
            body += _attr(_RTA_DST, attrs.dst)
        if attrs.out_iface:
            body += _attr(_RTA_OIF, struct.pack("=I", attrs.out_iface))
        if attrs.table:
            body += _attr(_RTA_TABLE, struct.pack("=I", attrs.table))
        if attrs.pref is not None:
            body += _attr(_RTA_PREF, bytes([attrs.pref]))
        return body
    if isinstance(message, LinkMessage):
        return _IFINFOMSG.pack(
            message.family, message.type, message.index, message.flags, message.change
        )
    raise TypeError(f"cannot encode message of type {type(message).__name__}")


def _decode(kind: int, payload: bytes) -> Message:
    if kind in (RTM_NEWADDR, RTM_DELADDR):
        family, plen, flags, scope, index = _IFADDRMSG.unpack_from(payload)
        attrs = AddressAttributes(flags=flags)
        for akind, data in _iter_attrs(payload[_IFADDRMSG.size :]):
            if akind == _IFA_ADDRESS:
                attrs.address = data
            elif akind == _IFA_LOCAL:
                attrs.local = data
            elif akind == _IFA_LABEL:
                attrs.label = data.split(b"\0", 1)[0].decode(errors="replace")
            elif akind == _IFA_CACHEINFO and len(data) >= _CACHEINFO.size:
                attrs.cache_info = CacheInfo(*_CACHEINFO.unpack_from(data))
            elif akind == _IFA_FLAGS and len(data) >= 4:
                attrs.flags = struct.unpack_from("=I", data)[0]
        return AddressMessage(
            family=family,
            prefix_length=plen,
            flags=flags,
            scope=scope,
            index=index,
            attributes=attrs,
        )
    if kind in (RTM_NEWROUTE, RTM_DELROUTE):
        fields = _RTMSG.unpack_from(payload)
        rattrs = RouteAttributes()
        for akind, data in _iter_attrs(payload[_RTMSG.size :]):
            if akind == _RTA_DST:
                rattrs.dst = data
            elif akind == _RTA_OIF and len(data) >= 4:
                rattrs.out_iface = struct.unpack_from("=I", data)[0]
            elif akind == _RTA_TABLE and len(data) >= 4:
                rattrs.table = struct.unpack_from("=I", data)[0]
            elif akind == _RTA_PREF and data:
                rattrs.pref = data[0]
        return RouteMessage(*fields, attributes=rattrs)
    if kind in (RTM_NEWLINK, RTM_DELLINK):
        family, ltype, index, flags, change = _IFINFOMSG.unpack_from(payload)
        return LinkMessage(family=family, type=ltype, index=index, flags=flags, change=change)
    raise InvalidMessageError(f"unsupported rtnetlink message type: {kind}")


def rtnl_execute(message: Message, msg_type: int, flags: int) -> list[Message]:
    """Send one rtnetlink request over a netlink socket and gather the replies.

    Strict checking is always enabled so the kernel filters dumps for us.
    """
    with socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, _NETLINK_ROUTE) as sock:
        sock.setsockopt(_SOL_NETLINK, _NETLINK_GET_STRICT_CHK, 1)
        sock.bind((0, 0))
        body = _encode(message)
        seq = 1
        sock.send(_NLMSG_HDR.pack(_NLMSG_HDR.size + len(body), msg_type, flags, seq, 0) + body)

        messages: list[Message] = []
        while True:
            data = sock.recv(1 << 16)
            if not data:
                return messages
            for kind, mflags, payload in _iter_nlmsgs(data):
                if kind == NLMSG_DONE:
                    return messages
                if kind == NLMSG_ERROR:
                    errno = struct.unpack_from("=i", payload)[0]
                    if errno:
                        raise OSError(-errno, os.strerror(-errno))
                    return messages
                messages.append(_decode(kind, payload))
                if not mflags & NLM_F_MULTI:
                    return messages


def _linux_loopback_indices() -> list[int]:
    indices = []
    for index, name in socket.if_nameindex():
        try:
            flags = int(Path("/sys/class/net", name, "flags").read_text().strip(), 16)
        except FileNotFoundError:
            # The interface vanished while we were looking at it.
            continue
        if flags & _IFF_LOOPBACK and flags & _IFF_UP:
            indices.append(index)
    return indices


def _ipv6_from(raw: bytes | None, what: str) -> ipaddress.IPv6Address:
    if raw is None or len(raw) != 16:
        raise InvalidMessageError(f"invalid IPv6 {what} from rtnetlink: {raw!r}")
    ip = ipaddress.IPv6Address(raw)
    if ip.ipv4_mapped is not None:
        raise InvalidMessageError(f"invalid IPv6 {what} from rtnetlink: {raw!r}")
    return ip


class NetlinkAddresser(Addresser):
    """An Addresser which queries the kernel over rtnetlink.

    ``execute`` performs one request and ``loopback_indices`` lists the
    indices of loopback interfaces which are up; both may be replaced.
    """

    def __init__(
        self,
        execute: Execute | None = None,
        loopback_indices: Callable[[], list[int]] | None = None,
    ) -> None:
        self.execute = execute if execute is not None else rtnl_execute
        self.loopback_indices = (
            loopback_indices if loopback_indices is not None else _linux_loopback_indices
        )

    def addresses_by_index(self, index: int) -> list[IP]:
        msgs = self.execute(
            AddressMessage(family=AF_INET6, index=index),
            RTM_GETADDR,
            NLM_F_REQUEST | NLM_F_DUMP,
        )

        addrs = []
        for m in msgs:
            if (
                not isinstance(m, AddressMessage)
                or m.family != AF_INET6
                or m.attributes is None
            ):
                raise InvalidMessageError(f"invalid rtnetlink message type: {m!r}")
            ip = _ipv6_from(m.attributes.address, "address")

            f = m.attributes.flags
            addrs.append(
                IP(
                    address=ipaddress.IPv6Interface((ip.packed, m.prefix_length)),
                    deprecated=bool(f & IFA_F_DEPRECATED),
                    manage_temporary_addresses=bool(f & IFA_F_MANAGETEMPADDR),
                    stable_privacy=bool(f & IFA_F_STABLE_PRIVACY),
                    temporary=bool(f & IFA_F_TEMPORARY),
                    tentative=bool(f & IFA_F_TENTATIVE),
                    valid_forever=m.attributes.cache_info.valid == _VALID_FOREVER,
                )
            )
        return addrs

    def loopback_routes(self) -> list[Route]:
        routes: list[Route] = []
        for index in self.loopback_indices():
            routes.extend(self._routes_by_index(index))
        return routes

    def _routes_by_index(self, index: int) -> list[Route]:
        msgs = self.execute(
            RouteMessage(
                family=AF_INET6,
                # The table goes in the attributes to enable strict filtering.
                attributes=RouteAttributes(out_iface=index, table=RT_TABLE_MAIN),
            ),
            RTM_GETROUTE,
            NLM_F_REQUEST | NLM_F_DUMP,
        )

        routes = []
        for m in msgs:
            if not isinstance(m, RouteMessage) or m.family != AF_INET6:
                raise InvalidMessageError(f"invalid rtnetlink message type: {m!r}")
            ip = _ipv6_from(m.attributes.dst, "route")

            pref = Preference.MEDIUM
            if m.attributes.pref is not None:
                pref = Preference(m.attributes.pref)

            routes.append(
                Route(
                    prefix=ipaddress.IPv6Network((ip.packed, m.dst_length), strict=False),
                    index=m.attributes.out_iface,
                    preference=pref,
                )
            )
        return routes


def _mask_bits(netmask: str | None) -> int:
    """Return the prefix length of a canonical netmask, or 0 otherwise."""
    if not netmask:
        return 0
    try:
        value = int(ipaddress.IPv6Address(netmask.split("/", 1)[0]))
    except ValueError:
        return 0
    ones = bin(value).count("1")
    full = (1 << 128) - 1
    if value != full ^ ((1 << (128 - ones)) - 1):
        return 0
    return ones


class NetAddresser(Addresser):
    """A generic Addresser which cannot see address flags or routes."""

    def addresses_by_index(self, index: int) -> list[IP]:
        name = socket.if_indextoname(index)
        ips = []
        for a in psutil.net_if_addrs().get(name, []):
            if a.family != socket.AF_INET6:
                continue
            try:
                ip = ipaddress.IPv6Address(a.address.split("%", 1)[0])
            except ValueError:
                continue
            if ip.ipv4_mapped is not None:
                continue
            bits = _mask_bits(a.netmask)
            ips.append(IP(address=ipaddress.IPv6Interface((ip.packed, bits))))
        return ips

    def loopback_routes(self) -> list[Route]:
        # No portable way to fetch routes.
        return []


def new_net_addresser() -> Addresser:
    """Create an Addresser built only on portable interface queries."""
    return NetAddresser()


def new_addresser() -> Addresser:
    """Create the best Addresser available on this operating system."""
    if sys.platform.startswith("linux"):
        return NetlinkAddresser()
    return new_net_addresser()