"""Network interface lookup and readiness checks, and raw ICMPv6 sockets for NDP."""

from __future__ import annotations

import enum
import ipaddress
import socket
import struct
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

import psutil

from radplug.ndp import HOP_LIMIT

AnyInterfaceAddress = Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]

ALL_ROUTERS = ipaddress.IPv6Address("ff02::2")
"""The IPv6 link-local all-routers multicast group."""

_ICMPV6_ROUTER_SOLICITATION = 133
_ICMPV6_ROUTER_ADVERTISEMENT = 134

_IPPROTO_ICMPV6 = getattr(socket, "IPPROTO_ICMPV6", 58)
_ICMP6_FILTER = 1
_IPV6_RECVHOPLIMIT = getattr(socket, "IPV6_RECVHOPLIMIT", 51)
_IPV6_HOPLIMIT = getattr(socket, "IPV6_HOPLIMIT", 52)
_IPV6_MULTICAST_HOPS = getattr(socket, "IPV6_MULTICAST_HOPS", 18)
_IPV6_UNICAST_HOPS = getattr(socket, "IPV6_UNICAST_HOPS", 16)
_IPV6_MULTICAST_IF = getattr(socket, "IPV6_MULTICAST_IF", 17)
_IPV6_JOIN_GROUP = getattr(socket, "IPV6_JOIN_GROUP", 20)
_IPV6_LEAVE_GROUP = getattr(socket, "IPV6_LEAVE_GROUP", 21)

_READ_BUFFER = 1 << 16


class InterfaceFlags(enum.IntFlag):
    """Flags describing the state and kind of a network interface."""

    UP = 0x1
    BROADCAST = 0x2
    LOOPBACK = 0x8
    POINT_TO_POINT = 0x10
    MULTICAST = 0x1000


_KNOWN_FLAGS = (
    InterfaceFlags.UP
    | InterfaceFlags.BROADCAST
    | InterfaceFlags.LOOPBACK
    | InterfaceFlags.POINT_TO_POINT
    | InterfaceFlags.MULTICAST
)

_PSUTIL_FLAG_NAMES = {
    "up": InterfaceFlags.UP,
    "broadcast": InterfaceFlags.BROADCAST,
    "loopback": InterfaceFlags.LOOPBACK,
    "pointopoint": InterfaceFlags.POINT_TO_POINT,
    "multicast": InterfaceFlags.MULTICAST,
}


class LinkNotReadyError(Exception):
    """A network interface is not yet ready to be listened on."""


def _prefix_length(ip: ipaddress.IPv4Address | ipaddress.IPv6Address, netmask: str | None) -> int:
    if not netmask:
        return ip.max_prefixlen
    try:
        mask = ipaddress.ip_address(netmask.split("/", 1)[0])
    except ValueError:
        return ip.max_prefixlen
    return bin(int(mask)).count("1")


@dataclass(frozen=True)
class Interface:
    """A network interface of the system."""

    index: int
    name: str
    mtu: int = 0
    hardware_addr: bytes | None = None
    flags: InterfaceFlags = InterfaceFlags(0)

    def addrs(self) -> list[AnyInterfaceAddress]:
        """Return the IPv4 and IPv6 addresses assigned to this interface."""
        result: list[AnyInterfaceAddress] = []
        for a in psutil.net_if_addrs().get(self.name, []):
            if a.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                ip = ipaddress.ip_address(a.address.split("%", 1)[0])
            except ValueError:
                continue
            bits = _prefix_length(ip, a.netmask)
            if ip.version == 4:
                result.append(ipaddress.IPv4Interface((str(ip), bits)))
            else:
                result.append(ipaddress.IPv6Interface((str(ip), bits)))
        return result


def _hardware_addr(name: str) -> bytes | None:
    for a in psutil.net_if_addrs().get(name, []):
        if a.family != psutil.AF_LINK:
            continue
        try:
            raw = bytes.fromhex(a.address.replace(":", "").replace("-", ""))
        except ValueError:
            return None
        return raw if any(raw) else None
    return None


def _interface_flags(name: str, stats: Any) -> InterfaceFlags:
    if sys.platform.startswith("linux"):
        try:
            raw = int(Path("/sys/class/net", name, "flags").read_text().strip(), 16)
        except (OSError, ValueError):
            pass
        else:
            return InterfaceFlags(raw & _KNOWN_FLAGS)

    flags = InterfaceFlags(0)
    if stats is None:
        return flags
    if stats.isup:
        flags |= InterfaceFlags.UP
    for token in getattr(stats, "flags", "").split(","):
        flags |= _PSUTIL_FLAG_NAMES.get(token.strip(), InterfaceFlags(0))
    return flags


def _build_interface(index: int, name: str) -> Interface:
    stats = psutil.net_if_stats().get(name)
    return Interface(
        index=index,
        name=name,
        mtu=stats.mtu if stats is not None else 0,
        hardware_addr=_hardware_addr(name),
        flags=_interface_flags(name, stats),
    )


def interfaces() -> list[Interface]:
    """Return every network interface of the system."""
    return [_build_interface(index, name) for index, name in socket.if_nameindex()]


def lookup_interface(iface: str) -> Interface:
    """Look up an interface by name.

    Raises LinkNotReadyError if it does not exist, since it may appear later.
    """
    try:
        index = socket.if_nametoindex(iface)
    except OSError as err:
        raise LinkNotReadyError(f"interface {iface!r} does not exist: link not ready") from err
    return _build_interface(index, iface)


def check_interface(ifi: Interface, addr_func: Callable[[], Iterable[Any]]) -> None:
    """Verify that an interface is up and has an IPv6 link-local address.

    Raises LinkNotReadyError when either condition does not hold. Errors
    raised by addr_func propagate unchanged.
    """
    if InterfaceFlags.UP not in ifi.flags:
        raise LinkNotReadyError(f"interface {ifi.name!r} is not up: link not ready")

    for a in addr_func():
        ip = a.ip if isinstance(a, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)) else a
        if isinstance(ip, ipaddress.IPv6Address) and ip.is_link_local:
            return

    raise LinkNotReadyError(
        f"interface {ifi.name!r} has no IPv6 link-local address: link not ready"
    )


def _icmp_filter(*accept: int) -> bytes:
    # A set bit blocks the ICMPv6 type; start by blocking everything.
    words = [0xFFFFFFFF] * 8
    for kind in accept:
        words[kind >> 5] &= ~(1 << (kind & 31)) & 0xFFFFFFFF
    return struct.pack("@8I", *words)


def _membership(group: ipaddress.IPv6Address, index: int) -> bytes:
    return group.packed + struct.pack("@I", index)


class NDPConn:
    """A raw ICMPv6 socket bound to one interface, joined to the all-routers group."""

    def __init__(self, sock: socket.socket, index: int) -> None:
        self._sock = sock
        self.index = index

    def read_from(self) -> tuple[bytes, int | None, ipaddress.IPv6Address]:
        """Read one ICMPv6 message; return its bytes, hop limit and source address."""
        data, ancdata, _flags, addr = self._sock.recvmsg(
            _READ_BUFFER, socket.CMSG_SPACE(struct.calcsize("@i"))
        )
        hop_limit = None
        for level, kind, payload in ancdata:
            if level == socket.IPPROTO_IPV6 and kind == _IPV6_HOPLIMIT and len(payload) >= 4:
                hop_limit = struct.unpack_from("@i", payload)[0]
        src = ipaddress.IPv6Address(addr[0].split("%", 1)[0])
        return data, hop_limit, src

    def set_read_timeout(self, timeout: float | None) -> None:
        """Limit how long read_from blocks; None blocks forever."""
        self._sock.settimeout(timeout)

    def write_to(
        self,
        data: bytes,
        dst: ipaddress.IPv6Address,
        hop_limit: int | None = None,
    ) -> None:
        """Send an ICMPv6 message to dst, optionally with an explicit hop limit."""
        ancdata = []
        if hop_limit is not None:
            ancdata.append((socket.IPPROTO_IPV6, _IPV6_HOPLIMIT, struct.pack("@i", hop_limit)))
        self._sock.sendmsg([data], ancdata, 0, (str(dst), 0, 0, self.index))

    def close(self) -> None:
        """Leave the all-routers group and close the socket."""
        if self._sock.fileno() == -1:
            return
        leave_error: OSError | None = None
        try:
            self._sock.setsockopt(
                socket.IPPROTO_IPV6, _IPV6_LEAVE_GROUP, _membership(ALL_ROUTERS, self.index)
            )
        except OSError as err:
            leave_error = err
        self._sock.close()
        if leave_error is not None:
            raise OSError(
                f"failed to leave IPv6 link-local all routers multicast group: {leave_error}"
            ) from leave_error

    def __enter__(self) -> NDPConn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def _apply(sock: socket.socket, level: int, option: int, value: int | bytes, what: str) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as err:
        raise RuntimeError(f"{what}: {err}") from err


def listen_ndp(ifi: Interface) -> tuple[NDPConn, ipaddress.IPv6Address]:
    """Open an NDP socket on the link-local address of ifi, ready to act as a router.

    Returns the connection and the link-local address it is bound to.
    """
    link_local = next(
        (
            a.ip
            for a in ifi.addrs()
            if isinstance(a, ipaddress.IPv6Interface) and a.ip.is_link_local
        ),
        None,
    )
    if link_local is None:
        raise LinkNotReadyError(
            f"interface {ifi.name!r} has no IPv6 link-local address: link not ready"
        )

    sock = socket.socket(socket.AF_INET6, socket.SOCK_RAW, _IPPROTO_ICMPV6)
    try:
        sock.bind((str(link_local), 0, 0, ifi.index))
        sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_MULTICAST_HOPS, HOP_LIMIT)
        sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_UNICAST_HOPS, HOP_LIMIT)
        sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_MULTICAST_IF, ifi.index)

        # Accept solicitations to answer and other routers' advertisements.
        _apply(
            sock,
            _IPPROTO_ICMPV6,
            _ICMP6_FILTER,
            _icmp_filter(_ICMPV6_ROUTER_SOLICITATION, _ICMPV6_ROUTER_ADVERTISEMENT),
            "failed to apply ICMPv6 filter",
        )
        _apply(
            sock,
            socket.IPPROTO_IPV6,
            _IPV6_RECVHOPLIMIT,
            1,
            "failed to apply IPv6 control message flags",
        )
        _apply(
            sock,
            socket.IPPROTO_IPV6,
            _IPV6_JOIN_GROUP,
            _membership(ALL_ROUTERS, ifi.index),
            "failed to join IPv6 link-local all routers multicast group",
        )
    except BaseException:
        sock.close()
        raise

    return NDPConn(sock, ifi.index), link_local