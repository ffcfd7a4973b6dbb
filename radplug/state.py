"""Reading and changing the low-level IPv6 parameters of a system."""

from __future__ import annotations

import abc
import sys
from dataclasses import dataclass, field
from pathlib import Path

_LINUX_SYSCTL_ROOT = Path("/proc/sys/net/ipv6/conf")


class State(abc.ABC):
    """Something that can inspect and change per-interface IPv6 settings."""

    @abc.abstractmethod
    def ipv6_autoconf(self, iface: str) -> bool:
        """Report whether IPv6 autoconfiguration is enabled on iface."""

    @abc.abstractmethod
    def ipv6_forwarding(self, iface: str) -> bool:
        """Report whether IPv6 forwarding is enabled on iface."""

    @abc.abstractmethod
    def set_ipv6_autoconf(self, iface: str, enable: bool) -> None:
        """Enable or disable IPv6 autoconfiguration on iface."""


class SystemState(State):
    """A State that manipulates the operating system directly.

    On Linux the settings live in sysctl files below ``root``. On other
    platforms, with no ``root`` given, the operations do nothing.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        if root is None and sys.platform.startswith("linux"):
            root = _LINUX_SYSCTL_ROOT
        self.root = Path(root) if root is not None else None

    def _path(self, iface: str, key: str) -> Path:
        assert self.root is not None
        return self.root / iface / key

    def _read_bool(self, iface: str, key: str) -> bool:
        return self._path(iface, key).read_bytes() == b"1\n"

    def ipv6_autoconf(self, iface: str) -> bool:
        if self.root is None:
            return False
        return self._read_bool(iface, "autoconf")

    def ipv6_forwarding(self, iface: str) -> bool:
        if self.root is None:
            # Assume an interface serving advertisements forwards packets.
            return True
        return self._read_bool(iface, "forwarding")

    def set_ipv6_autoconf(self, iface: str, enable: bool) -> None:
        if self.root is None:
            return
        self._path(iface, "autoconf").write_bytes(b"1" if enable else b"0")


def new_state() -> State:
    """Create a State which manipulates the operating system."""
    return SystemState()


@dataclass(frozen=True)
class TestStateInterface:
    """Simulated State configuration for one network interface."""

    __test__ = False

    autoconf: bool = False
    forwarding: bool = False


@dataclass
class TestState(State):
    """A State with fixed answers, useful in tests.

    Per-interface entries in ``interfaces`` override the global settings.
    If ``error`` is set, every operation raises it.
    """

    __test__ = False

    autoconf: bool = False
    forwarding: bool = False
    error: BaseException | None = None
    interfaces: dict[str, TestStateInterface] = field(default_factory=dict)

    def _check(self) -> None:
        if self.error is not None:
            raise self.error

    def ipv6_autoconf(self, iface: str) -> bool:
        self._check()
        tsi = self.interfaces.get(iface)
        return tsi.autoconf if tsi is not None else self.autoconf

    def ipv6_forwarding(self, iface: str) -> bool:
        self._check()
        tsi = self.interfaces.get(iface)
        return tsi.forwarding if tsi is not None else self.forwarding

    def set_ipv6_autoconf(self, iface: str, enable: bool) -> None:
        self._check()