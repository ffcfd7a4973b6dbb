"""Create NDP connections which are re-established on recoverable errors."""

from __future__ import annotations

import enum
import ipaddress
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from radplug.conn import (
    Interface,
    LinkNotReadyError,
    NDPConn,
    check_interface,
    listen_ndp,
    lookup_interface,
)
from radplug.ndp import format_duration
from radplug.state import State

_ATTEMPTS = 50
_STEP = 0.25
_MAX_DELAY = 3.0


class DialerMode(enum.IntEnum):
    """What a Dialer's connections are used for."""

    ADVERTISE = 1
    MONITOR = 2


class LinkChangeError(Exception):
    """The link state of an interface changed and its connection must be redone."""


class _Cancelled(Exception):
    pass


@dataclass
class DialContext:
    """The connection and interface handed to a Dialer.dial callback."""

    conn: Any
    interface: Interface | None
    ip: ipaddress.IPv6Address | None
    _done: Callable[[], None] | None = field(default=None, repr=False)

    def close(self) -> None:
        """Release the connection and undo any interface changes."""
        done, self._done = self._done, None
        if done is not None:
            done()


class Dialer:
    """Creates connections on one interface and recreates them after recoverable errors."""

    def __init__(
        self,
        iface: str,
        state: State | None,
        mode: DialerMode,
        logger: logging.Logger | None = None,
    ) -> None:
        try:
            self.mode = DialerMode(mode)
        except ValueError:
            raise ValueError(f"invalid DialerMode: {mode}") from None
        self.iface = iface
        self.state = state
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.dial_func: Callable[[], DialContext] = self._dial

    def dial(
        self,
        fn: Callable[[threading.Event, DialContext], Any],
        stop: threading.Event | None = None,
    ) -> None:
        """Open a connection and call fn(stop, dctx) with it.

        If fn raises a recoverable error, the connection is redone and fn is
        called again. Returns once fn returns, or quietly once stop is set
        while waiting to retry.
        """
        if stop is None:
            stop = threading.Event()

        err: BaseException | None = None
        while True:
            try:
                dctx = self._init(stop, err)
            except _Cancelled:
                return

            err = None
            try:
                fn(stop, dctx)
            except Exception as e:
                err = e

            try:
                dctx.close()
            except Exception as e:
                raise RuntimeError(f"failed to clean up connection: {e}") from e

            if err is None:
                return

    def _init(self, stop: threading.Event, err: BaseException | None) -> DialContext:
        if err is None:
            try:
                return self.dial_func()
            except Exception as e:
                err = e

        if isinstance(err, PermissionError):
            # Permission denied will never succeed, give up right away.
            raise err
        if isinstance(err, OSError) and not isinstance(err, TimeoutError):
            self._log("error listening, reinitializing: %s", err)
        elif isinstance(err, LinkNotReadyError):
            self._log("interface not ready, reinitializing")
        elif isinstance(err, LinkChangeError):
            self._log("interface state changed, reinitializing")
        else:
            raise err

        delay = 0.0
        for attempt in range(_ATTEMPTS):
            if stop.wait(delay):
                raise _Cancelled
            delay = min((attempt + 1) * _STEP, _MAX_DELAY)

            try:
                return self.dial_func()
            except Exception as retry_err:
                self._log(
                    "retrying initialization in %s, %d attempt(s) remaining: %s",
                    format_duration(timedelta(seconds=delay)),
                    _ATTEMPTS - (attempt + 1),
                    retry_err,
                )

        raise TimeoutError(f"timed out trying to initialize after error: {err}") from err

    def _dial(self) -> DialContext:
        ifi = lookup_interface(self.iface)
        check_interface(ifi, ifi.addrs)
        conn, ip = listen_ndp(ifi)

        # Advertising temporarily disables IPv6 autoconfiguration on the link.
        restore: Callable[[], None] | None = None
        if self.mode is DialerMode.ADVERTISE:
            try:
                restore = self.set_autoconf()
            except BaseException:
                conn.close()
                raise

        def done() -> None:
            self._close_conn(conn)
            if restore is not None:
                restore()

        return DialContext(conn=conn, interface=ifi, ip=ip, _done=done)

    def _close_conn(self, conn: NDPConn) -> None:
        try:
            conn.close()
        except OSError as err:
            self._log("failed to stop NDP listener: %s", err)

    def set_autoconf(self) -> Callable[[], None]:
        """Disable IPv6 autoconfiguration on the interface.

        Returns a function which restores the previous setting.
        """
        if self.state is None:
            raise RuntimeError(f"no State to configure IPv6 autoconfiguration on {self.iface!r}")
        state = self.state

        try:
            prev = state.ipv6_autoconf(self.iface)
        except Exception as err:
            raise RuntimeError(
                f"failed to get IPv6 autoconfiguration state on {self.iface!r}: {err}"
            ) from err

        try:
            state.set_ipv6_autoconf(self.iface, False)
        except PermissionError:
            self._log(
                "permission denied while disabling IPv6 autoconfiguration, "
                "continuing anyway (try setting CAP_NET_ADMIN)"
            )
        except Exception as err:
            raise RuntimeError(
                f"failed to disable IPv6 autoconfiguration on {self.iface!r}: {err}"
            ) from err

        def restore() -> None:
            try:
                state.set_ipv6_autoconf(self.iface, prev)
            except PermissionError:
                self._log(
                    "permission denied while restoring IPv6 autoconfiguration state, "
                    "continuing anyway (try setting CAP_NET_ADMIN)"
                )
            except FileNotFoundError:
                # The interface may have been removed by reconfiguration.
                self._log(
                    "tried to restore IPv6 autoconfiguration state, but interface "
                    "no longer exists, continuing anyway"
                )
            except Exception as err:
                raise RuntimeError(
                    f"failed to restore IPv6 autoconfiguration on {self.iface!r}: {err}"
                ) from err

        return restore

    def _log(self, fmt: str, *args: Any) -> None:
        self.logger.info("%s: " + fmt, self.iface, *args)