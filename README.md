# radplug

Building blocks for an IPv6 router advertisement daemon.

- `radplug.ndp`: in-memory NDP option types (`PrefixInformation`,
  `RouteInformation`, `RecursiveDNSServer`, `DNSSearchList`, `MTU`,
  `LinkLayerAddress`, `CaptivePortal`), the `RouterAdvertisement` that holds
  them, the `Preference` and `Direction` enums, and `format_duration`. That
  function renders a `timedelta` compactly, such as `15m0s` or `30s`, and
  renders `INFINITY` as `infinite`.
- `radplug.plugin`: configurable plugins that add options to a
  `RouterAdvertisement`: `Prefix`, `RoutePlugin`, `RDNSS`, `DNSSL`, `MTUPlugin`,
  `LLA` and `CaptivePortalPlugin`. You can also create a captive portal plugin
  with `new_captive_portal_plugin(uri)` or `unrestricted_portal()`.
- `radplug.addresser`: reads IPv6 addresses and loopback routes from the
  operating system. `new_addresser()` returns a `NetlinkAddresser` on Linux,
  which reads addresses with their flags over rtnetlink. On other systems it
  returns a `NetAddresser`, which uses psutil, reports no address flags and
  returns no routes.
- `radplug.conn`: interface lookup (`interfaces`, `lookup_interface`) and
  readiness checks (`check_interface`). It also provides `listen_ndp`, which
  opens a raw ICMPv6 socket (`NDPConn`) on the interface's link-local address
  and joins the all-routers group.
- `radplug.dialer`: a `Dialer` that opens NDP connections and reopens them,
  with backoff, after errors that can be recovered from.
- `radplug.state`: reads and changes per-interface IPv6 autoconfiguration and
  forwarding settings.

## Installation

```
pip install radplug
```

## Example

```python
from datetime import timedelta
from ipaddress import IPv6Network

from radplug.ndp import RouterAdvertisement
from radplug.plugin import DNSSL, MTUPlugin, Prefix

ra = RouterAdvertisement()
plugins = [
    Prefix(
        prefix=IPv6Network("2001:db8::/64"),
        on_link=True,
        autonomous=True,
        preferred_lifetime=timedelta(minutes=15),
        valid_lifetime=timedelta(hours=1),
    ),
    DNSSL(lifetime=timedelta(seconds=30), domain_names=["example.com"]),
    MTUPlugin(1500),
]
for plugin in plugins:
    plugin.apply(ra)
    print(plugin.name, "-", plugin)
```

This prints:

```
prefix - 2001:db8::/64 [on-link, autonomous], preferred: 15m0s, valid: 1h0m0s
dnssl - domain names: [example.com], lifetime: 30s
mtu - MTU: 1500
```

## Wildcards and interfaces

`Prefix(auto=True)`, `RoutePlugin(auto=True)` and `RDNSS(auto=True)` work out
their values from the system:

- `Prefix` advertises each distinct prefix of the interface's non-link-local
  IPv6 addresses whose length matches `prefix`. It skips temporary and
  tentative addresses.
- `RoutePlugin` advertises the IPv6 routes of the loopback interfaces. It
  skips single-address routes and routes that another route covers.
- `RDNSS` puts the interface's best address first in its server list. It
  prefers addresses with stability flags, then unique local, then global,
  then link-local addresses. Ties go to the lower address.

Call `prepare(ifi)` with an `Interface`, for example from
`radplug.conn.lookup_interface("eth0")`, to connect these plugins to the
system's tables. In tests you can set the `addrs` or `routes` callables
directly instead. `LLA.prepare` takes the interface's hardware address.

A `Prefix` or `RoutePlugin` with `deprecated=True` advertises the lifetime
that remains between `time_now()` and `epoch` plus its configured lifetime.
It raises `ValueError` if no `epoch` is set.

## Dialer

```python
import threading

from radplug.dialer import Dialer, DialerMode
from radplug.state import new_state

stop = threading.Event()
dialer = Dialer("eth0", new_state(), DialerMode.ADVERTISE)

def serve(stop, dctx):
    data, hop_limit, src = dctx.conn.read_from()
    ...

dialer.dial(serve, stop)
```

`dial` calls `fn(stop, dctx)`. If `fn` raises `LinkChangeError`,
`LinkNotReadyError` or an `OSError`, the connection is closed and opened
again. It tries up to 50 times, waiting 0.25 s more each time, up to 3 s.
`PermissionError` and other errors propagate. Setting `stop` while the dialer
waits to retry makes `dial` return quietly.

In `ADVERTISE` mode the dialer turns IPv6 autoconfiguration off on the
interface while the connection is open, and restores the previous setting
when the connection closes.

## State

`SystemState` reads and writes the sysctl files under
`/proc/sys/net/ipv6/conf` on Linux. On other systems it changes nothing: it
reports autoconfiguration as off and forwarding as on. `TestState` returns
fixed answers, with optional per-interface overrides
(`TestStateInterface`) and an `error` that every call raises.

## What this package does not do

- It has no command-line program and no daemon loop that sends advertisements
  on a schedule or in answer to solicitations.
- It does not read a configuration file.
- The NDP types in `radplug.ndp` are in-memory only. Nothing here encodes a
  `RouterAdvertisement` to bytes or parses one from bytes. `NDPConn` sends and
  receives raw ICMPv6 payloads.

## Running the tests

```
pip install radplug[test]
pytest
```