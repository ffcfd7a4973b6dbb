import ipaddress
import socket
import struct
from types import SimpleNamespace
from unittest import mock

import pytest

from radplug import addresser as ad
from radplug.addresser import (
    AF_INET6,
    IFA_F_DEPRECATED,
    IFA_F_MANAGETEMPADDR,
    IFA_F_STABLE_PRIVACY,
    IFA_F_TEMPORARY,
    IFA_F_TENTATIVE,
    IP,
    NLM_F_DUMP,
    NLM_F_REQUEST,
    RT_TABLE_MAIN,
    RTM_GETADDR,
    RTM_GETROUTE,
    AddressAttributes,
    AddressMessage,
    CacheInfo,
    InvalidMessageError,
    LinkMessage,
    NetAddresser,
    NetlinkAddresser,
    Route,
    RouteAttributes,
    RouteMessage,
    new_net_addresser,
)
from radplug.ndp import Preference

INDEX = 1


def _raw(text):
    return ipaddress.IPv6Address(text).packed


def _mapped_v4():
    return ipaddress.IPv6Address("::ffff:192.0.2.1").packed


def _address_executor(msgs, seen):
    def execute(message, family, flags):
        seen.append((message, family, flags))
        return msgs

    return execute


ADDRESS_PANIC_CASES = [
    pytest.param([LinkMessage()], id="bad message type"),
    pytest.param(
        [AddressMessage(family=AF_INET6, index=INDEX, attributes=None)],
        id="missing attributes",
    ),
    pytest.param(
        [AddressMessage(family=AF_INET6, index=INDEX, attributes=AddressAttributes(address=None))],
        id="invalid IP",
    ),
    pytest.param(
        [
            AddressMessage(
                family=AF_INET6,
                index=INDEX,
                attributes=AddressAttributes(address=_mapped_v4()),
            )
        ],
        id="invalid IPv4",
    ),
]


@pytest.mark.parametrize("msgs", ADDRESS_PANIC_CASES)
def test_addresses_by_index_invalid(msgs):
    seen = []
    a = NetlinkAddresser(execute=_address_executor(msgs, seen))
    with pytest.raises(InvalidMessageError):
        a.addresses_by_index(INDEX)
    assert seen == [(AddressMessage(family=AF_INET6, index=INDEX), RTM_GETADDR, NLM_F_REQUEST | NLM_F_DUMP)]


def test_addresses_by_index_empty():
    seen = []
    a = NetlinkAddresser(execute=_address_executor([], seen))
    assert a.addresses_by_index(INDEX) == []
    assert seen[0][1] == RTM_GETADDR


def test_addresses_by_index_ok():
    msgs = [
        AddressMessage(
            family=AF_INET6,
            prefix_length=64,
            index=INDEX,
            attributes=AddressAttributes(address=_raw("2001:db8::1")),
        ),
        AddressMessage(
            family=AF_INET6,
            prefix_length=128,
            index=INDEX,
            attributes=AddressAttributes(
                address=_raw("fe80::1"),
                flags=IFA_F_DEPRECATED
                | IFA_F_MANAGETEMPADDR
                | IFA_F_STABLE_PRIVACY
                | IFA_F_TEMPORARY
                | IFA_F_TENTATIVE,
            ),
        ),
    ]
    seen = []
    a = NetlinkAddresser(execute=_address_executor(msgs, seen))
    assert a.addresses_by_index(INDEX) == [
        IP(address=ipaddress.IPv6Interface("2001:db8::1/64")),
        IP(
            address=ipaddress.IPv6Interface("fe80::1/128"),
            deprecated=True,
            manage_temporary_addresses=True,
            stable_privacy=True,
            temporary=True,
            tentative=True,
        ),
    ]


def test_addresses_by_index_valid_forever():
    msgs = [
        AddressMessage(
            family=AF_INET6,
            prefix_length=64,
            index=INDEX,
            attributes=AddressAttributes(
                address=_raw("2001:db8::1"),
                cache_info=CacheInfo(valid=0xFFFFFFFF),
            ),
        )
    ]
    a = NetlinkAddresser(execute=_address_executor(msgs, []))
    [ip] = a.addresses_by_index(INDEX)
    assert ip.valid_forever is True
    assert ip.deprecated is False


def test_addresses_by_index_execute_error_propagates():
    def execute(message, family, flags):
        raise PermissionError("denied")

    with pytest.raises(PermissionError):
        NetlinkAddresser(execute=execute).addresses_by_index(INDEX)


WANT_ROUTE_REQUEST = RouteMessage(
    family=AF_INET6,
    attributes=RouteAttributes(out_iface=INDEX, table=RT_TABLE_MAIN),
)


def _route_addresser(msgs, seen):
    return NetlinkAddresser(
        execute=_address_executor(msgs, seen),
        loopback_indices=lambda: [INDEX],
    )


ROUTE_PANIC_CASES = [
    pytest.param([LinkMessage()], id="bad message type"),
    pytest.param([RouteMessage(family=2)], id="bad family"),
    pytest.param(
        [RouteMessage(family=AF_INET6, attributes=RouteAttributes(dst=None))],
        id="invalid IP",
    ),
    pytest.param(
        [RouteMessage(family=AF_INET6, attributes=RouteAttributes(dst=_mapped_v4()))],
        id="invalid IPv4",
    ),
]


@pytest.mark.parametrize("msgs", ROUTE_PANIC_CASES)
def test_loopback_routes_invalid(msgs):
    seen = []
    with pytest.raises(InvalidMessageError):
        _route_addresser(msgs, seen).loopback_routes()
    assert seen == [(WANT_ROUTE_REQUEST, RTM_GETROUTE, NLM_F_REQUEST | NLM_F_DUMP)]


def test_loopback_routes_empty():
    seen = []
    assert _route_addresser([], seen).loopback_routes() == []
    assert seen[0][0] == WANT_ROUTE_REQUEST


def test_loopback_routes_ok():
    msgs = [
        RouteMessage(
            family=AF_INET6,
            dst_length=32,
            attributes=RouteAttributes(dst=_raw("2001:db8::"), out_iface=INDEX),
        ),
        RouteMessage(
            family=AF_INET6,
            dst_length=128,
            attributes=RouteAttributes(dst=_raw("::1"), out_iface=INDEX),
        ),
        RouteMessage(
            family=AF_INET6,
            dst_length=48,
            attributes=RouteAttributes(
                dst=_raw("fd00::"), out_iface=INDEX + 1, pref=int(Preference.HIGH)
            ),
        ),
    ]
    assert _route_addresser(msgs, []).loopback_routes() == [
        Route(prefix=ipaddress.IPv6Network("2001:db8::/32"), index=INDEX),
        Route(prefix=ipaddress.IPv6Network("::1/128"), index=INDEX),
        Route(
            prefix=ipaddress.IPv6Network("fd00::/48"),
            index=INDEX + 1,
            preference=Preference.HIGH,
        ),
    ]


def test_loopback_routes_no_loopbacks():
    seen = []
    a = NetlinkAddresser(execute=_address_executor([], seen), loopback_indices=lambda: [])
    assert a.loopback_routes() == []
    assert seen == []


def test_loopback_routes_gathers_each_interface():
    seen = []

    def execute(message, family, flags):
        seen.append(message.attributes.out_iface)
        return [
            RouteMessage(
                family=AF_INET6,
                dst_length=64,
                attributes=RouteAttributes(
                    dst=_raw(f"fd00:{message.attributes.out_iface}::"),
                    out_iface=message.attributes.out_iface,
                ),
            )
        ]

    a = NetlinkAddresser(execute=execute, loopback_indices=lambda: [1, 5])
    routes = a.loopback_routes()
    assert seen == [1, 5]
    assert [r.index for r in routes] == [1, 5]
    assert routes[1].prefix == ipaddress.IPv6Network("fd00:5::/64")


def test_decode_address_message():
    payload = struct.pack("=BBBBI", AF_INET6, 64, 0, 0, 3)
    payload += ad._attr(1, _raw("2001:db8::5"))
    payload += ad._attr(6, struct.pack("=IIII", 10, 0xFFFFFFFF, 1, 2))
    payload += ad._attr(8, struct.pack("=I", IFA_F_TEMPORARY))
    msg = ad._decode(ad.RTM_NEWADDR, payload)
    assert msg == AddressMessage(
        family=AF_INET6,
        prefix_length=64,
        index=3,
        attributes=AddressAttributes(
            address=_raw("2001:db8::5"),
            cache_info=CacheInfo(preferred=10, valid=0xFFFFFFFF, created=1, updated=2),
            flags=IFA_F_TEMPORARY,
        ),
    )


def test_route_message_round_trip():
    msg = RouteMessage(
        family=AF_INET6,
        dst_length=48,
        attributes=RouteAttributes(dst=_raw("fd00::"), out_iface=2, table=RT_TABLE_MAIN, pref=1),
    )
    assert ad._decode(ad.RTM_NEWROUTE, ad._encode(msg)) == msg


def test_iter_nlmsgs_splits_messages():
    body = b"\x01\x02\x03"
    first = struct.pack("=IHHII", 16 + len(body), 24, 2, 1, 0) + body + b"\0"
    second = struct.pack("=IHHII", 16, 3, 2, 1, 0)
    parsed = list(ad._iter_nlmsgs(first + second))
    assert parsed == [(24, 2, body), (3, 2, b"")]


def test_net_addresser_filters_and_masks():
    addrs = {
        "test0": [
            SimpleNamespace(family=socket.AF_INET, address="192.0.2.1", netmask="255.255.255.0"),
            SimpleNamespace(
                family=socket.AF_INET6, address="fe80::1%test0", netmask="ffff:ffff:ffff:ffff::"
            ),
            SimpleNamespace(
                family=socket.AF_INET6, address="2001:db8::1", netmask="ffff:ffff:ffff:ffff::"
            ),
            SimpleNamespace(family=socket.AF_INET6, address="::ffff:192.0.2.1", netmask=None),
        ]
    }
    with mock.patch("radplug.addresser.socket.if_indextoname", return_value="test0"), mock.patch(
        "radplug.addresser.psutil.net_if_addrs", return_value=addrs
    ):
        ips = NetAddresser().addresses_by_index(7)
    assert ips == [
        IP(address=ipaddress.IPv6Interface("fe80::1/64")),
        IP(address=ipaddress.IPv6Interface("2001:db8::1/64")),
    ]


def test_net_addresser_unknown_interface():
    with mock.patch(
        "radplug.addresser.socket.if_indextoname", side_effect=OSError("no interface with this index")
    ):
        with pytest.raises(OSError):
            new_net_addresser().addresses_by_index(424242)


def test_net_addresser_has_no_routes():
    assert new_net_addresser().loopback_routes() == []


@pytest.mark.parametrize(
    ("netmask", "bits"),
    [
        ("ffff:ffff:ffff:ffff::", 64),
        ("ffff:ffff:ffff:ffff:ffff:ffff:ffff:ffff", 128),
        ("::", 0),
        ("ffff::ffff", 0),
        (None, 0),
    ],
)
def test_mask_bits(netmask, bits):
    assert ad._mask_bits(netmask) == bits