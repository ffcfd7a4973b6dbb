import pytest

from radplug.state import (
    State,
    SystemState,
    TestState,
    TestStateInterface,
    new_state,
)


def test_no_interfaces():
    ts = TestState()
    assert ts.ipv6_autoconf("eth0") is False
    assert ts.ipv6_forwarding("eth0") is False


def test_global_error():
    ts = TestState(error=PermissionError("denied"))
    with pytest.raises(PermissionError):
        ts.ipv6_autoconf("eth0")
    with pytest.raises(PermissionError):
        ts.ipv6_forwarding("eth0")
    with pytest.raises(PermissionError):
        ts.set_ipv6_autoconf("eth0", False)


def test_interface_override():
    ts = TestState(
        interfaces={
            "eth0": TestStateInterface(autoconf=True, forwarding=True),
            "eth1": TestStateInterface(autoconf=False, forwarding=True),
        }
    )
    for name in ["eth0", "eth1", "eth2"]:
        got = TestStateInterface(
            autoconf=ts.ipv6_autoconf(name),
            forwarding=ts.ipv6_forwarding(name),
        )
        assert got == ts.interfaces.get(name, TestStateInterface())


def test_global_settings_used_without_override():
    ts = TestState(autoconf=True, forwarding=True)
    assert ts.ipv6_autoconf("eth2") is True
    assert ts.ipv6_forwarding("eth2") is True


def test_new_state_reads_missing_interface():
    state = new_state()
    assert isinstance(state, SystemState)
    assert isinstance(state, State)
    with pytest.raises(FileNotFoundError):
        state.ipv6_autoconf("notexist0")


def _make(tmp_path, iface, key, content):
    d = tmp_path / iface
    d.mkdir(exist_ok=True)
    (d / key).write_bytes(content)


def test_system_state_reads_sysctl(tmp_path):
    _make(tmp_path, "eth0", "autoconf", b"1\n")
    _make(tmp_path, "eth0", "forwarding", b"0\n")
    state = SystemState(root=tmp_path)
    assert state.ipv6_autoconf("eth0") is True
    assert state.ipv6_forwarding("eth0") is False


def test_system_state_requires_exact_contents(tmp_path):
    _make(tmp_path, "eth0", "autoconf", b"1")
    assert SystemState(root=tmp_path).ipv6_autoconf("eth0") is False


def test_system_state_set_round_trip(tmp_path):
    _make(tmp_path, "eth0", "autoconf", b"1\n")
    state = SystemState(root=tmp_path)
    state.set_ipv6_autoconf("eth0", False)
    assert (tmp_path / "eth0" / "autoconf").read_bytes() == b"0"
    state.set_ipv6_autoconf("eth0", True)
    assert (tmp_path / "eth0" / "autoconf").read_bytes() == b"1"


def test_system_state_missing_interface(tmp_path):
    state = SystemState(root=tmp_path)
    with pytest.raises(FileNotFoundError):
        state.ipv6_autoconf("notexist0")
    with pytest.raises(FileNotFoundError):
        state.set_ipv6_autoconf("notexist0", True)