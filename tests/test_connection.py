"""Tests for link provisioning on top of xknx."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest
from xknx.cemi import CEMIMessageCode
from xknx.io import ConnectionType
from xknx.telegram import IndividualAddress

from knxtools.config import LinkConfig
from knxtools.core.connection import check_supported, connection_config
from knxtools.core.management import ManagementClient
from knxtools.errors import (
    ConfigurationError,
    KnxTimeoutError,
    LinkClosedError,
    OperationCancelled,
)

KEY = "00112233445566778899aabbccddeeff"


def _config(**options) -> LinkConfig:
    return LinkConfig.from_options({"host": "192.168.1.20", **options})


def test_tunneling_connection_config():
    settings = connection_config(_config(localhost="192.168.1.10", nat=True, knx_address="1.1.200"))
    assert settings.connection_type is ConnectionType.TUNNELING
    assert settings.gateway_ip == "192.168.1.20"
    assert settings.gateway_port == 3671
    assert settings.local_ip == "192.168.1.10"
    assert settings.route_back
    assert settings.individual_address == IndividualAddress("1.1.200")
    assert not settings.auto_reconnect


def test_tcp_connection_config():
    assert connection_config(_config(tcp=True)).connection_type is ConnectionType.TUNNELING_TCP


def test_routing_connection_config():
    settings = connection_config(LinkConfig.from_options({"host": "224.0.23.12"}))
    assert settings.connection_type is ConnectionType.ROUTING
    assert settings.multicast_group == "224.0.23.12"


def test_secure_routing_connection_config():
    settings = connection_config(
        LinkConfig.from_options({"host": "224.0.23.12", "group_key": KEY})
    )
    assert settings.connection_type is ConnectionType.ROUTING_SECURE
    assert settings.secure_config.backbone_key == bytes.fromhex(KEY)


def test_secure_tunneling_connection_config():
    settings = connection_config(_config(user=2, user_pwd="secret", device_pwd="dev"))
    assert settings.connection_type is ConnectionType.TUNNELING_TCP_SECURE
    assert settings.secure_config.user_id == 2
    assert settings.secure_config.user_password == "secret"
    assert settings.secure_config.device_authentication_password == "dev"


def test_serial_transport_not_supported():
    with pytest.raises(ConfigurationError, match="not supported"):
        check_supported(LinkConfig.from_options({"usb": "1"}))


def test_raw_tunneling_keys_are_rejected():
    with pytest.raises(ConfigurationError, match="--user-pwd"):
        check_supported(_config(user=2, user_key=KEY))


def test_secure_password_needs_user():
    with pytest.raises(ConfigurationError, match="--user"):
        check_supported(_config(user_pwd="secret"))


def test_domain_is_accepted_with_warning(caplog):
    check_supported(_config(medium="rf", domain="00fa12345678"))
    assert "ignoring" in caplog.text


def test_open_and_close(bus):
    link = bus.open()
    assert link.is_open
    assert link.individual_address == IndividualAddress("1.1.255")
    assert bus.starts == 1

    link.close()
    link.close()
    assert not link.is_open
    assert bus.stops == 1


def test_cancel_while_connecting(bus):
    """A cancel during connection setup aborts the open and shuts the link down."""
    bus.hang_on_start = True
    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()

    started = time.monotonic()
    with pytest.raises(OperationCancelled):
        bus.open(cancel=cancel)

    assert time.monotonic() - started < 1.5
    assert bus.starts == 0
    assert bus.stops == 1


def test_connect_timeout(bus):
    bus.hang_on_start = True
    with pytest.raises(KnxTimeoutError):
        bus.open(connect_timeout=0.2)
    assert bus.stops == 1


def test_run_returns_result(link):
    async def answer():
        await asyncio.sleep(0.01)
        return 42

    assert link.run(answer()) == 42


def test_run_propagates_exceptions(link):
    async def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        link.run(fail())


def test_run_gives_up_on_cancel(link):
    threading.Timer(0.1, link.cancel.set).start()
    with pytest.raises(OperationCancelled):
        link.run(asyncio.sleep(10))


def test_run_timeout(link):
    with pytest.raises(KnxTimeoutError):
        link.run(asyncio.sleep(10), timeout=0.1)


def test_lost_link_fails_further_calls(link, bus, wait):
    bus.drop()
    assert wait(lambda: not link.is_open)
    with pytest.raises(LinkClosedError):
        ManagementClient(link).read_device_descriptor("1.1.50")


def test_gateway_address(link):
    assert link.gateway_address() == IndividualAddress("1.1.0")


def test_gateway_without_address(bus):
    bus.gateway = None
    with bus.open() as link, pytest.raises(ConfigurationError, match="KNX address"):
        link.gateway_address()


def test_listeners_see_frames(link, wait):
    frames = []
    raw = []
    link.add_listener(frames.append)
    link.add_raw_listener(raw.append)

    ManagementClient(link).read_device_descriptor("1.1.50")
    link.remove_listener(frames.append)
    link.remove_raw_listener(raw.append)

    codes = [f.code for f in frames]
    assert CEMIMessageCode.L_DATA_CON in codes
    assert CEMIMessageCode.L_DATA_IND in codes
    assert len(raw) == len(frames)


def test_failing_listener_does_not_stop_others(link):
    seen = []

    def broken(frame):
        raise ValueError("listener bug")

    link.add_listener(broken)
    link.add_listener(seen.append)
    ManagementClient(link).read_device_descriptor("1.1.50")
    assert seen
