"""Tests for DIB conversion and discovery results."""

from __future__ import annotations

import pytest
from xknx.knxip import (
    HPAI,
    DescriptionResponse,
    DIBGeneric,
    DIBServiceFamily,
    DIBTunnelingInfo,
    DIBTypeCode,
    HostProtocol,
    KNXIPFrame,
    SearchResponse,
)
from xknx.knxip.dib import TunnelingSlotStatus
from xknx.telegram import IndividualAddress

from conftest import FakeServer
from knxtools.errors import MalformedResponseError
from knxtools.knxip import dib
from knxtools.knxip.dib import Hpai, IpConfig, KnxAddresses, TunnelingInfo

REMOTE = ("192.168.1.20", 3671)


def _search(control: tuple[str, int], dibs) -> KNXIPFrame:
    body = SearchResponse(control_endpoint=HPAI(*control))
    body.dibs = list(dibs)
    frame, _ = KNXIPFrame.from_knx(KNXIPFrame.init_from_body(body).to_knx())
    return frame


def _description(dibs) -> KNXIPFrame:
    body = DescriptionResponse()
    body.dibs = list(dibs)
    frame, _ = KNXIPFrame.from_knx(KNXIPFrame.init_from_body(body).to_knx())
    return frame


def _search_result(control=REMOTE, dibs=None):
    server = FakeServer("KNX IP Router", "192.168.1.20")
    return dib.search_result(
        _search(control, dibs if dibs is not None else server.dibs()),
        local_address="192.168.1.10",
        remote_endpoint=REMOTE,
        interface="eth0",
    )


def test_device_info_from_search_response():
    server = FakeServer("KNX IP Router", "192.168.1.20")
    server.programming_mode = True
    result = _search_result(dibs=server.dibs())

    device = result.device
    assert device.name == "KNX IP Router"
    assert device.address == "1.1.0"
    assert device.programming_mode is True
    assert device.formatted_serial == "00fa:12345678"
    assert device.mac_address == "00:24:6d:00:00:01"


def test_search_result_fields():
    result = _search_result()
    assert result.kind == "search"
    assert not result.extended
    assert result.control_endpoint == Hpai(host="192.168.1.20", port=3671)
    assert result.interface == "eth0"
    assert result.service_families.version(DIBServiceFamily.CORE.value) == 2
    assert result.service_families.version(DIBServiceFamily.SECURITY.value) == 0
    assert result.remaining_dibs() == []


def test_search_response_without_service_families_is_malformed():
    info = FakeServer("Router", "192.168.1.20").dibs()[0]
    with pytest.raises(MalformedResponseError, match="supported service families"):
        _search_result(dibs=[info])


def test_duplicate_dib_is_malformed():
    dibs = FakeServer("Router", "192.168.1.20").dibs()
    with pytest.raises(MalformedResponseError, match="duplicate"):
        dib.description_result(
            _description(dibs + [dibs[1]]),
            local_address="192.168.1.10",
            remote_endpoint=REMOTE,
        )


def test_truncated_frame_is_malformed():
    data = FakeServer("Router", "192.168.1.20").description_response()
    with pytest.raises(MalformedResponseError, match="192.168.1.20"):
        dib.decode_frame(data[:40], REMOTE)


def test_service_type_of_garbage():
    assert dib.service_type(b"\x00\x01") is None


def test_unknown_dib_type_is_malformed():
    data = bytearray(FakeServer("Router", "192.168.1.20").description_response())
    data += bytes([4, 0x42, 0xAB, 0xCD])
    data[4:6] = len(data).to_bytes(2, "big")
    with pytest.raises(MalformedResponseError, match="192.168.1.20"):
        dib.decode_frame(bytes(data), REMOTE)


def test_generic_dibs_are_decoded():
    ip_config = DIBGeneric()
    ip_config.dtc = DIBTypeCode.IP_CONFIG
    ip_config.data = bytes([192, 168, 1, 20, 255, 255, 255, 0, 192, 168, 1, 1, 0x07, 0x01])
    addresses = DIBGeneric()
    addresses.dtc = DIBTypeCode.KNX_ADDRESSES
    addresses.data = bytes.fromhex("11001101")

    result = _search_result(dibs=FakeServer("Router", "192.168.1.20").dibs() + [ip_config, addresses])
    config, knx = result.remaining_dibs()
    assert isinstance(config, IpConfig)
    assert config.ip_address == "192.168.1.20"
    assert config.default_gateway == "192.168.1.1"
    assert isinstance(knx, KnxAddresses)
    assert knx.addresses == ("1.1.0", "1.1.1")


def test_short_ip_config_is_malformed():
    bad = DIBGeneric()
    bad.dtc = DIBTypeCode.IP_CONFIG
    bad.data = bytes(6)
    with pytest.raises(MalformedResponseError, match="IP config"):
        dib.convert_dib(bad)


@pytest.mark.parametrize("control", [("0.0.0.0", 0), ("0.0.0.0", 3671), ("10.0.0.5", 0)])
def test_description_target_uses_sender_for_wildcard_endpoint(control):
    """A wildcard control endpoint redirects the description to the observed sender."""
    assert _search_result(control=control).description_target() == REMOTE


def test_description_target_uses_embedded_endpoint():
    assert _search_result(control=("10.0.0.5", 3672)).description_target() == ("10.0.0.5", 3672)


def test_same_endpoint():
    first = _search_result()
    second = _search_result()
    moved = _search_result(control=("10.0.0.5", 3672))
    assert first.same_endpoint(second)
    assert not first.same_endpoint(moved)


def test_tunneling_info_describe():
    info = DIBTunnelingInfo(
        slots={
            IndividualAddress("1.1.10"): TunnelingSlotStatus(usable=True, authorized=False, free=True),
            IndividualAddress("1.1.11"): TunnelingSlotStatus(usable=True, authorized=False, free=False),
        }
    )
    info.max_apdu_length = 254
    parsed = dib.convert_dib(info)
    assert isinstance(parsed, TunnelingInfo)
    assert parsed.describe() == (
        "max. APDU length 254, 1.1.10 (free usable), 1.1.11 (occupied usable)"
    )


def test_hpai_str():
    assert str(Hpai(host="192.168.1.20", port=3671)) == "192.168.1.20:3671 (IPv4 UDP)"
    tcp = Hpai(host="192.168.1.20", port=3671, protocol=HostProtocol.IPV4_TCP.value)
    assert str(tcp).endswith("(IPv4 TCP)")
