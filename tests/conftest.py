"""Pytest configuration and shared fixtures for the KNX tools tests."""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import threading
import time

import pytest
from xknx.cemi import CEMIFrame, CEMILData, CEMIMessageCode
from xknx.core import XknxConnectionState
from xknx.dpt import DPTArray, DPTBinary
from xknx.io import DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT, GatewayDescriptor
from xknx.knxip import (
    HPAI,
    DescriptionResponse,
    DIBDeviceInformation,
    DIBServiceFamily,
    DIBSuppSVCFamilies,
    KNXIPFrame,
    KNXIPServiceType,
    SearchResponse,
    SearchResponseExtended,
)
from xknx.management import management as xknx_management
from xknx.profile import ResourceGenericPropertyId as GenericPid
from xknx.profile import ResourceKNXNETIPPropertyId as KnxIpPid
from xknx.telegram import GroupAddress, IndividualAddress, Telegram, apci, tpci

from knxtools.config import LinkConfig
from knxtools.core.connection import new_link
from knxtools.core.discovery import Discoverer
from knxtools.knxip.netif import NetInterface

LOCAL_IP = "192.168.1.10"

DEFAULT_FAMILIES = (
    (DIBServiceFamily.CORE, 2),
    (DIBServiceFamily.DEVICE_MANAGEMENT, 1),
    (DIBServiceFamily.TUNNELING, 1),
    (DIBServiceFamily.ROUTING, 1),
)

SEARCH_REQUESTS = (KNXIPServiceType.SEARCH_REQUEST, KNXIPServiceType.SEARCH_REQUEST_EXTENDED)


# ---------------------------------------------------------------------------
# Discovery: fake sockets and KNXnet/IP servers
# ---------------------------------------------------------------------------


class FakeServer:
    """KNXnet/IP server answering search and description requests."""

    def __init__(
        self,
        name: str,
        address: str,
        port: int = DEFAULT_MCAST_PORT,
        control: tuple[str, int] | None = None,
        individual_address: str = "1.1.0",
        mac: str = "00:24:6d:00:00:01",
        search_delay: float = 0.0,
        describe: bool = True,
        extra_dibs: tuple = (),
    ):
        self.name = name
        self.endpoint = (address, port)
        self.control = control if control is not None else (address, port)
        self.individual_address = individual_address
        self.mac = mac
        self.programming_mode = False
        self.extra_dibs = tuple(extra_dibs)
        self.search_delay = search_delay
        self.describe = describe
        self.search_requests: list = []
        self.description_requests: list[tuple] = []

    def dibs(self) -> list:
        info = DIBDeviceInformation()
        info.individual_address = IndividualAddress(self.individual_address)
        info.programming_mode = self.programming_mode
        info.serial_number = "00:fa:12:34:56:78"
        info.multicast_address = DEFAULT_MCAST_GRP
        info.mac_address = self.mac
        info.name = self.name
        families = DIBSuppSVCFamilies()
        families.families = [
            DIBSuppSVCFamilies.Family(name=family, version=version)
            for family, version in DEFAULT_FAMILIES
        ]
        return [info, families, *self.extra_dibs]

    def search_response(self, extended: bool = False) -> bytes:
        cls = SearchResponseExtended if extended else SearchResponse
        body = cls(control_endpoint=HPAI(*self.control))
        body.dibs = self.dibs()
        return KNXIPFrame.init_from_body(body).to_knx()

    def description_response(self) -> bytes:
        body = DescriptionResponse()
        body.dibs = self.dibs()
        return KNXIPFrame.init_from_body(body).to_knx()

    def respond(self, data: bytes, addr: tuple) -> list[tuple]:
        """Replies to one request → list of (delay, datagram, source address)."""
        frame, _ = KNXIPFrame.from_knx(data)
        service_type = frame.header.service_type_ident
        if service_type in SEARCH_REQUESTS:
            if addr not in ((DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT), self.endpoint):
                return []
            self.search_requests.append(frame.body)
            extended = service_type is KNXIPServiceType.SEARCH_REQUEST_EXTENDED
            return [(self.search_delay, self.search_response(extended), self.endpoint)]
        if service_type is KNXIPServiceType.DESCRIPTION_REQUEST and addr == self.endpoint:
            self.description_requests.append(addr)
            if self.describe:
                return [(0.0, self.description_response(), self.endpoint)]
        return []


class FakeSocket:
    """Stands in for DiscoverySocket; replies come from the FakeNetwork's servers."""

    def __init__(
        self,
        network: "FakeNetwork",
        interface: NetInterface,
        local_port: int = 0,
        mcast_response: bool = False,
        nat: bool = False,
        on_datagram=None,
    ):
        self.network = network
        self.interface = interface
        self.port = local_port or network.next_port()
        self.mcast_response = mcast_response
        self.nat = nat
        self.on_datagram = on_datagram
        self.sent: list[tuple] = []
        self.closed = False

    @property
    def local_address(self) -> str:
        return self.interface.address

    @property
    def hpai(self) -> tuple[str, int]:
        if self.mcast_response:
            return DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT
        if self.nat:
            return "0.0.0.0", 0
        return self.interface.address, self.port

    @property
    def is_open(self) -> bool:
        return not self.closed

    def send(self, data: bytes, addr: tuple):
        self.sent.append((data, addr))
        for server in self.network.servers:
            for delay, reply, source in server.respond(data, addr):
                if delay:
                    timer = threading.Timer(delay, self.deliver, (reply, source))
                    timer.daemon = True
                    timer.start()
                else:
                    self.deliver(reply, source)

    def deliver(self, data: bytes, addr: tuple):
        if not self.closed and self.on_datagram is not None:
            self.on_datagram(data, addr)

    def close(self):
        self.closed = True


class FakeNetwork:
    def __init__(self):
        self.interfaces = [NetInterface("eth0", LOCAL_IP, "255.255.255.0")]
        self.servers: list[FakeServer] = []
        self.sockets: list[FakeSocket] = []
        self._port = 50000

    def next_port(self) -> int:
        self._port += 1
        return self._port

    def add_server(self, server: FakeServer) -> FakeServer:
        self.servers.append(server)
        return server

    def socket_factory(self, interface, **kwargs) -> FakeSocket:
        sock = FakeSocket(self, interface, **kwargs)
        self.sockets.append(sock)
        return sock

    def list_interfaces(self, include_loopback: bool = False) -> list[NetInterface]:
        found = list(self.interfaces)
        if include_loopback:
            found.append(NetInterface("lo", "127.0.0.1", "255.0.0.0"))
        return found

    def route(self, host: str) -> str:
        return LOCAL_IP

    @property
    def open_sockets(self) -> list[FakeSocket]:
        return [s for s in self.sockets if not s.closed]

    def discoverer(self, **kwargs) -> Discoverer:
        return Discoverer(
            socket_factory=self.socket_factory,
            interfaces=self.list_interfaces,
            route_lookup=self.route,
            **kwargs,
        )


@pytest.fixture
def network():
    """Fake IPv4 network with one interface and no servers."""
    return FakeNetwork()


@pytest.fixture
def two_servers(network):
    """Two servers answering a search after 50 ms and 120 ms."""
    first = network.add_server(
        FakeServer("KNX IP Router", "192.168.1.20", individual_address="1.1.0", search_delay=0.05)
    )
    second = network.add_server(
        FakeServer(
            "KNX IP Interface",
            "192.168.1.21",
            individual_address="1.2.0",
            mac="00:24:6d:00:00:02",
            search_delay=0.12,
        )
    )
    return first, second


@pytest.fixture
def patched_discoverer(monkeypatch, network):
    """Make the discovery commands build their Discoverer on the fake network."""
    from knxtools.commands import discover as discover_cmd

    monkeypatch.setattr(
        discover_cmd,
        "Discoverer",
        functools.partial(
            Discoverer,
            socket_factory=network.socket_factory,
            interfaces=network.list_interfaces,
            route_lookup=network.route,
        ),
    )
    return network


# ---------------------------------------------------------------------------
# Management: simulated KNX bus behind the xknx interface
# ---------------------------------------------------------------------------


class SimulatedDevice:
    """Bus device answering the management services the tools use.

    Properties map (object index, pid) to their elements concatenated; sizes
    gives the element size where a property has more than one element.
    """

    def __init__(
        self,
        address: str,
        descriptor: bytes = b"\x07\xb0",
        progmode: bool = False,
        properties: dict | None = None,
        sizes: dict | None = None,
        writable: set | None = None,
        process_time: int = 3,
        nak: bool = False,
        silent: bool = False,
        delay: float = 0.0,
    ):
        self.address = IndividualAddress(address)
        self.descriptor = descriptor
        self.progmode = progmode
        self.properties = dict(properties or {})
        self.sizes = dict(sizes or {})
        self.writable = set(writable or ())
        self.process_time = process_time
        self.nak = nak
        self.silent = silent
        self.delay = delay
        self.memory: dict[int, int] = {}
        self.connects = 0
        self.disconnects = 0
        self.restarts = 0
        self.master_resets: list[tuple[int, int]] = []
        self.property_writes: list[tuple] = []
        self.send_seq = 0

    def next_seq(self) -> int:
        seq = self.send_seq
        self.send_seq = (seq + 1) & 0x0F
        return seq

    def elements(self, key) -> list[bytes]:
        value = self.properties[key]
        size = self.sizes.get(key) or len(value) or 1
        return [value[i : i + size] for i in range(0, len(value), size)]

    def respond(self, payload):
        """Application layer response to one request, None if there is none."""
        if isinstance(payload, apci.DeviceDescriptorRead):
            return apci.DeviceDescriptorResponse(
                descriptor=payload.descriptor, value=int.from_bytes(self.descriptor, "big")
            )
        if isinstance(payload, apci.PropertyValueRead):
            return self._property_value(
                payload.object_index, payload.property_id, payload.start_index, payload.count
            )
        if isinstance(payload, apci.PropertyValueWrite):
            return self._write_property(payload)
        if isinstance(payload, apci.PropertyDescriptionRead):
            return self._describe(payload)
        if isinstance(payload, apci.MemoryRead):
            data = bytes(self.memory.get(payload.address + i, 0) for i in range(payload.count))
            return apci.MemoryResponse(address=payload.address, data=data)
        if isinstance(payload, apci.MemoryWrite):
            for i, b in enumerate(payload.data):
                self.memory[payload.address + i] = b
            if payload.address == 0x60:
                self.progmode = bool(payload.data[0] & 0x01)
            return None
        if isinstance(payload, apci.Restart):
            self.restarts += 1
            return None
        if isinstance(payload, apci.RestartMasterReset):
            self.master_resets.append((payload.erase_code, payload.channel_number))
            return apci.RestartMasterResetResponse(error_code=0, process_time=self.process_time)
        return None

    def _property_value(self, object_index, pid, start, count):
        key = (object_index, pid)
        refused = apci.PropertyValueResponse(
            object_index=object_index, property_id=pid, count=0, start_index=start
        )
        if key not in self.properties:
            return refused
        elements = self.elements(key)
        if start == 0:
            data = len(elements).to_bytes(2, "big")
            return apci.PropertyValueResponse(
                object_index=object_index, property_id=pid, count=1, start_index=0, data=data
            )
        selected = elements[start - 1 : start - 1 + count]
        if len(selected) != count:
            return refused
        return apci.PropertyValueResponse(
            object_index=object_index,
            property_id=pid,
            count=count,
            start_index=start,
            data=b"".join(selected),
        )

    def _write_property(self, payload):
        key = (payload.object_index, payload.property_id)
        if key not in self.writable:
            return apci.PropertyValueResponse(
                object_index=payload.object_index,
                property_id=payload.property_id,
                count=0,
                start_index=payload.start_index,
            )
        size = len(payload.data) // payload.count
        elements = self.elements(key) if key in self.properties else []
        for i in range(payload.count):
            index = payload.start_index - 1 + i
            while len(elements) <= index:
                elements.append(bytes(size))
            elements[index] = payload.data[i * size : (i + 1) * size]
        self.properties[key] = b"".join(elements)
        self.sizes[key] = size
        self.property_writes.append((key, payload.start_index, payload.data))
        return self._property_value(
            payload.object_index, payload.property_id, payload.start_index, payload.count
        )

    def _describe(self, payload):
        keys = [k for k in self.properties if k[0] == payload.object_index]
        if payload.property_id:
            matches = [i for i, k in enumerate(keys) if k[1] == payload.property_id]
            index = matches[0] if matches else None
        else:
            index = payload.property_index if payload.property_index < len(keys) else None
        if index is None:
            return apci.PropertyDescriptionResponse(
                object_index=payload.object_index,
                property_id=0,
                property_index=payload.property_index,
                type_=0,
                max_count=0,
                access=0,
            )
        key = keys[index]
        size = self.sizes.get(key) or len(self.properties[key]) or 1
        writable = 0x80 if key in self.writable else 0x00
        return apci.PropertyDescriptionResponse(
            object_index=payload.object_index,
            property_id=key[1],
            property_index=index,
            type_=writable | (0x10 + size),
            max_count=len(self.elements(key)),
            access=0x32,
        )


def _indication(src, dst, tpci_, payload=None) -> CEMIFrame:
    telegram = Telegram(destination_address=dst, source_address=src, tpci=tpci_, payload=payload)
    return CEMIFrame(code=CEMIMessageCode.L_DATA_IND, data=CEMILData.init_from_telegram(telegram))


class SimulatedBus:
    """KNX bus with simulated devices behind a tunneling server.

    Frames to an individual address without a device get a negative
    L_Data.con, just like a TP1 frame nobody acknowledges.
    """

    def __init__(
        self,
        devices=(),
        individual_address: str = "1.1.255",
        group_values: dict | None = None,
        gateway: str | None = "1.1.0",
    ):
        self.individual_address = IndividualAddress(individual_address)
        self.devices = {d.address: d for d in devices}
        self.group_values: dict[str, bytes] = dict(group_values or {})
        self.group_writes: list[tuple[str, bytes, bool]] = []
        self.gateway = IndividualAddress(gateway) if gateway else None
        self.sent: list[CEMILData] = []
        self.hang_on_start = False
        self.starts = 0
        self.stops = 0
        self.interfaces: list[SimulatedInterface] = []
        self.opened_with: list[LinkConfig] = []
        self._lock = threading.Lock()

    def add(self, device: SimulatedDevice) -> SimulatedDevice:
        self.devices[device.address] = device
        return device

    def interface(self, xknx) -> "SimulatedInterface":
        """Interface factory for KnxLink."""
        return SimulatedInterface(self, xknx)

    def open(self, cancel=None, **fields):
        """Open a link onto this bus."""
        config = LinkConfig(**{"host": "192.168.1.20", "connect_timeout": 2.0, **fields})
        return new_link(config, cancel, interface_factory=self.interface)

    def drop(self):
        """Let every open interface report the connection as lost."""
        for interface in self.interfaces:
            interface.drop()

    def handle(self, cemi: CEMIFrame, local: IndividualAddress) -> list[tuple[float, CEMIFrame]]:
        """Frames in answer to one L_Data.req → list of (delay, frame)."""
        data = cemi.data
        with self._lock:
            self.sent.append(data)
        target = data.dst_addr
        device = self.devices.get(target) if isinstance(target, IndividualAddress) else None
        ok = isinstance(target, GroupAddress) or device is not None
        replies = [(0.0, self._confirmation(data, ok))]
        if isinstance(target, GroupAddress):
            replies += [(0.0, frame) for frame in self._group(data)]
        elif device is not None:
            replies += [(device.delay, frame) for frame in self._device(device, data, local)]
        return replies

    @staticmethod
    def _confirmation(data: CEMILData, ok: bool) -> CEMIFrame:
        con = CEMILData(
            flags=dataclasses.replace(data.flags, confirm_error=not ok),
            src_addr=data.src_addr,
            dst_addr=data.dst_addr,
            tpci=data.tpci,
            payload=data.payload,
        )
        return CEMIFrame(code=CEMIMessageCode.L_DATA_CON, data=con)

    def _group(self, data: CEMILData) -> list[CEMIFrame]:
        payload = data.payload
        destination = str(data.dst_addr)
        if isinstance(payload, apci.IndividualAddressRead):
            return [
                _indication(
                    device.address,
                    GroupAddress(0),
                    tpci.TDataBroadcast(),
                    apci.IndividualAddressResponse(),
                )
                for device in self.devices.values()
                if device.progmode
            ]
        if isinstance(payload, apci.GroupValueRead) and destination in self.group_values:
            value = self.group_values[destination]
            if len(value) == 1 and value[0] <= 0x3F:
                dpt = DPTBinary(value[0])
            else:
                dpt = DPTArray(value)
            return [
                _indication(
                    IndividualAddress("1.1.1"),
                    data.dst_addr,
                    tpci.TDataGroup(),
                    apci.GroupValueResponse(value=dpt),
                )
            ]
        if isinstance(payload, apci.GroupValueWrite):
            compact = isinstance(payload.value, DPTBinary)
            value = bytes([payload.value.value]) if compact else bytes(payload.value.value)
            self.group_values[destination] = value
            self.group_writes.append((destination, value, compact))
        return []

    def _device(self, device: SimulatedDevice, data: CEMILData, local) -> list[CEMIFrame]:
        if isinstance(data.tpci, tpci.TConnect):
            device.connects += 1
            device.send_seq = 0
            return []
        if isinstance(data.tpci, tpci.TDisconnect):
            device.disconnects += 1
            return []
        if not isinstance(data.tpci, tpci.TDataConnected) or device.silent:
            return []
        seq = data.tpci.sequence_number
        if device.nak:
            return [_indication(device.address, local, tpci.TNak(sequence_number=seq))]
        replies = [_indication(device.address, local, tpci.TAck(sequence_number=seq))]
        response = device.respond(data.payload)
        if response is not None:
            replies.append(
                _indication(
                    device.address,
                    local,
                    tpci.TDataConnected(sequence_number=device.next_seq()),
                    response,
                )
            )
        return replies


class SimulatedInterface:
    """Takes the place of xknx's KNXnet/IP interface; frames go to a SimulatedBus."""

    def __init__(self, bus: SimulatedBus, xknx):
        self.bus = bus
        self.xknx = xknx
        self.connection_config = xknx.knxip_interface.connection_config
        self.loop: asyncio.AbstractEventLoop | None = None

    async def start(self):
        self.loop = asyncio.get_running_loop()
        if self.bus.hang_on_start:
            await asyncio.Event().wait()
        self.xknx.current_address = self.bus.individual_address
        self.bus.starts += 1
        self.bus.interfaces.append(self)
        self.xknx.connection_manager.connection_state_changed(XknxConnectionState.CONNECTED)

    async def stop(self):
        self.bus.stops += 1
        self.xknx.connection_manager.connection_state_changed(XknxConnectionState.DISCONNECTED)

    async def gateway_info(self):
        if self.bus.gateway is None:
            return None
        return GatewayDescriptor(
            ip_addr="192.168.1.20", port=DEFAULT_MCAST_PORT, individual_address=self.bus.gateway
        )

    async def send_cemi(self, cemi: CEMIFrame):
        for delay, frame in self.bus.handle(cemi, self.xknx.current_address):
            raw = frame.to_knx()
            if delay:
                self.loop.call_later(delay, self.xknx.cemi_handler.handle_raw_cemi, raw)
            else:
                self.loop.call_soon(self.xknx.cemi_handler.handle_raw_cemi, raw)

    def drop(self):
        self.loop.call_soon_threadsafe(
            self.xknx.connection_manager.connection_state_changed,
            XknxConnectionState.DISCONNECTED,
        )


@pytest.fixture(autouse=True)
def short_transport_timeouts(monkeypatch):
    """Acknowledgement and response timeouts of point-to-point connections."""
    monkeypatch.setattr(xknx_management, "MANAGEMENT_ACK_TIMEOUT", 0.2)
    monkeypatch.setattr(xknx_management, "MANAGEMENT_CONNECTION_TIMEOUT", 0.3)


@pytest.fixture
def device_50():
    """Device at 1.1.50 with a device object of a few properties."""
    return SimulatedDevice(
        "1.1.50",
        properties={
            (0, GenericPid.PID_OBJECT_TYPE): b"\x00\x00",
            (0, GenericPid.PID_MANUFACTURER_ID): b"\x00\x83",
            (0, GenericPid.PID_SERIAL_NUMBER): bytes.fromhex("0083a1b2c3d4"),
            (0, GenericPid.PID_FIRMWARE_REVISION): b"\x05",
        },
        writable={(0, GenericPid.PID_FIRMWARE_REVISION)},
    )


IP_OBJECT = 1


def ip_router(address: str = "1.1.20") -> SimulatedDevice:
    """KNX IP router with the KNXnet/IP parameter object at index 1."""
    name = b"Office Router".ljust(30, b"\0")
    return SimulatedDevice(
        address,
        properties={
            (0, GenericPid.PID_OBJECT_TYPE): b"\x00\x00",
            (IP_OBJECT, GenericPid.PID_OBJECT_TYPE): b"\x00\x0b",
            (IP_OBJECT, KnxIpPid.PID_KNX_INDIVIDUAL_ADDRESS): b"\x11\x14",
            (IP_OBJECT, KnxIpPid.PID_FRIENDLY_NAME): name,
            (IP_OBJECT, KnxIpPid.PID_MAC_ADDRESS): bytes.fromhex("00246d000001"),
            (IP_OBJECT, KnxIpPid.PID_IP_CAPABILITIES): b"\x06",
            (IP_OBJECT, KnxIpPid.PID_IP_ASSIGNMENT_METHOD): b"\x04",
            (IP_OBJECT, KnxIpPid.PID_CURRENT_IP_ASSIGNMENT_METHOD): b"\x04",
            (IP_OBJECT, KnxIpPid.PID_IP_ADDRESS): bytes([192, 168, 1, 20]),
            (IP_OBJECT, KnxIpPid.PID_SUBNET_MASK): bytes([255, 255, 255, 0]),
            (IP_OBJECT, KnxIpPid.PID_DEFAULT_GATEWAY): bytes([192, 168, 1, 1]),
            (IP_OBJECT, KnxIpPid.PID_CURRENT_IP_ADDRESS): bytes([192, 168, 1, 20]),
            (IP_OBJECT, KnxIpPid.PID_CURRENT_SUBNET_MASK): bytes([255, 255, 255, 0]),
            (IP_OBJECT, KnxIpPid.PID_CURRENT_DEFAULT_GATEWAY): bytes([192, 168, 1, 1]),
            (IP_OBJECT, KnxIpPid.PID_ROUTING_MULTICAST_ADDRESS): bytes([224, 0, 23, 12]),
            (IP_OBJECT, KnxIpPid.PID_TTL): b"\x10",
        },
        sizes={(IP_OBJECT, KnxIpPid.PID_FRIENDLY_NAME): 1},
        writable={
            (IP_OBJECT, KnxIpPid.PID_IP_ASSIGNMENT_METHOD),
            (IP_OBJECT, KnxIpPid.PID_IP_ADDRESS),
            (IP_OBJECT, KnxIpPid.PID_SUBNET_MASK),
            (IP_OBJECT, KnxIpPid.PID_DEFAULT_GATEWAY),
            (IP_OBJECT, KnxIpPid.PID_ROUTING_MULTICAST_ADDRESS),
        },
    )


@pytest.fixture
def bus(device_50):
    """Simulated bus with exactly one device, 1.1.50."""
    return SimulatedBus([device_50])


@pytest.fixture
def link(bus):
    """Open link onto the simulated bus."""
    with bus.open() as opened:
        yield opened


@pytest.fixture
def patched_link(monkeypatch, bus):
    """Make the link-based commands open the simulated bus."""
    from knxtools.commands import options

    def open_simulated(config, cancel=None):
        bus.opened_with.append(config)
        return new_link(config, cancel, interface_factory=bus.interface)

    monkeypatch.setattr(options, "new_link", open_simulated)
    return bus


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait():
    """Poll a predicate until it holds or the timeout expires."""
    return wait_for
