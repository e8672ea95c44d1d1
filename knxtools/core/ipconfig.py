"""IP configuration of KNXnet/IP devices via the KNXnet/IP parameter object.

The object (interface object type 11) holds the configured and the current IP
settings as properties. Reading collects the known ones; writing updates the
configured values, which most devices apply after a restart.
"""

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

from xknx.profile import ResourceKNXNETIPPropertyId as KnxIpPid
from xknx.profile import ResourceObjectType
from xknx.telegram import IndividualAddress

from ..errors import ConfigurationError, ManagementError

logger = logging.getLogger("knxtools.ipconfig")

ASSIGNMENT_METHODS = {"manual": 0x01, "bootp": 0x02, "dhcp": 0x04, "autoip": 0x08}
FRIENDLY_NAME_LENGTH = 30


@dataclass(frozen=True)
class IpProperty:
    label: str
    pid: KnxIpPid
    kind: str
    count: int = 1


IP_PROPERTIES = [
    IpProperty("KNX individual address", KnxIpPid.PID_KNX_INDIVIDUAL_ADDRESS, "address"),
    IpProperty("Friendly name", KnxIpPid.PID_FRIENDLY_NAME, "text", FRIENDLY_NAME_LENGTH),
    IpProperty("MAC address", KnxIpPid.PID_MAC_ADDRESS, "mac"),
    IpProperty("IP capabilities", KnxIpPid.PID_IP_CAPABILITIES, "methods"),
    IpProperty("IP assignment method", KnxIpPid.PID_IP_ASSIGNMENT_METHOD, "methods"),
    IpProperty("Current IP assignment", KnxIpPid.PID_CURRENT_IP_ASSIGNMENT_METHOD, "methods"),
    IpProperty("Configured IP address", KnxIpPid.PID_IP_ADDRESS, "ip"),
    IpProperty("Configured subnet mask", KnxIpPid.PID_SUBNET_MASK, "ip"),
    IpProperty("Configured default gateway", KnxIpPid.PID_DEFAULT_GATEWAY, "ip"),
    IpProperty("Current IP address", KnxIpPid.PID_CURRENT_IP_ADDRESS, "ip"),
    IpProperty("Current subnet mask", KnxIpPid.PID_CURRENT_SUBNET_MASK, "ip"),
    IpProperty("Current default gateway", KnxIpPid.PID_CURRENT_DEFAULT_GATEWAY, "ip"),
    IpProperty("DHCP/BootP server", KnxIpPid.PID_DHCP_BOOTP_SERVER, "ip"),
    IpProperty("Routing multicast address", KnxIpPid.PID_ROUTING_MULTICAST_ADDRESS, "ip"),
    IpProperty("Multicast TTL", KnxIpPid.PID_TTL, "uint"),
]


def decode(kind: str, data: bytes) -> str:
    if kind == "ip" and len(data) == 4:
        return str(ipaddress.IPv4Address(data))
    if kind == "address" and len(data) == 2:
        return str(IndividualAddress.from_knx(data))
    if kind == "mac" and len(data) == 6:
        return ":".join(f"{b:02x}" for b in data)
    if kind == "methods" and len(data) == 1:
        names = [name for name, bit in ASSIGNMENT_METHODS.items() if data[0] & bit]
        return ", ".join(names) or "none"
    if kind == "text":
        return data.split(b"\0", 1)[0].decode("latin-1")
    if kind == "uint":
        return str(int.from_bytes(data, "big"))
    return data.hex()


def encode_ip(text: str) -> bytes:
    try:
        return ipaddress.IPv4Address(text).packed
    except ipaddress.AddressValueError:
        raise ConfigurationError(f"invalid IPv4 address {text!r}") from None


def encode_methods(methods) -> bytes:
    value = 0
    for name in methods:
        try:
            value |= ASSIGNMENT_METHODS[name]
        except KeyError:
            raise ConfigurationError(f"unknown IP assignment method {name!r}") from None
    return bytes([value])


class IpConfigurator:
    """Reads and writes the KNXnet/IP parameter object of one device."""

    def __init__(self, mc, address):
        self.mc = mc
        self.address = IndividualAddress(address)
        self._object_index: Optional[int] = None

    @property
    def object_index(self) -> int:
        if self._object_index is None:
            self._object_index = self.mc.find_object_index(
                self.address, ResourceObjectType.OBJECT_KNXNETIP_PARAMETER
            )
            logger.debug(
                "%s: KNXnet/IP parameter object at index %d", self.address, self._object_index
            )
        return self._object_index

    def read(self) -> list[tuple[str, Optional[str]]]:
        """(label, value) per known property; None where the device has none."""
        oi = self.object_index
        values = self.mc.read_properties(
            self.address, [(oi, prop.pid, prop.count) for prop in IP_PROPERTIES]
        )
        result = []
        for prop in IP_PROPERTIES:
            value = values[(oi, prop.pid)]
            if isinstance(value, ManagementError):
                logger.debug("%s: %s", prop.label, value)
                result.append((prop.label, None))
            else:
                result.append((prop.label, decode(prop.kind, value)))
        return result

    def write(
        self,
        ip: Optional[str] = None,
        subnet: Optional[str] = None,
        gateway: Optional[str] = None,
        multicast: Optional[str] = None,
        methods=(),
    ) -> list[str]:
        """Write the given settings; returns the labels written."""
        writes = []
        if methods:
            writes.append((KnxIpPid.PID_IP_ASSIGNMENT_METHOD, encode_methods(methods)))
        for pid, text in (
            (KnxIpPid.PID_IP_ADDRESS, ip),
            (KnxIpPid.PID_SUBNET_MASK, subnet),
            (KnxIpPid.PID_DEFAULT_GATEWAY, gateway),
            (KnxIpPid.PID_ROUTING_MULTICAST_ADDRESS, multicast),
        ):
            if text is not None:
                writes.append((pid, encode_ip(text)))
        if multicast is not None and not ipaddress.IPv4Address(multicast).is_multicast:
            raise ConfigurationError(f"{multicast} is not a multicast address")
        if not writes:
            raise ConfigurationError("nothing to write")

        oi = self.object_index
        labels = {prop.pid: prop.label for prop in IP_PROPERTIES}
        written = []
        for pid, data in writes:
            self.mc.write_property(self.address, oi, pid, data)
            written.append(labels[pid])
        return written
