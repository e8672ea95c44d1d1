"""Description information blocks and discovery results.

Frames are decoded by xknx; this module turns its DIB objects into immutable
result models that the formatter and the JSON output work with. DIB types
xknx keeps generic (IP config, KNX addresses, additional device info,
manufacturer data) are decoded from their payload here. The device info and
supported service families blocks are mandatory, everything else is optional.
"""

import ipaddress
import struct
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny
from xknx.exceptions import ConversionError, CouldNotParseKNXIP
from xknx.knxip import (
    DIB,
    HPAI,
    DIBDeviceInformation,
    DIBGeneric,
    DIBSecuredServiceFamilies,
    DIBServiceFamily,
    DIBSuppSVCFamilies,
    DIBTunnelingInfo,
    DIBTypeCode,
    HostProtocol,
    KNXIPFrame,
    KNXIPHeader,
    KNXIPServiceType,
    KNXMedium,
)
from xknx.telegram import IndividualAddress

from ..errors import MalformedResponseError

DIB_NAMES = {
    DIBTypeCode.DEVICE_INFO: "device info",
    DIBTypeCode.SUPP_SVC_FAMILIES: "supported service families",
    DIBTypeCode.IP_CONFIG: "IP config",
    DIBTypeCode.IP_CUR_CONFIG: "current IP config",
    DIBTypeCode.KNX_ADDRESSES: "KNX addresses",
    DIBTypeCode.SECURED_SERVICE_FAMILIES: "secured service families",
    DIBTypeCode.TUNNELING_INFO: "tunneling info",
    DIBTypeCode.ADDITIONAL_DEVICE_INFO: "additional device info",
    DIBTypeCode.MFR_DATA: "manufacturer data",
}

FAMILY_NAMES = {
    DIBServiceFamily.CORE: "Core",
    DIBServiceFamily.DEVICE_MANAGEMENT: "Device Management",
    DIBServiceFamily.TUNNELING: "Tunneling",
    DIBServiceFamily.ROUTING: "Routing",
    DIBServiceFamily.REMOTE_LOGGING: "Remote Logging",
    DIBServiceFamily.REMOTE_CONFIGURATION_DIAGNOSIS: "Remote Configuration and Diagnosis",
    DIBServiceFamily.OBJECT_SERVER: "Object Server",
    DIBServiceFamily.SECURITY: "Security",
}

MEDIUM_NAMES = {
    KNXMedium.TP1: "TP1",
    KNXMedium.PL110: "PL110",
    KNXMedium.RF: "RF",
    KNXMedium.KNX_IP: "KNX IP",
}

SEARCH_RESPONSES = (
    KNXIPServiceType.SEARCH_RESPONSE,
    KNXIPServiceType.SEARCH_RESPONSE_EXTENDED,
)


def _ip(raw: bytes) -> str:
    return str(ipaddress.IPv4Address(raw))


# ---------------------------------------------------------------------------
# HPAI
# ---------------------------------------------------------------------------


class Hpai(BaseModel):
    """Host protocol address information: IPv4 endpoint plus transport protocol."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(default=0, ge=0, le=65535)
    protocol: int = HostProtocol.IPV4_UDP.value

    @classmethod
    def from_xknx(cls, hpai: HPAI) -> "Hpai":
        return cls(host=hpai.ip_addr, port=hpai.port, protocol=hpai.protocol.value)

    @property
    def is_nat(self) -> bool:
        """True for the wildcard endpoint asking the peer to use the observed sender."""
        return self.host == "0.0.0.0" or self.port == 0

    @property
    def endpoint(self) -> tuple[str, int]:
        return self.host, self.port

    def __str__(self) -> str:
        proto = "TCP" if self.protocol == HostProtocol.IPV4_TCP.value else "UDP"
        return f"{self.host}:{self.port} (IPv4 {proto})"


# ---------------------------------------------------------------------------
# DIBs
# ---------------------------------------------------------------------------


class Dib(BaseModel):
    """Base DIB. Subclasses implement conversion and text rendering."""

    model_config = ConfigDict(frozen=True)

    type_code: int

    @property
    def type_name(self) -> str:
        try:
            return DIB_NAMES[DIBTypeCode(self.type_code)]
        except (KeyError, ValueError):
            return f"DIB {self.type_code:#04x}"

    def describe(self) -> str:
        return self.type_name

    def __str__(self) -> str:
        return self.describe()


class DeviceInfo(Dib):
    """Device information DIB."""

    type_code: int = DIBTypeCode.DEVICE_INFO.value
    medium: int = KNXMedium.TP1.value
    status: int = 0
    individual_address: str = "0.0.0"
    project_installation_id: int = 0
    serial_number: str = "000000000000"
    multicast_address: str = "0.0.0.0"
    mac_address: str = "00:00:00:00:00:00"
    name: str = ""

    @classmethod
    def from_xknx(cls, info: DIBDeviceInformation) -> "DeviceInfo":
        return cls(
            medium=info.knx_medium.value,
            status=int(info.programming_mode),
            individual_address=str(info.individual_address),
            project_installation_id=(info.project_number << 4) | info.installation_number,
            serial_number=info.serial_number.replace(":", ""),
            multicast_address=info.multicast_address,
            mac_address=info.mac_address,
            name=info.name,
        )

    @property
    def programming_mode(self) -> bool:
        return bool(self.status & 0x01)

    @property
    def address(self) -> str:
        return self.individual_address

    @property
    def formatted_serial(self) -> str:
        return f"{self.serial_number[:4]}:{self.serial_number[4:]}"

    def fields(self, with_serial: bool = True) -> list[str]:
        """Device fields without the name, serial number last."""
        try:
            medium = MEDIUM_NAMES[KNXMedium(self.medium)]
        except (KeyError, ValueError):
            medium = hex(self.medium)
        parts = [
            f"KNX medium {medium}",
            f"device {self.address}",
            f"project-installation ID {self.project_installation_id}",
            f"routing multicast address {self.multicast_address}",
            f"MAC address {self.mac_address}",
            f"programming mode {'active' if self.programming_mode else 'inactive'}",
        ]
        if with_serial:
            parts.append(f"S/N {self.formatted_serial}")
        return parts

    def describe(self) -> str:
        return ", ".join([f'"{self.name}"'] + self.fields())


def _family_list(families) -> str:
    names = []
    for family, version in families:
        try:
            name = FAMILY_NAMES[DIBServiceFamily(family)]
        except (KeyError, ValueError):
            name = f"family {family:#04x}"
        names.append(f"{name} (v{version})")
    return ", ".join(names)


class ServiceFamilies(Dib):
    """Supported service families: ordered (family id, version) pairs."""

    type_code: int = DIBTypeCode.SUPP_SVC_FAMILIES.value
    families: tuple[tuple[int, int], ...] = ()

    @classmethod
    def from_xknx(cls, dib: DIBSuppSVCFamilies) -> "ServiceFamilies":
        return cls(families=tuple((f.name.value, f.version) for f in dib.families))

    def version(self, family: int) -> int:
        """Version of the given family, 0 if not supported."""
        for fam, version in self.families:
            if fam == family:
                return version
        return 0

    def describe(self) -> str:
        return _family_list(self.families)


class SecuredServiceFamilies(ServiceFamilies):
    type_code: int = DIBTypeCode.SECURED_SERVICE_FAMILIES.value

    @classmethod
    def from_xknx(cls, dib: DIBSecuredServiceFamilies) -> "SecuredServiceFamilies":
        return cls(families=tuple((f.name.value, f.version) for f in dib.families))

    def describe(self) -> str:
        return f"KNX IP Secure: {_family_list(self.families)}"


class TunnelingInfo(Dib):
    """Tunnelling slots with their status, after the max APDU length."""

    type_code: int = DIBTypeCode.TUNNELING_INFO.value
    max_apdu_length: int = 254
    slots: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_xknx(cls, dib: DIBTunnelingInfo) -> "TunnelingInfo":
        return cls(
            max_apdu_length=dib.max_apdu_length,
            slots=tuple(
                (str(address), cls.slot_status(status)) for address, status in dib.slots.items()
            ),
        )

    @staticmethod
    def slot_status(status) -> str:
        flags = ["free" if status.free else "occupied"]
        if status.authorized:
            flags.append("authorized")
        if status.usable:
            flags.append("usable")
        return " ".join(flags)

    def describe(self) -> str:
        parts = [f"max. APDU length {self.max_apdu_length}"]
        parts += [f"{address} ({status})" for address, status in self.slots]
        return ", ".join(parts)


class IpConfig(Dib):
    type_code: int = DIBTypeCode.IP_CONFIG.value
    ip_address: str = "0.0.0.0"
    subnet_mask: str = "0.0.0.0"
    default_gateway: str = "0.0.0.0"
    capabilities: int = 0
    assignment_method: int = 0

    @classmethod
    def from_payload(cls, raw: bytes) -> "IpConfig":
        if len(raw) != 14:
            raise ValueError("IP config DIB requires 16 bytes")
        return cls(
            ip_address=_ip(raw[0:4]),
            subnet_mask=_ip(raw[4:8]),
            default_gateway=_ip(raw[8:12]),
            capabilities=raw[12],
            assignment_method=raw[13],
        )

    def describe(self) -> str:
        return (
            f"IP config: {self.ip_address} netmask {self.subnet_mask} "
            f"gateway {self.default_gateway}, capabilities {self.capabilities:#04x}, "
            f"assignment method {self.assignment_method:#04x}"
        )


class IpCurrentConfig(Dib):
    type_code: int = DIBTypeCode.IP_CUR_CONFIG.value
    ip_address: str = "0.0.0.0"
    subnet_mask: str = "0.0.0.0"
    default_gateway: str = "0.0.0.0"
    dhcp_server: str = "0.0.0.0"
    assignment_method: int = 0

    @classmethod
    def from_payload(cls, raw: bytes) -> "IpCurrentConfig":
        if len(raw) != 18:
            raise ValueError("current IP config DIB requires 20 bytes")
        return cls(
            ip_address=_ip(raw[0:4]),
            subnet_mask=_ip(raw[4:8]),
            default_gateway=_ip(raw[8:12]),
            dhcp_server=_ip(raw[12:16]),
            assignment_method=raw[16],
        )

    def describe(self) -> str:
        return (
            f"current IP config: {self.ip_address} netmask {self.subnet_mask} "
            f"gateway {self.default_gateway}, DHCP server {self.dhcp_server}"
        )


class KnxAddresses(Dib):
    type_code: int = DIBTypeCode.KNX_ADDRESSES.value
    addresses: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, raw: bytes) -> "KnxAddresses":
        if len(raw) % 2:
            raise ValueError("odd KNX addresses DIB length")
        return cls(
            addresses=tuple(
                str(IndividualAddress.from_knx(raw[i : i + 2])) for i in range(0, len(raw), 2)
            )
        )

    def describe(self) -> str:
        return f"KNX addresses {', '.join(self.addresses)}"


class AdditionalDeviceInfo(Dib):
    type_code: int = DIBTypeCode.ADDITIONAL_DEVICE_INFO.value
    medium_status: int = 0
    max_local_apdu_length: int = 254
    mask_version: int = 0

    @classmethod
    def from_payload(cls, raw: bytes) -> "AdditionalDeviceInfo":
        if len(raw) != 6:
            raise ValueError("additional device info DIB requires 8 bytes")
        medium_status, _, max_apdu, mask = struct.unpack("!BBHH", raw)
        return cls(medium_status=medium_status, max_local_apdu_length=max_apdu, mask_version=mask)

    def describe(self) -> str:
        comm = "communication possible" if self.medium_status & 0x01 == 0 else "communication impossible"
        return (
            f"medium status: {comm}, max. local APDU length {self.max_local_apdu_length}, "
            f"mask version {self.mask_version:04X}"
        )


class ManufacturerData(Dib):
    type_code: int = DIBTypeCode.MFR_DATA.value
    manufacturer_id: int = 0
    data: str = ""

    @classmethod
    def from_payload(cls, raw: bytes) -> "ManufacturerData":
        if len(raw) < 2:
            raise ValueError("manufacturer data DIB too short")
        (mfr,) = struct.unpack_from("!H", raw, 0)
        return cls(manufacturer_id=mfr, data=raw[2:].hex())

    def describe(self) -> str:
        return f"manufacturer ID {self.manufacturer_id:#06x}, data {self.data}"


_GENERIC_TYPES = {
    DIBTypeCode.IP_CONFIG: IpConfig,
    DIBTypeCode.IP_CUR_CONFIG: IpCurrentConfig,
    DIBTypeCode.KNX_ADDRESSES: KnxAddresses,
    DIBTypeCode.ADDITIONAL_DEVICE_INFO: AdditionalDeviceInfo,
    DIBTypeCode.MFR_DATA: ManufacturerData,
}


def convert_dib(dib: DIB) -> Dib:
    """Result model for one DIB decoded by xknx."""
    if isinstance(dib, DIBDeviceInformation):
        return DeviceInfo.from_xknx(dib)
    if isinstance(dib, DIBSecuredServiceFamilies):
        return SecuredServiceFamilies.from_xknx(dib)
    if isinstance(dib, DIBSuppSVCFamilies):
        return ServiceFamilies.from_xknx(dib)
    if isinstance(dib, DIBTunnelingInfo):
        return TunnelingInfo.from_xknx(dib)
    if isinstance(dib, DIBGeneric) and dib.dtc in _GENERIC_TYPES:
        try:
            return _GENERIC_TYPES[dib.dtc].from_payload(bytes(dib.data))
        except (ValueError, struct.error) as e:
            raise MalformedResponseError(f"invalid {DIB_NAMES[dib.dtc]} DIB: {e}") from e
    raise MalformedResponseError(f"unexpected DIB {dib!r}")


# ---------------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------------


def service_type(data: bytes) -> KNXIPServiceType | None:
    """Service type of a KNXnet/IP frame, None if the header does not parse."""
    header = KNXIPHeader()
    try:
        header.from_knx(data)
    except (CouldNotParseKNXIP, ValueError):
        return None
    return header.service_type_ident


def decode_frame(data: bytes, sender: tuple[str, int]) -> KNXIPFrame:
    """Decode a complete KNXnet/IP frame, MalformedResponseError if it is invalid."""
    try:
        frame, _ = KNXIPFrame.from_knx(data)
    except (CouldNotParseKNXIP, ConversionError, ValueError) as e:
        raise MalformedResponseError(
            f"invalid response from {sender[0]}:{sender[1]}: {e}"
        ) from e
    return frame


# ---------------------------------------------------------------------------
# Discovery result
# ---------------------------------------------------------------------------


class DiscoveryResult(BaseModel):
    """One endpoint's answer to a search or description request."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["search", "description"]
    extended: bool = False
    local_address: str
    interface: str | None = None
    remote_endpoint: tuple[str, int]
    control_endpoint: Hpai | None = None
    dibs: tuple[SerializeAsAny[Dib], ...]

    def find(self, type_code: int) -> Dib | None:
        for dib in self.dibs:
            if dib.type_code == type_code:
                return dib
        return None

    @property
    def device(self) -> DeviceInfo:
        return self.find(DIBTypeCode.DEVICE_INFO.value)

    @property
    def service_families(self) -> ServiceFamilies:
        return self.find(DIBTypeCode.SUPP_SVC_FAMILIES.value)

    def remaining_dibs(self) -> list[Dib]:
        """DIBs other than device info and service families, in received order."""
        skip = (DIBTypeCode.DEVICE_INFO.value, DIBTypeCode.SUPP_SVC_FAMILIES.value)
        return [dib for dib in self.dibs if dib.type_code not in skip]

    def description_target(self) -> tuple[str, int]:
        """Endpoint a follow-up description request goes to.

        A wildcard control endpoint (0.0.0.0 or port 0) asks for the observed
        sender address instead.
        """
        if self.control_endpoint is None or self.control_endpoint.is_nat:
            return self.remote_endpoint
        return self.control_endpoint.endpoint

    def same_endpoint(self, other: "DiscoveryResult") -> bool:
        return (
            self.remote_endpoint == other.remote_endpoint
            and self.control_endpoint == other.control_endpoint
            and self.device.individual_address == other.device.individual_address
        )


def _build_result(kind, dibs: list[Dib], **fields) -> DiscoveryResult:
    seen = set()
    for dib in dibs:
        if dib.type_code in seen:
            raise MalformedResponseError(f"duplicate {dib.type_name} DIB in {kind} response")
        seen.add(dib.type_code)
    for required in (DIBTypeCode.DEVICE_INFO, DIBTypeCode.SUPP_SVC_FAMILIES):
        if required.value not in seen:
            raise MalformedResponseError(f"{kind} response without {DIB_NAMES[required]} DIB")
    return DiscoveryResult(kind=kind, dibs=tuple(dibs), **fields)


def search_result(
    frame: KNXIPFrame,
    *,
    local_address: str,
    remote_endpoint: tuple[str, int],
    interface: str | None = None,
) -> DiscoveryResult:
    """Result of a SEARCH_RESPONSE(_EXTENDED) frame."""
    body = frame.body
    return _build_result(
        "search",
        [convert_dib(d) for d in body.dibs],
        extended=frame.header.service_type_ident
        is KNXIPServiceType.SEARCH_RESPONSE_EXTENDED,
        local_address=local_address,
        interface=interface,
        remote_endpoint=remote_endpoint,
        control_endpoint=Hpai.from_xknx(body.control_endpoint),
    )


def description_result(
    frame: KNXIPFrame,
    *,
    local_address: str,
    remote_endpoint: tuple[str, int],
    interface: str | None = None,
) -> DiscoveryResult:
    """Result of a DESCRIPTION_RESPONSE frame."""
    return _build_result(
        "description",
        [convert_dib(d) for d in frame.body.dibs],
        local_address=local_address,
        interface=interface,
        remote_endpoint=remote_endpoint,
    )
