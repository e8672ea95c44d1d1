"""Telegram monitor: formats link-layer frames as they pass a link.

Used by the group monitor (group traffic only) and the traffic monitor (every
frame). Each entry keeps timestamp, message code, addresses, transport and
application service and the raw payload. Nothing is buffered; the callback
sees each entry once and only counters are kept.

Frames arrive on the link's loop thread.
"""

import logging
import re
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from xknx.cemi import CEMIFrame, CEMILData, CEMIMessageCode
from xknx.dpt import DPTArray, DPTBinary
from xknx.exceptions import XKNXException
from xknx.telegram import GroupAddress, tpci

from .process import decode_value

logger = logging.getLogger("knxtools.monitor")

MSG_CODE_NAMES = {
    CEMIMessageCode.L_DATA_REQ: "L_Data.req",
    CEMIMessageCode.L_DATA_CON: "L_Data.con",
    CEMIMessageCode.L_DATA_IND: "L_Data.ind",
    CEMIMessageCode.L_BUSMON_IND: "L_Busmon.ind",
}

TPCI_NAMES = {
    tpci.TConnect: "T_Connect",
    tpci.TDisconnect: "T_Disconnect",
    tpci.TAck: "T_ACK",
    tpci.TNak: "T_NAK",
}

_SERVICE = re.compile(r"(.+?)(Read|Write|Response)$")
_SUFFIX = {"Read": "read", "Write": "write", "Response": "res"}


def service_name(apci) -> str:
    """GroupValueWrite → GroupValue.write, Restart → Restart."""
    name = type(apci).__name__
    match = _SERVICE.match(name)
    if match is None:
        return name
    return f"{match.group(1)}.{_SUFFIX[match.group(2)]}"


def payload_bytes(apci) -> bytes:
    value = getattr(apci, "value", None)
    if isinstance(value, (DPTBinary, DPTArray)):
        return decode_value(value)
    return bytes(apci.to_knx()[2:])


class TelegramEntry:
    """A single decoded frame."""

    __slots__ = (
        "timestamp",
        "msg_code",
        "source",
        "destination",
        "tpci",
        "apci",
        "payload_hex",
        "confirm_error",
    )

    def __init__(self, code: CEMIMessageCode, data: CEMILData, timestamp: Optional[float] = None):
        self.timestamp = time.time() if timestamp is None else timestamp
        self.msg_code = code
        self.source = data.src_addr
        self.destination = data.dst_addr
        self.tpci = data.tpci
        self.apci = data.payload
        self.payload_hex = payload_bytes(data.payload).hex() if data.payload is not None else ""
        self.confirm_error = bool(data.flags.confirm_error)

    @classmethod
    def from_cemi(cls, cemi: CEMIFrame) -> "TelegramEntry":
        return cls(cemi.code, cemi.data)

    @property
    def is_group(self) -> bool:
        return isinstance(self.destination, GroupAddress)

    @property
    def msg_name(self) -> str:
        return MSG_CODE_NAMES.get(self.msg_code, self.msg_code.name)

    @property
    def service(self) -> str:
        if self.apci is None:
            name = TPCI_NAMES.get(type(self.tpci), type(self.tpci).__name__)
            return f"{name} {self.tpci.sequence_number}" if self.tpci.numbered else name
        name = service_name(self.apci)
        if self.tpci.numbered:
            return f"{name} (seq {self.tpci.sequence_number})"
        return name

    @property
    def destination_str(self) -> str:
        return str(self.destination)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "msg_code": self.msg_name,
            "source": str(self.source),
            "destination": self.destination_str,
            "service": self.service,
            "payload": self.payload_hex,
            "confirm_error": self.confirm_error,
        }

    def format(self) -> str:
        ts = datetime.fromtimestamp(self.timestamp).strftime("%H:%M:%S.%f")[:-3]
        line = f"{ts} {self.msg_name} {self.source}->{self.destination_str} {self.service}"
        if self.payload_hex:
            line += f": {self.payload_hex}"
        if self.confirm_error:
            line += " (negative confirmation)"
        return line


class TelegramMonitor:
    """Formats frames received from one link and counts them.

    Args:
        group_only: Ignore frames to individual addresses
        on_entry: Callback fn(entry) for every recorded entry
    """

    def __init__(
        self,
        group_only: bool = False,
        on_entry: Optional[Callable[[TelegramEntry], None]] = None,
    ):
        self.group_only = group_only
        self.on_entry = on_entry
        self._lock = threading.Lock()
        self._total_count = 0
        self._counts: dict[str, int] = {}
        self._negative = 0
        self._link = None

    def attach(self, link):
        self._link = link
        link.add_listener(self.record_cemi)

    def detach(self):
        if self._link is not None:
            self._link.remove_listener(self.record_cemi)
            self._link = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.detach()

    def record_cemi(self, cemi: CEMIFrame) -> Optional[TelegramEntry]:
        return self.record(TelegramEntry.from_cemi(cemi))

    def record(self, entry: TelegramEntry) -> Optional[TelegramEntry]:
        """Count an entry and pass it on; returns None if filtered."""
        if self.group_only and not entry.is_group:
            return None
        with self._lock:
            self._total_count += 1
            self._counts[entry.msg_name] = self._counts.get(entry.msg_name, 0) + 1
            if entry.confirm_error:
                self._negative += 1
        if self.on_entry is not None:
            self.on_entry(entry)
        return entry

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "total_recorded": self._total_count,
                "by_message": dict(self._counts),
                "negative_confirmations": self._negative,
            }


class NetworkMonitor:
    """Raw cEMI frames as received, with the decoded entry where parsing works.

    on_frame is called as fn(raw, entry); entry is None for frames that are not
    L_Data (bus monitor indications, property services of the interface) or
    fail to parse.
    """

    def __init__(self, on_frame: Callable[[bytes, Optional[TelegramEntry]], None]):
        self.on_frame = on_frame
        self._link = None
        self.frame_count = 0
        self.undecoded_count = 0

    def attach(self, link):
        self._link = link
        link.add_raw_listener(self.record_raw)

    def detach(self):
        if self._link is not None:
            self._link.remove_raw_listener(self.record_raw)
            self._link = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.detach()

    def record_raw(self, raw: bytes) -> Optional[TelegramEntry]:
        entry = decode_raw(raw)
        self.frame_count += 1
        if entry is None:
            self.undecoded_count += 1
        self.on_frame(bytes(raw), entry)
        return entry


def decode_raw(raw: bytes) -> Optional[TelegramEntry]:
    """Parse a raw cEMI frame; None if it is not a parseable L_Data frame."""
    try:
        cemi = CEMIFrame.from_knx(raw)
    except (IndexError, ValueError, XKNXException) as e:
        logger.debug("undecoded cEMI %s: %s", bytes(raw).hex(), e)
        return None
    if not isinstance(cemi.data, CEMILData):
        return None
    return TelegramEntry.from_cemi(cemi)
