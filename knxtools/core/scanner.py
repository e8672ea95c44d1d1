"""Individual address space scanner.

Probes area.line.device addresses with existence checks. Within one line a
sliding window of probes is in flight at once; results are handed to the
callback strictly in ascending address order, as soon as every lower address
of the line is settled.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from xknx.telegram import IndividualAddress

from ..errors import OperationCancelled

logger = logging.getLogger("knxtools.scanner")

DEFAULT_WINDOW = 8
WAIT_SLICE = 0.05
DEVICES_PER_LINE = 256


class ScanRange(BaseModel):
    """area[.line[.device]]; no line means lines 0..15, a device means one check."""

    model_config = ConfigDict(frozen=True)

    area: int = Field(ge=0, le=15)
    line: Optional[int] = Field(default=None, ge=0, le=15)
    device: Optional[int] = Field(default=None, ge=0, le=255)

    @model_validator(mode="after")
    def _device_needs_line(self):
        if self.device is not None and self.line is None:
            raise ValueError("a device number requires area and line")
        return self

    @classmethod
    def parse(cls, text: str) -> "ScanRange":
        """Parse "1", "1.1" or "1.1.50". Raises ValueError."""
        parts = text.strip().split(".")
        if not 1 <= len(parts) <= 3:
            raise ValueError(f"invalid scan range {text!r}, expected area[.line[.device]]")
        try:
            numbers = [int(p) for p in parts]
        except ValueError:
            raise ValueError(f"invalid scan range {text!r}") from None
        return cls(**dict(zip(("area", "line", "device"), numbers)))

    @property
    def is_single(self) -> bool:
        return self.device is not None

    @property
    def address(self) -> IndividualAddress:
        return IndividualAddress(f"{self.area}.{self.line}.{self.device}")

    def lines(self) -> list[int]:
        return [self.line] if self.line is not None else list(range(16))

    def __str__(self) -> str:
        return ".".join(str(p) for p in (self.area, self.line, self.device) if p is not None)


class AddressScanner:
    """Args:
    management: Client providing is_address_occupied(address) → bool
    window: Maximum number of probes in flight
    cancel: Shared event; once set, no further probes are issued
    """

    def __init__(
        self,
        management,
        window: int = DEFAULT_WINDOW,
        cancel: Optional[threading.Event] = None,
    ):
        if window < 1:
            raise ValueError("scan window must be at least 1")
        self.management = management
        self.window = window
        self.cancel = cancel or threading.Event()

    def is_address_occupied(self, address: IndividualAddress) -> bool:
        if self.cancel.is_set():
            raise OperationCancelled(f"check of {address} canceled")
        return self.management.is_address_occupied(address)

    def scan_network_devices(
        self, area: int, line: int, on_found: Optional[Callable[[IndividualAddress], None]] = None
    ) -> list[IndividualAddress]:
        """Probe area.line.0 … area.line.255; returns the occupied addresses.

        Raises OperationCancelled (with .partial) on cancellation; link errors
        abort the scan and propagate.
        """
        if not (0 <= area <= 15 and 0 <= line <= 15):
            raise ValueError(f"area and line must be 0..15, got {area}.{line}")

        found: list[IndividualAddress] = []
        addresses = iter(
            IndividualAddress(f"{area}.{line}.{device}")
            for device in range(DEVICES_PER_LINE)
        )
        pending: deque = deque()
        executor = ThreadPoolExecutor(max_workers=self.window, thread_name_prefix="knx-scan")
        try:
            while True:
                if self.cancel.is_set():
                    raise OperationCancelled(f"scan of {area}.{line} canceled", partial=found)
                while len(pending) < self.window:
                    address = next(addresses, None)
                    if address is None:
                        break
                    pending.append(
                        (address, executor.submit(self.management.is_address_occupied, address))
                    )
                if not pending:
                    break

                address, future = pending[0]
                try:
                    occupied = future.result(timeout=WAIT_SLICE)
                except FutureTimeout:
                    continue
                except OperationCancelled:
                    raise OperationCancelled(
                        f"scan of {area}.{line} canceled", partial=found
                    ) from None
                pending.popleft()
                if occupied:
                    logger.info("found %s", address)
                    found.append(address)
                    if on_found is not None:
                        on_found(address)
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return found

    def scan(
        self,
        scan_range: ScanRange,
        on_found: Optional[Callable[[IndividualAddress], None]] = None,
        on_line: Optional[Callable[[int, int], None]] = None,
    ) -> list[IndividualAddress]:
        """Scan a single address, one line, or all lines of an area (sequentially)."""
        if scan_range.is_single:
            address = scan_range.address
            if not self.is_address_occupied(address):
                return []
            if on_found is not None:
                on_found(address)
            return [address]

        found: list[IndividualAddress] = []
        for line in scan_range.lines():
            if on_line is not None:
                on_line(scan_range.area, line)
            try:
                found += self.scan_network_devices(scan_range.area, line, on_found)
            except OperationCancelled as e:
                raise OperationCancelled(str(e), partial=found + e.partial) from None
        return found
