"""Management client: device management services over a KNX link.

Connection-oriented services run on the xknx management layer:
  T_Connect → numbered T_Data (each acknowledged by T_ACK) → T_Disconnect

Each public call opens its own transport connection and closes it again.
xknx errors are translated into the tool's error taxonomy at this boundary.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Optional

from xknx.exceptions import (
    CommunicationError,
    ConfirmationError,
    ConversionError,
    ManagementConnectionError,
    ManagementConnectionRefused,
    ManagementConnectionTimeout,
)
from xknx.management import procedures
from xknx.management.procedures import ScannedInterfaceObject
from xknx.telegram import IndividualAddress, apci

from ..errors import (
    ConfigurationError,
    DisconnectedError,
    KnxTimeoutError,
    LinkClosedError,
    ManagementError,
    MalformedResponseError,
    NegativeConfirmationError,
)

logger = logging.getLogger("knxtools.management")

MEMORY_PROGRAMMING_MODE = 0x60
DESCRIPTOR_NOT_SUPPORTED = 0x3F
PID_OBJECT_TYPE = 1


@contextmanager
def translate_errors(address):
    """Map xknx management and link exceptions onto KnxToolsError subclasses."""
    try:
        yield
    except ManagementConnectionRefused as e:
        raise DisconnectedError(address) from e
    except ManagementConnectionTimeout as e:
        raise KnxTimeoutError(f"{address}: no response ({e})", target=address) from e
    except ManagementConnectionError as e:
        cause = e.__cause__
        if isinstance(cause, ConfirmationError):
            raise NegativeConfirmationError(
                f"{address}: no link-layer confirmation", target=address
            ) from e
        if isinstance(cause, CommunicationError):
            raise LinkClosedError(f"{address}: {cause}") from e
        raise ManagementError(f"{address}: {e}") from e
    except ConfirmationError as e:
        raise NegativeConfirmationError(
            f"{address}: no link-layer confirmation", target=address
        ) from e
    except CommunicationError as e:
        raise LinkClosedError(f"{address}: {e}") from e
    except ConversionError as e:
        raise MalformedResponseError(f"{address}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


class ManagementClient:
    """Args:
    link: Open KnxLink
    response_timeout: Seconds to collect answers to broadcast requests
    cancel: Shared event; once set, waiting calls raise OperationCancelled

    Point-to-point services use the transport layer timing of the
    management layer (3 s per acknowledgement with one repetition).
    """

    def __init__(
        self,
        link,
        response_timeout: float = 3.0,
        cancel: Optional[threading.Event] = None,
    ):
        self.link = link
        self.response_timeout = response_timeout
        self.cancel = cancel or link.cancel

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def xknx(self):
        return self.link.xknx

    def _run(self, address, coro):
        with translate_errors(address):
            return self.link.run(coro)

    def _session(self, address: IndividualAddress):
        return self.xknx.management.connection(IndividualAddress(address))

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def is_address_occupied(self, address: IndividualAddress) -> bool:
        """Existence check: connect and read the device descriptor.

        Any reply, or the device closing the connection, means occupied. A
        timeout or a negative link-layer confirmation means free. Link errors
        and cancellation propagate.
        """
        address = IndividualAddress(address)
        try:
            occupied = self._run(
                address, procedures.nm_individual_address_check(self.xknx, address)
            )
        except NegativeConfirmationError as e:
            logger.debug("%s free: %s", address, e)
            return False
        except ManagementError as e:
            # A device answering with T_NAK is still there
            logger.debug("%s occupied: %s", address, e)
            return True
        if not occupied and not self.link.is_open:
            raise LinkClosedError(f"{self.link} closed while checking {address}")
        logger.debug("%s %s", address, "occupied" if occupied else "free")
        return occupied

    def read_device_descriptor(self, address, descriptor_type: int = 0) -> bytes:
        async def read():
            async with self._session(address) as conn:
                response = await conn.request(
                    apci.DeviceDescriptorRead(descriptor=descriptor_type)
                )
            return response.payload

        payload = self._run(address, read())
        if payload.descriptor == DESCRIPTOR_NOT_SUPPORTED:
            raise ManagementError(
                f"{address}: device descriptor type {descriptor_type} not supported"
            )
        return payload.value.to_bytes(2, "big")

    def read_property(
        self,
        address,
        object_index: int,
        pid: int,
        start: int = 1,
        count: int = 1,
    ) -> bytes:
        """PropertyValue_Read → raw property data."""

        async def read():
            async with self._session(address) as conn:
                return await procedures.dmp_interface_object_read_r(
                    conn, object_index, pid, count=count, start_index=start
                )

        return self._run(address, read())

    def read_properties(self, address, requests: list[tuple]) -> dict:
        """Read several (object index, pid[, count]) requests in one session.

        Results are keyed by (object index, pid). Failed reads map to the
        ManagementError raised for them.
        """

        async def read():
            values = {}
            async with self._session(address) as conn:
                for object_index, pid, *count in requests:
                    try:
                        values[(object_index, pid)] = await procedures.dmp_interface_object_read_r(
                            conn, object_index, pid, count=count[0] if count else 1
                        )
                    except (ManagementConnectionRefused, ManagementConnectionTimeout):
                        raise
                    except ManagementConnectionError as e:
                        values[(object_index, pid)] = ManagementError(f"{address}: {e}")
            return values

        return self._run(address, read())

    def find_object_index(self, address, object_type: int, max_objects: int = 32) -> int:
        """Index of the first interface object of object_type.

        Objects are enumerated by reading PID_OBJECT_TYPE until the device
        reports no further object.
        """

        async def find():
            async with self._session(address) as conn:
                for index in range(max_objects):
                    try:
                        data = await procedures.dmp_interface_object_read_r(
                            conn, index, PID_OBJECT_TYPE
                        )
                    except (ManagementConnectionRefused, ManagementConnectionTimeout):
                        raise
                    except ManagementConnectionError:
                        break
                    if int.from_bytes(data, "big") == object_type:
                        return index
            return None

        index = self._run(address, find())
        if index is None:
            raise ManagementError(f"{address}: no interface object of type {int(object_type)}")
        return index

    def write_property(
        self,
        address,
        object_index: int,
        pid: int,
        data: bytes,
        start: int = 1,
        count: int = 1,
    ) -> bytes:
        """PropertyValue_Write; returns the value the device reports back."""

        async def write():
            async with self._session(address) as conn:
                return await procedures.dmp_interface_object_write_r(
                    conn, object_index, pid, data, count=count, start_index=start
                )

        return self._run(address, write())

    def read_property_description(
        self, address, object_index: int, pid: int = 0, index: int = 0
    ) -> apci.PropertyDescriptionResponse:
        """PropertyDescription_Read by PID, or by property index when pid is 0."""

        async def read():
            async with self._session(address) as conn:
                response = await conn.request(
                    apci.PropertyDescriptionRead(
                        object_index=object_index, property_id=pid, property_index=index
                    )
                )
            return response.payload

        description = self._run(address, read())
        if description.property_id == 0:
            what = f"PID {pid}" if pid else f"property index {index}"
            raise ManagementError(f"{address}: object {object_index} has no {what}")
        return description

    def scan_properties(self, address) -> list[ScannedInterfaceObject]:
        """All interface objects of a device with their property descriptions."""

        async def scan():
            async with self._session(address) as conn:
                return await procedures.dmp_interface_object_scan_r(conn)

        return self._run(address, scan())

    def read_memory(self, address, start: int, count: int) -> bytes:
        if count < 1:
            raise ConfigurationError("memory read count must be at least 1")

        async def read():
            async with self._session(address) as conn:
                return await procedures.dmp_mem_read_r_co(conn, start, count)

        return self._run(address, read())

    def write_memory(self, address, start: int, data: bytes, verify: bool = False):
        if not data:
            raise ConfigurationError("memory write needs at least one byte")

        async def write():
            async with self._session(address) as conn:
                await procedures.dmp_mem_write_r_co(conn, start, data, verify=verify)

        self._run(address, write())

    def restart(
        self, address, erase_code: Optional[int] = None, channel: int = 0
    ) -> Optional[int]:
        """Basic restart, or master reset with erase code and channel.

        A master reset returns the process time the device announced (seconds).
        """
        if erase_code is None:
            try:
                self._run(address, procedures.dm_restart(self.xknx, address))
            except DisconnectedError as e:
                # Restarting devices drop the connection
                logger.debug("%s restarting: %s", address, e)
            return None

        response = self._run(
            address,
            procedures.dm_restart(
                self.xknx,
                address,
                master_reset=True,
                erase_code=erase_code,
                channel_number=channel,
            ),
        )
        return response.process_time

    def read_addresses_in_progmode(
        self, timeout: Optional[float] = None
    ) -> list[IndividualAddress]:
        """Broadcast IndividualAddress_Read; devices in programming mode answer."""
        timeout = timeout or self.response_timeout
        found = self._run(
            "broadcast", procedures.nm_individual_address_read(self.xknx, timeout=timeout)
        )
        return sorted(set(found), key=lambda a: a.raw)

    def set_programming_mode(self, address, on: bool):
        """Write the programming mode byte (memory 0x60, bit 0, parity in bit 7)."""
        value = 0x01 if on else 0x00
        if bin(value).count("1") % 2:
            value |= 0x80
        self.write_memory(address, MEMORY_PROGRAMMING_MODE, bytes([value]))
