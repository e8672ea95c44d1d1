"""Process communication: group value read and write with raw payloads."""

import asyncio
import logging
import threading
from typing import Optional

from xknx.dpt import DPTArray, DPTBinary
from xknx.telegram import GroupAddress, Telegram, TelegramDirection
from xknx.telegram.apci import GroupValueRead, GroupValueResponse, GroupValueWrite

from ..errors import ConfigurationError, KnxTimeoutError
from .management import translate_errors

logger = logging.getLogger("knxtools.process")

COMPACT_MAX = 0x3F


def encode_value(payload: bytes, compact: bool):
    """Raw bytes → xknx payload value.

    compact=True merges values of up to 6 bits into the APCI (DPT 1-3).
    """
    if compact:
        if len(payload) != 1 or payload[0] > COMPACT_MAX:
            raise ConfigurationError(
                f"compact values are a single byte up to 0x{COMPACT_MAX:02X}, got {payload.hex()}"
            )
        return DPTBinary(payload[0])
    return DPTArray(payload)


def decode_value(value) -> bytes:
    if isinstance(value, DPTBinary):
        return bytes([value.value])
    return bytes(value.value)


class ProcessCommunicator:
    """Group communication over a link.

    Payloads are raw bytes. compact=True sends values of up to 6 bits merged
    into the APCI (DPT 1-3); otherwise the payload follows the APCI.
    """

    def __init__(self, link, response_timeout: float = 3.0, cancel: Optional[threading.Event] = None):
        self.link = link
        self.response_timeout = response_timeout
        self.cancel = cancel or link.cancel

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def read(self, group_address: GroupAddress, timeout: Optional[float] = None) -> bytes:
        """GroupValue_Read → payload of the first GroupValue_Response."""
        timeout = timeout or self.response_timeout
        group_address = GroupAddress(group_address)
        with translate_errors(group_address):
            payload = self.link.run(self._read(group_address, timeout))
        logger.debug("%s → %s", group_address, payload.hex())
        return payload

    async def _read(self, group_address: GroupAddress, timeout: float) -> bytes:
        xknx = self.link.xknx
        response: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_telegram(telegram: Telegram):
            if (
                telegram.direction is TelegramDirection.INCOMING
                and isinstance(telegram.payload, GroupValueResponse)
                and not response.done()
            ):
                response.set_result(telegram.payload.value)

        callback = xknx.telegram_queue.register_telegram_received_cb(
            on_telegram, group_addresses=[group_address]
        )
        try:
            await xknx.cemi_handler.send_telegram(
                Telegram(destination_address=group_address, payload=GroupValueRead())
            )
            try:
                async with asyncio.timeout(timeout):
                    value = await response
            except TimeoutError:
                raise KnxTimeoutError(
                    f"no response from {group_address} within {timeout:g} s",
                    target=group_address,
                    timeout=timeout,
                ) from None
        finally:
            xknx.telegram_queue.unregister_telegram_received_cb(callback)
        return decode_value(value)

    def write(self, group_address: GroupAddress, payload: bytes, compact: bool = False):
        """GroupValue_Write; returns once the link confirmed the frame."""
        group_address = GroupAddress(group_address)
        telegram = Telegram(
            destination_address=group_address,
            payload=GroupValueWrite(encode_value(payload, compact)),
        )
        with translate_errors(group_address):
            self.link.run(self.link.xknx.cemi_handler.send_telegram(telegram))
