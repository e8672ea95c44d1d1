"""Link provisioning: LinkConfig → open KNX network link.

The link runs an xknx instance on a private asyncio loop in a background
thread. Tool code stays synchronous and calls `KnxLink.run()` with a
coroutine; the call returns its result or raises, and gives up early when the
shared cancel event is set.

    with new_link(config, cancel) as link:
        link.run(procedures.nm_individual_address_check(link.xknx, "1.1.5"))
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from typing import Callable, Optional

from xknx import XKNX
from xknx.cemi import CEMIFrame, CEMIHandler, CEMILData, CEMIMessageCode
from xknx.core import XknxConnectionState
from xknx.exceptions import (
    CommunicationError,
    ConfirmationError,
    InvalidSecureConfiguration,
    XKNXException,
)
from xknx.io import ConnectionConfig, ConnectionType, SecureConfig
from xknx.telegram import IndividualAddress, Telegram

from ..config import LinkConfig, TransportKind
from ..errors import (
    ConfigurationError,
    KnxTimeoutError,
    LinkClosedError,
    LinkConnectError,
    LinkError,
    OperationCancelled,
)

logger = logging.getLogger("knxtools.connection")

WAIT_SLICE = 0.05
CLEANUP_GRACE = 1.0
STOP_TIMEOUT = 5.0


def check_supported(config: LinkConfig):
    """Reject configurations this link layer cannot serve, before any I/O."""
    config.check_combination()
    if config.transport.is_serial:
        raise ConfigurationError(
            f"{config.transport.value} transport ({config.device}) is not supported, "
            "use KNXnet/IP tunneling or routing"
        )
    security = config.security
    if security.user_key is not None or security.device_key is not None:
        raise ConfigurationError(
            "secure tunneling derives its keys from passwords, "
            "use --user-pwd and --device-pwd instead of raw keys"
        )
    if security.user_password is not None and security.user_id is None:
        raise ConfigurationError("secure tunneling requires --user")
    if config.domain is not None:
        logger.warning(
            "domain address %s is not sent over KNXnet/IP, ignoring", config.domain.hex()
        )


def connection_config(config: LinkConfig) -> ConnectionConfig:
    """Map a LinkConfig onto the xknx connection settings."""
    check_supported(config)
    security = config.security
    individual_address = (
        IndividualAddress(config.knx_address) if config.knx_address is not None else None
    )
    if config.transport is TransportKind.ROUTING:
        secure = None
        connection_type = ConnectionType.ROUTING
        if security.group_key is not None:
            connection_type = ConnectionType.ROUTING_SECURE
            secure = SecureConfig(backbone_key=security.group_key.hex())
        return ConnectionConfig(
            connection_type=connection_type,
            individual_address=individual_address,
            local_ip=config.local_host,
            multicast_group=config.host,
            multicast_port=config.port,
            auto_reconnect=False,
            secure_config=secure,
        )

    secure = None
    connection_type = ConnectionType.TUNNELING_TCP if config.tcp else ConnectionType.TUNNELING
    if security.user_password is not None:
        connection_type = ConnectionType.TUNNELING_TCP_SECURE
        secure = SecureConfig(
            user_id=security.user_id,
            user_password=security.user_password,
            device_authentication_password=security.device_password,
        )
    return ConnectionConfig(
        connection_type=connection_type,
        individual_address=individual_address,
        local_ip=config.local_host,
        local_port=config.local_port,
        gateway_ip=config.host,
        gateway_port=config.port,
        route_back=config.nat,
        auto_reconnect=False,
        secure_config=secure,
    )


class LinkHandler(CEMIHandler):
    """cEMI handler that reports negative confirmations and feeds link listeners.

    Sends are serialized: the confirmation of one L_Data.req must not release
    the sender of another.
    """

    def __init__(self, xknx: XKNX, link: "KnxLink"):
        super().__init__(xknx)
        self.link = link
        self._send_lock = asyncio.Lock()
        self._confirm_error = False

    async def send_telegram(self, telegram: Telegram) -> None:
        async with self._send_lock:
            self._confirm_error = False
            await super().send_telegram(telegram)
            if self._confirm_error:
                raise ConfirmationError(
                    f"negative L_Data.con for {telegram.destination_address}"
                )

    def handle_raw_cemi(self, raw_cemi: bytes) -> None:
        self.link._notify_raw(raw_cemi)
        super().handle_raw_cemi(raw_cemi)

    def handle_cemi_frame(self, cemi: CEMIFrame) -> None:
        if isinstance(cemi.data, CEMILData):
            if cemi.code is CEMIMessageCode.L_DATA_CON and cemi.data.flags.confirm_error:
                self._confirm_error = True
            self.link._notify(cemi)
        super().handle_cemi_frame(cemi)


class KnxLink:
    """Open KNX network link backed by xknx.

    Args:
        config: Link settings
        cancel: Shared event; once set, waiting calls raise OperationCancelled
        interface_factory: Builds the KNXnet/IP interface for an XKNX instance,
            replacing the one xknx derives from the connection config
    """

    def __init__(
        self,
        config: LinkConfig,
        cancel: Optional[threading.Event] = None,
        interface_factory: Optional[Callable[[XKNX], object]] = None,
    ):
        self.config = config
        self.cancel = cancel or threading.Event()
        self.xknx: Optional[XKNX] = None
        self._interface_factory = interface_factory
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="knx-link", daemon=True)
        self._lock = threading.Lock()
        self._listeners: list[Callable[[CEMIFrame], None]] = []
        self._raw_listeners: list[Callable[[bytes], None]] = []
        self._started = False
        self._lost = False
        self._closed = False

    def __str__(self) -> str:
        kind = "routing" if self.config.transport is TransportKind.ROUTING else "tunneling"
        return f"KNXnet/IP {kind} {self.config.host}:{self.config.port}"

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._started and not self._lost and not self._closed

    @property
    def individual_address(self) -> IndividualAddress:
        """Source address of our frames (assigned by the tunneling server)."""
        if self.xknx is None:
            raise LinkClosedError(f"{self} is not open")
        return self.xknx.current_address

    def gateway_address(self) -> IndividualAddress:
        """Individual address of the tunneling server, from its self description."""
        try:
            info = self.run(self.xknx.knxip_interface.gateway_info())
        except CommunicationError as e:
            raise LinkError(f"{self}: self description failed: {e}") from e
        if info is None or info.individual_address is None:
            raise ConfigurationError(f"{self} did not report its KNX address, give one")
        return info.individual_address

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def open(self) -> "KnxLink":
        self._thread.start()
        try:
            self.run(self._start(), timeout=self.config.connect_timeout, check_open=False)
        except BaseException:
            self.close()
            raise
        logger.info(
            "opened %s (medium %s, local address %s)",
            self,
            self.config.medium.value,
            self.individual_address,
        )
        return self

    async def _start(self):
        self.xknx = XKNX(connection_config=connection_config(self.config))
        self.xknx.cemi_handler = LinkHandler(self.xknx, self)
        if self._interface_factory is not None:
            self.xknx.knxip_interface = self._interface_factory(self.xknx)
        self.xknx.connection_manager.register_connection_state_changed_cb(self._on_state)
        await self.xknx.start()
        self._started = True

    def _on_state(self, state: XknxConnectionState):
        if state is XknxConnectionState.DISCONNECTED and self._started and not self._closed:
            logger.warning("%s lost", self)
            self._lost = True

    def close(self):
        """Stop xknx and the loop thread. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if not self._thread.is_alive():
            self._loop.close()
            return
        try:
            asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop).result(STOP_TIMEOUT)
        except concurrent.futures.TimeoutError:
            logger.warning("%s did not stop within %.0f s", self, STOP_TIMEOUT)
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(STOP_TIMEOUT)
            if not self._thread.is_alive():
                self._loop.close()
        logger.debug("closed %s", self)

    async def _shutdown(self):
        if self.xknx is not None:
            try:
                await self.xknx.stop()
            except (XKNXException, OSError) as e:
                logger.debug("stopping %s: %s", self, e)
        current = asyncio.current_task()
        tasks = [t for t in asyncio.all_tasks() if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Running coroutines
    # ------------------------------------------------------------------

    def run(self, coro, timeout: Optional[float] = None, check_open: bool = True):
        """Run coro on the link loop and wait for its result.

        Raises OperationCancelled when the cancel event is set, KnxTimeoutError
        after `timeout` seconds and LinkClosedError if the link is gone.
        """
        if self.cancel.is_set():
            coro.close()
            raise OperationCancelled()
        if check_open and not self.is_open:
            coro.close()
            raise LinkClosedError(f"{self} is closed")
        done = threading.Event()

        async def guarded():
            try:
                return await coro
            finally:
                done.set()

        future = asyncio.run_coroutine_threadsafe(guarded(), self._loop)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not done.wait(WAIT_SLICE):
            if self.cancel.is_set():
                future.cancel()
                done.wait(CLEANUP_GRACE)
                raise OperationCancelled()
            if deadline is not None and time.monotonic() >= deadline:
                future.cancel()
                done.wait(CLEANUP_GRACE)
                raise KnxTimeoutError(f"{self}: no result within {timeout} s", timeout=timeout)
        try:
            return future.result()
        except concurrent.futures.CancelledError:
            raise OperationCancelled() from None

    # ------------------------------------------------------------------
    # Listeners (called on the link loop)
    # ------------------------------------------------------------------

    def add_listener(self, listener: Callable[[CEMIFrame], None]):
        """Register for every link-layer cEMI frame, parsed."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener):
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def add_raw_listener(self, listener: Callable[[bytes], None]):
        """Register for every cEMI frame as received, before parsing."""
        with self._lock:
            self._raw_listeners.append(listener)

    def remove_raw_listener(self, listener):
        with self._lock:
            if listener in self._raw_listeners:
                self._raw_listeners.remove(listener)

    def _notify(self, cemi: CEMIFrame):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(cemi)
            except Exception:
                logger.exception("listener failed on %s", cemi)

    def _notify_raw(self, raw: bytes):
        with self._lock:
            listeners = list(self._raw_listeners)
        for listener in listeners:
            try:
                listener(raw)
            except Exception:
                logger.exception("raw listener failed on %s", raw.hex())


def new_link(
    config: LinkConfig,
    cancel: Optional[threading.Event] = None,
    interface_factory=None,
) -> KnxLink:
    """Create and open the link described by config."""
    check_supported(config)
    link = KnxLink(config, cancel, interface_factory)
    try:
        return link.open()
    except InvalidSecureConfiguration as e:
        raise ConfigurationError(f"invalid KNX IP Secure settings: {e}") from e
    except CommunicationError as e:
        raise LinkConnectError(f"{link}: {e}") from e
    except XKNXException as e:
        raise LinkError(f"{link}: {e}") from e
    except OSError as e:
        raise LinkError(f"{link}: {e}") from e
