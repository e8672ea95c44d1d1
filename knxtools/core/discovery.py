"""KNXnet/IP discovery client.

Search (multicast or interface scoped), polling of partial results, unicast
search, description, and search followed by concurrent per-result description.

A search session is one producer/consumer channel: the receive threads of the
session's sockets append parsed results, callers drain them by polling
(is_searching / get_search_responses) or by blocking (search). A watcher thread
closes the window on timeout, stop_search or the shared cancel event.
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Callable, NamedTuple, Optional

from xknx.io import DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT
from xknx.knxip import (
    HPAI,
    SRP,
    DescriptionRequest,
    KNXIPFrame,
    KNXIPServiceType,
    SearchRequest,
    SearchRequestExtended,
)

from ..errors import (
    KnxTimeoutError,
    LinkError,
    MalformedResponseError,
    OperationCancelled,
    SearchInProgressError,
)
from ..knxip import dib, netif
from ..knxip.dib import SEARCH_RESPONSES, DiscoveryResult
from ..knxip.netif import NetInterface
from ..knxip.sockets import DiscoverySocket

logger = logging.getLogger("knxtools.discovery")

DESCRIPTION_TIMEOUT = 2.0
WAIT_SLICE = 0.05


class SearchState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    COMPLETED = "completed"
    CANCELED = "canceled"


class DescriptionOutcome(NamedTuple):
    """Search result paired with its follow-up description (or the failure)."""

    result: DiscoveryResult
    target: tuple[str, int]
    description: Optional[DiscoveryResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Discoverer:
    """Discovery client.

    Args:
        local_host: Local address used for unicast requests (default: routed)
        local_port: Local UDP port for unicast responses (0 = ephemeral)
        nat: Announce the wildcard endpoint so servers answer the observed sender
        mcast_response: Ask servers to answer searches via multicast
        srps: Search request parameters; any SRP makes the search extended
        cancel: Shared event; once set, windows close and blocking calls abort
        socket_factory: fn(interface, local_port, mcast_response, nat, on_datagram)
        interfaces: fn(include_loopback=False) → list of NetInterface
        route_lookup: fn(remote_host) → local IPv4 address
        description_timeout: Timeout of each follow-up description request
    """

    def __init__(
        self,
        local_host: Optional[str] = None,
        local_port: int = 0,
        nat: bool = False,
        mcast_response: bool = True,
        srps: tuple[SRP, ...] | list[SRP] = (),
        cancel: Optional[threading.Event] = None,
        socket_factory: Callable = DiscoverySocket,
        interfaces: Callable = netif.list_interfaces,
        route_lookup: Callable = netif.local_address_for,
        description_timeout: float = DESCRIPTION_TIMEOUT,
    ):
        self.local_host = local_host
        self.local_port = local_port
        self.nat = nat
        self.mcast_response = mcast_response
        self.srps = tuple(srps)
        self.cancel = cancel or threading.Event()
        self.description_timeout = description_timeout
        self._socket_factory = socket_factory
        self._interfaces = interfaces
        self._route_lookup = route_lookup

        self._lock = threading.Lock()
        self._state = SearchState.IDLE
        self._accepting = False
        self._results: list[DiscoveryResult] = []
        self._errors: list[MalformedResponseError] = []
        self._seen: set = set()
        self._sockets: list = []
        self._stop = threading.Event()
        self._watcher: Optional[threading.Thread] = None
        self._started = 0.0

    # ------------------------------------------------------------------
    # Search session
    # ------------------------------------------------------------------

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def errors(self) -> list[MalformedResponseError]:
        """Malformed responses received during the last search."""
        with self._lock:
            return list(self._errors)

    def start_search(
        self,
        timeout: float,
        interface: str | NetInterface | None = None,
        with_description: bool = False,
    ) -> list[DiscoveryResult]:
        """Open a search window of `timeout` seconds.

        Returns immediately unless with_description is set, in which case it
        blocks until the window closes and returns the complete result list.
        """
        with self._lock:
            if self._state is SearchState.SEARCHING:
                raise SearchInProgressError()
            self._results = []
            self._errors = []
            self._seen = set()
            self._stop.clear()
            self._state = SearchState.SEARCHING
            self._accepting = True

        sockets = []
        try:
            for iface in self._select_interfaces(interface):
                sock = self._socket_factory(
                    iface,
                    local_port=0 if self.mcast_response else self.local_port,
                    mcast_response=self.mcast_response,
                    nat=self.nat,
                    on_datagram=self._session_receiver(iface),
                )
                sockets.append(sock)
                sock.send(self._search_request(sock), (DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT))
                logger.info("search on %s (%s)", iface.address, iface.name)
        except BaseException:
            for sock in sockets:
                sock.close()
            with self._lock:
                self._accepting = False
                self._state = SearchState.IDLE
            raise

        self._sockets = sockets
        self._started = time.monotonic()
        self._watcher = threading.Thread(
            target=self._watch, args=(sockets, self._started + timeout),
            name="knx-search-window", daemon=True,
        )
        self._watcher.start()
        if with_description:
            self.wait()
            return self.get_search_responses()
        return []

    def is_searching(self) -> bool:
        return self._state is SearchState.SEARCHING

    def get_search_responses(self) -> list[DiscoveryResult]:
        """Results received so far, in arrival order."""
        with self._lock:
            return list(self._results)

    def stop_search(self):
        """Close the search window early; collected results stay available."""
        self._stop.set()
        self.wait()

    def wait(self):
        """Block until the current search window is closed."""
        watcher = self._watcher
        if watcher is not None and watcher is not threading.current_thread():
            watcher.join()

    def search(
        self, timeout: float, interface: str | NetInterface | None = None
    ) -> list[DiscoveryResult]:
        """Blocking search: open the window, wait for it to close, return all results."""
        return self.start_search(timeout, interface, with_description=True)

    def close(self):
        self.stop_search()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _select_interfaces(self, interface) -> list[NetInterface]:
        if isinstance(interface, NetInterface):
            return [interface]
        if interface:
            for iface in self._interfaces(include_loopback=True):
                if interface in (iface.name, iface.address):
                    return [iface]
            raise LinkError(f"network interface {interface!r} not found")
        if self.local_host:
            return [NetInterface(self._interface_name(self.local_host), self.local_host)]
        found = self._interfaces()
        if not found:
            raise LinkError("no IPv4 network interface available for search")
        return found

    def _interface_name(self, address: str) -> str:
        for iface in self._interfaces(include_loopback=True):
            if iface.address == address:
                return iface.name
        return ""

    def _search_request(self, sock) -> bytes:
        endpoint = HPAI(*sock.hpai)
        if self.srps:
            body = SearchRequestExtended(discovery_endpoint=endpoint, srps=list(self.srps))
        else:
            body = SearchRequest(discovery_endpoint=endpoint)
        return KNXIPFrame.init_from_body(body).to_knx()

    def _session_receiver(self, iface: NetInterface) -> Callable:
        def on_datagram(data: bytes, addr: tuple):
            self._on_search_datagram(iface, data, addr)

        return on_datagram

    def _on_search_datagram(self, iface: NetInterface, data: bytes, addr: tuple):
        # The same response can arrive on several interfaces; each counts
        key = (iface.name, iface.address, addr[0], addr[1], data)
        with self._lock:
            if not self._accepting or key in self._seen:
                return
            self._seen.add(key)
        if dib.service_type(data) not in SEARCH_RESPONSES:
            return
        try:
            result = dib.search_result(
                dib.decode_frame(data, addr),
                local_address=iface.address,
                interface=iface.name,
                remote_endpoint=(addr[0], addr[1]),
            )
        except MalformedResponseError as e:
            logger.warning("malformed search response from %s:%d: %s", addr[0], addr[1], e)
            with self._lock:
                self._errors.append(e)
            return
        with self._lock:
            if self._accepting:
                self._results.append(result)
                logger.debug("search response %d from %s:%d", len(self._results), *addr)

    def _watch(self, sockets: list, deadline: float):
        canceled = False
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if self._stop.wait(min(WAIT_SLICE, remaining)):
                canceled = True
                break
            if self.cancel.is_set():
                canceled = True
                break
        with self._lock:
            self._accepting = False
        for sock in sockets:
            sock.close()
        with self._lock:
            self._state = SearchState.CANCELED if canceled else SearchState.COMPLETED
            count = len(self._results)
        logger.debug(
            "search %s after %.1f s with %d responses",
            self._state.value, time.monotonic() - self._started, count,
        )

    # ------------------------------------------------------------------
    # Single-target requests
    # ------------------------------------------------------------------

    def search_unicast(
        self, control_endpoint: tuple[str, int], timeout: float
    ) -> DiscoveryResult:
        """Search request sent directly to a known control endpoint.

        Raises KnxTimeoutError naming the endpoint if nobody answers in time.
        """
        iface = self._interface_towards(control_endpoint[0])
        frame, addr = self._request(
            iface, self._search_request, control_endpoint, SEARCH_RESPONSES, timeout, "search"
        )
        return dib.search_result(
            frame, local_address=iface.address, interface=iface.name, remote_endpoint=addr
        )

    def get_description(
        self, host: str, timeout: float, port: int = DEFAULT_MCAST_PORT
    ) -> DiscoveryResult:
        """Unicast description request to host:port."""
        return self._describe(self._interface_towards(host), (host, port), timeout)

    def _describe(
        self, iface: NetInterface, target: tuple[str, int], timeout: float
    ) -> DiscoveryResult:
        def build(sock):
            body = DescriptionRequest(control_endpoint=HPAI(*sock.hpai))
            return KNXIPFrame.init_from_body(body).to_knx()

        frame, addr = self._request(
            iface,
            build,
            target,
            (KNXIPServiceType.DESCRIPTION_RESPONSE,),
            timeout,
            "description",
        )
        return dib.description_result(
            frame, local_address=iface.address, interface=iface.name, remote_endpoint=addr
        )

    def _interface_towards(self, host: str) -> NetInterface:
        address = self.local_host or self._route_lookup(host)
        return NetInterface(self._interface_name(address), address)

    def _request(self, iface, build, target, expected, timeout, what):
        """Send one request from a fresh socket and wait for the first matching reply."""
        replies: queue.Queue = queue.Queue()
        sock = self._socket_factory(
            iface,
            local_port=self.local_port,
            mcast_response=False,
            nat=self.nat,
            on_datagram=lambda data, addr: replies.put((data, addr)),
        )
        try:
            sock.send(build(sock), target)
            deadline = time.monotonic() + timeout
            while True:
                if self.cancel.is_set():
                    raise OperationCancelled(f"{what} request to {target[0]}:{target[1]} canceled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise KnxTimeoutError(
                        f"{what} request to {target[0]}:{target[1]}: "
                        f"no response within {timeout:g} s",
                        target=target,
                        timeout=timeout,
                    )
                try:
                    data, addr = replies.get(timeout=min(WAIT_SLICE, remaining))
                except queue.Empty:
                    continue
                service_type = dib.service_type(data)
                if service_type is None:
                    raise MalformedResponseError(
                        f"{what} response from {addr[0]}: not a KNXnet/IP frame"
                    )
                if service_type in expected:
                    return dib.decode_frame(data, addr), (addr[0], addr[1])
        finally:
            sock.close()

    # ------------------------------------------------------------------
    # Search with description
    # ------------------------------------------------------------------

    def search_with_description(
        self,
        timeout: float,
        interface: str | NetInterface | None = None,
        on_result: Optional[Callable[[DescriptionOutcome], None]] = None,
    ) -> list[DescriptionOutcome]:
        """Search to completion, then describe every distinct result concurrently.

        Each follow-up runs on its own worker with description_timeout and a
        socket on the interface its search result arrived on. A failing
        endpoint is reported in its outcome; the others are unaffected.
        on_result is called from the calling thread as outcomes complete.
        """
        results = self.start_search(timeout, interface, with_description=True)
        distinct: list[DiscoveryResult] = []
        for r in results:
            if not any(r.same_endpoint(d) for d in distinct):
                distinct.append(r)
        if not distinct:
            return []

        outcomes: list[Optional[DescriptionOutcome]] = [None] * len(distinct)
        with ThreadPoolExecutor(
            max_workers=len(distinct), thread_name_prefix="knx-describe"
        ) as pool:
            futures = {
                pool.submit(self._describe_result, r): i for i, r in enumerate(distinct)
            }
            for future in as_completed(futures):
                outcome = future.result()
                outcomes[futures[future]] = outcome
                if on_result is not None:
                    on_result(outcome)
        return outcomes

    def _describe_result(self, result: DiscoveryResult) -> DescriptionOutcome:
        target = result.description_target()
        iface = NetInterface(result.interface or "", result.local_address)
        try:
            description = self._describe(iface, target, self.description_timeout)
        except Exception as e:
            logger.debug("description of %s:%d failed: %s", target[0], target[1], e)
            return DescriptionOutcome(result, target, error=e)
        return DescriptionOutcome(result, target, description=description)
