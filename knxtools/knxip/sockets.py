"""UDP socket with a background receive thread, used for discovery requests.

One DiscoverySocket serves one local interface. With multicast responses it
binds the KNXnet/IP port and joins the discovery group, so servers answer to
224.0.23.12:3671; otherwise it binds the interface address and servers answer
unicast to the socket's own endpoint (or, with NAT, to whatever address they
see the request coming from).
"""

import logging
import socket
import struct
import sys
import threading
from typing import Callable, Optional

from xknx.io import DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT
from xknx.knxip import KNXIPHeader

from ..errors import LinkError
from .netif import NetInterface

logger = logging.getLogger("knxtools.socket")

RECV_TIMEOUT = 0.25  # Allow periodic check of _running flag
MULTICAST_TTL = 16
# Linux delivers group traffic to every socket bound to the port unless this is off
IP_MULTICAST_ALL = getattr(socket, "IP_MULTICAST_ALL", 49)


class DiscoverySocket:
    """Args:
    interface: Local interface (name + IPv4 address) to send and receive on
    local_port: UDP port for unicast responses (0 = ephemeral)
    mcast_response: Ask servers to answer to the discovery multicast group
    nat: Put the wildcard endpoint 0.0.0.0:0 into requests
    on_datagram: Callback fn(data, (ip, port)) run on the receive thread
    """

    def __init__(
        self,
        interface: NetInterface,
        local_port: int = 0,
        mcast_response: bool = False,
        nat: bool = False,
        on_datagram: Optional[Callable] = None,
    ):
        self.interface = interface
        self.mcast_response = mcast_response
        self.nat = nat
        self.on_datagram = on_datagram

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            self._setup(local_port)
        except OSError as e:
            self._sock.close()
            raise LinkError(
                f"cannot open discovery socket on {interface.address} ({interface.name}): {e}"
            ) from e

        host, port = self._sock.getsockname()
        self.log = logger.getChild(f"{interface.address}:{port}")
        self._running = True
        self._thread = threading.Thread(
            target=self._recv_loop, name=f"knx-discovery-{port}", daemon=True
        )
        self._thread.start()

    def _setup(self, local_port: int):
        iface_ip = socket.inet_aton(self.interface.address)
        if self.mcast_response:
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            self._sock.bind(("", DEFAULT_MCAST_PORT))
            mreq = socket.inet_aton(DEFAULT_MCAST_GRP) + iface_ip
            self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            if sys.platform.startswith("linux"):
                self._sock.setsockopt(socket.IPPROTO_IP, IP_MULTICAST_ALL, 0)
        else:
            self._sock.bind((self.interface.address, local_port))
        self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_IF, iface_ip)
        self._sock.setsockopt(
            socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, struct.pack("B", MULTICAST_TTL)
        )
        self._sock.settimeout(RECV_TIMEOUT)

    @property
    def local_address(self) -> str:
        return self.interface.address

    @property
    def hpai(self) -> tuple[str, int]:
        """Endpoint to announce in requests as the response address."""
        if self.mcast_response:
            return DEFAULT_MCAST_GRP, DEFAULT_MCAST_PORT
        if self.nat:
            return "0.0.0.0", 0
        return self.interface.address, self._sock.getsockname()[1]

    @property
    def is_open(self) -> bool:
        return self._running

    def send(self, frame: bytes, addr: tuple):
        self.log.debug("→ %s: %s", addr, frame.hex())
        try:
            self._sock.sendto(frame, addr)
        except OSError as e:
            raise LinkError(f"send to {addr[0]}:{addr[1]} failed: {e}") from e

    def close(self):
        if not self._running:
            return
        self._running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=2 * RECV_TIMEOUT + 0.5)
        self._sock.close()
        self.log.debug("closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _recv_loop(self):
        while self._running:
            try:
                data, addr = self._sock.recvfrom(1024)
            except socket.timeout:
                continue
            except OSError:
                if self._running:
                    self.log.exception("Socket error")
                break

            if len(data) < KNXIPHeader.HEADERLENGTH:
                continue
            self.log.debug("← %s: %s", addr, data.hex())
            if self.on_datagram is None:
                continue
            try:
                self.on_datagram(data, addr)
            except Exception:
                self.log.exception("Error handling datagram from %s", addr)
