"""Local IPv4 network interface lookup."""

import logging
import socket
from typing import NamedTuple

import psutil

from ..errors import LinkError

logger = logging.getLogger("knxtools.netif")


class NetInterface(NamedTuple):
    name: str
    address: str
    netmask: str | None = None


def list_interfaces(include_loopback: bool = False) -> list[NetInterface]:
    """Return every up interface with an IPv4 address (one entry per address)."""
    stats = psutil.net_if_stats()
    found = []
    for ifname, addrs in psutil.net_if_addrs().items():
        st = stats.get(ifname)
        if st is not None and not st.isup:
            continue
        for a in addrs:
            if a.family != socket.AF_INET:
                continue
            if not include_loopback and a.address.startswith("127."):
                continue
            found.append(NetInterface(ifname, a.address, a.netmask))
    logger.debug("IPv4 interfaces: %s", ", ".join(f"{i.name}={i.address}" for i in found))
    return found


def resolve_interface(name_or_address: str) -> NetInterface:
    """Find an interface by name or by one of its IPv4 addresses.

    Raises LinkError if nothing matches.
    """
    for iface in list_interfaces(include_loopback=True):
        if name_or_address in (iface.name, iface.address):
            return iface
    raise LinkError(f"network interface {name_or_address!r} not found")


def local_address_for(remote_host: str) -> str:
    """Local IPv4 address the OS routes to remote_host.

    A connected UDP socket sends nothing; it only selects the route.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        try:
            s.connect((remote_host, 9))
            return s.getsockname()[0]
        except OSError as e:
            raise LinkError(f"no route to {remote_host}: {e}") from e
