"""Shared click options and link handling for the link-based commands."""

import functools
import logging
import sys

import click
from xknx.exceptions import CouldNotParseAddress
from xknx.telegram import GroupAddress, IndividualAddress

from ..config import LinkConfig
from ..core.connection import new_link
from ..errors import KnxToolsError, OperationCancelled
from ..formatting import print_error

logger = logging.getLogger("knxtools.cli")

_LINK_OPTIONS = [
    click.option("--port", "-p", type=int, default=None, help="KNXnet/IP server port [3671]."),
    click.option("--localhost", default=None, help="Local IP address to bind."),
    click.option("--localport", type=int, default=None, help="Local UDP port."),
    click.option("--nat", "-n", is_flag=True, default=False, help="Use NAT aware connection."),
    click.option("--tcp", is_flag=True, default=False, help="Tunnel over TCP instead of UDP."),
    click.option("--routing", is_flag=True, default=False, help="Use KNX IP routing."),
    click.option("--ft12", default=None, metavar="PORT", help="FT1.2 serial port."),
    click.option("--usb", default=None, metavar="DEVICE", help="KNX USB interface."),
    click.option("--tpuart", default=None, metavar="PORT", help="TP-UART serial port."),
    click.option("--medium", "-m", default=None, help="KNX medium: tp1, pl110, rf, knxip [tp1]."),
    click.option("--domain", default=None, help="Domain address (PL110 or RF), hex."),
    click.option("--knx-address", "-k", default=None, help="Local KNX individual address."),
    click.option("--group-key", default=None, help="Secure routing group key, hex."),
    click.option("--user", type=int, default=None, help="Secure tunneling user id."),
    click.option("--user-key", default=None, help="Secure tunneling user key, hex."),
    click.option("--user-pwd", default=None, help="Secure tunneling user password."),
    click.option("--device-key", default=None, help="Device authentication key, hex."),
    click.option("--device-pwd", default=None, help="Device authentication password."),
]

LINK_OPTION_NAMES = (
    "port",
    "localhost",
    "localport",
    "nat",
    "tcp",
    "routing",
    "ft12",
    "usb",
    "tpuart",
    "medium",
    "domain",
    "knx_address",
    "group_key",
    "user",
    "user_key",
    "user_pwd",
    "device_key",
    "device_pwd",
)


def link_options(fn):
    """Decorate a command with the common link options."""
    for option in reversed(_LINK_OPTIONS):
        fn = option(fn)
    return fn


def pop_link_options(kwargs: dict) -> dict:
    return {name: kwargs.pop(name, None) for name in LINK_OPTION_NAMES}


def build_link_config(ctx: click.Context, host: str, options: dict) -> LinkConfig:
    """Merge CLI options over the config file's link section."""
    merged = dict(ctx.obj["config"].link)
    merged["host"] = host
    merged.update({k: v for k, v in options.items() if v is not None and v is not False})
    return LinkConfig.from_options(merged)


def parse_address_arg(value: str) -> IndividualAddress:
    try:
        return IndividualAddress(value)
    except CouldNotParseAddress:
        raise click.BadParameter(f"invalid KNX individual address {value!r}") from None


def parse_group_arg(value: str) -> GroupAddress:
    try:
        return GroupAddress(value)
    except CouldNotParseAddress:
        raise click.BadParameter(f"invalid KNX group address {value!r}") from None


def open_link(ctx: click.Context, host: str, options: dict):
    config = build_link_config(ctx, host, options)
    return new_link(config, ctx.obj.get("cancel"))


def handle_errors(fn):
    """Report KnxToolsError as "Error: ..." (or JSON) and exit 1.

    Cancellation is not an error: the command stops and exits 0.
    """

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        ctx = click.get_current_context()
        try:
            return fn(*args, **kwargs)
        except OperationCancelled as e:
            logger.info("%s", e)
        except KnxToolsError as e:
            print_error(str(e), ctx.obj["use_json"])
            sys.exit(1)

    return wrapper
