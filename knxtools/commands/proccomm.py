"""read and write commands -- group value read/write with raw values."""

import click

from ..core.process import ProcessCommunicator
from ..formatting import format_hex, print_json
from .options import handle_errors, link_options, open_link, parse_group_arg, pop_link_options

_SWITCH_VALUES = {"on": 1, "true": 1, "1": 1, "off": 0, "false": 0, "0": 0}


def parse_value(text: str) -> tuple[bytes, bool]:
    """Parse a command line value → (payload, compact).

    on/off/true/false/1/0 are 1-bit values sent compact; anything else is hex
    ("0x1a2b", "1a 2b") sent after the APCI.
    """
    key = text.strip().lower()
    if key in _SWITCH_VALUES:
        return bytes([_SWITCH_VALUES[key]]), True
    digits = key.removeprefix("0x").replace(" ", "")
    try:
        payload = bytes.fromhex(digits)
    except ValueError:
        raise click.BadParameter(f"{text!r} is neither on/off nor hex", param_hint="VALUE") from None
    if not payload:
        raise click.BadParameter("empty value", param_hint="VALUE")
    return payload, False


@click.command()
@click.argument("host")
@click.argument("group_address")
@link_options
@click.option("--timeout", "-t", type=float, default=None, help="Response timeout in seconds.")
@click.pass_context
@handle_errors
def read(ctx: click.Context, host: str, group_address: str, timeout: float | None, **kwargs) -> None:
    """Read the value of GROUP_ADDRESS."""
    ga = parse_group_arg(group_address)
    settings = ctx.obj["settings"]
    with open_link(ctx, host, pop_link_options(kwargs)) as link, ProcessCommunicator(
        link, settings.response_timeout, ctx.obj["cancel"]
    ) as pc:
        value = pc.read(ga, timeout)
    if ctx.obj["use_json"]:
        print_json({"group_address": group_address, "value": value.hex()})
    else:
        click.echo(f"{group_address}: {format_hex(value)}")


@click.command()
@click.argument("host")
@click.argument("group_address")
@click.argument("value")
@link_options
@click.pass_context
@handle_errors
def write(ctx: click.Context, host: str, group_address: str, value: str, **kwargs) -> None:
    """Write VALUE (on/off or hex) to GROUP_ADDRESS."""
    ga = parse_group_arg(group_address)
    payload, compact = parse_value(value)
    settings = ctx.obj["settings"]
    with open_link(ctx, host, pop_link_options(kwargs)) as link, ProcessCommunicator(
        link, settings.response_timeout, ctx.obj["cancel"]
    ) as pc:
        pc.write(ga, payload, compact=compact)
    if ctx.obj["use_json"]:
        print_json({"group_address": group_address, "written": payload.hex()})
    else:
        click.echo(f"{group_address} <- {format_hex(payload)}")
