"""property commands -- read, write, describe and scan interface object properties."""

import click

from ..core.management import ManagementClient
from ..formatting import (
    format_hex,
    format_property_description,
    print_json,
    property_description_to_dict,
)
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options

MAX_ELEMENTS = 15


def parse_hex_arg(text: str, param_hint: str = "VALUE") -> bytes:
    digits = text.strip().lower().removeprefix("0x").replace(" ", "").replace(":", "")
    try:
        data = bytes.fromhex(digits)
    except ValueError:
        raise click.BadParameter(f"{text!r} is not hex", param_hint=param_hint) from None
    if not data:
        raise click.BadParameter("empty value", param_hint=param_hint)
    return data


def _check_count(count: int):
    if not 1 <= count <= MAX_ELEMENTS:
        raise click.BadParameter(f"count must be 1..{MAX_ELEMENTS}", param_hint="--count")


def _element_options(fn):
    fn = click.option("--count", type=int, default=1, show_default=True,
                      help="Number of elements.")(fn)
    fn = click.option("--start", type=int, default=1, show_default=True,
                      help="First element.")(fn)
    return fn


def _client(ctx: click.Context, link) -> ManagementClient:
    return ManagementClient(link, ctx.obj["settings"].response_timeout, ctx.obj["cancel"])


@click.command()
@click.argument("host")
@click.argument("device")
@click.argument("object_index", type=int)
@click.argument("pid", type=int)
@link_options
@_element_options
@click.pass_context
@handle_errors
def get(ctx: click.Context, host: str, device: str, object_index: int, pid: int,
        start: int, count: int, **kwargs) -> None:
    """Read property PID of interface object OBJECT_INDEX in DEVICE."""
    address = parse_address_arg(device)
    _check_count(count)
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        value = mc.read_property(address, object_index, pid, start, count)
    if ctx.obj["use_json"]:
        print_json({"device": device, "object_index": object_index, "pid": pid, "value": value.hex()})
    else:
        click.echo(format_hex(value))


@click.command("set")
@click.argument("host")
@click.argument("device")
@click.argument("object_index", type=int)
@click.argument("pid", type=int)
@click.argument("value")
@link_options
@_element_options
@click.pass_context
@handle_errors
def set_(ctx: click.Context, host: str, device: str, object_index: int, pid: int,
         value: str, start: int, count: int, **kwargs) -> None:
    """Write hex VALUE to property PID of interface object OBJECT_INDEX in DEVICE.

    VALUE holds COUNT elements of equal size.
    """
    address = parse_address_arg(device)
    _check_count(count)
    data = parse_hex_arg(value)
    if len(data) % count:
        raise click.BadParameter(f"{len(data)} bytes do not split into {count} elements",
                                 param_hint="VALUE")
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        echoed = mc.write_property(address, object_index, pid, data, start, count)
    if ctx.obj["use_json"]:
        print_json({"device": device, "object_index": object_index, "pid": pid,
                    "written": data.hex(), "response": echoed.hex()})
    else:
        click.echo(f"{device} OI {object_index} PID {pid} <- {format_hex(data)}")


@click.command()
@click.argument("host")
@click.argument("device")
@click.argument("object_index", type=int)
@click.argument("pid", type=int, required=False, default=0)
@link_options
@click.option("--index", type=int, default=0, show_default=True,
              help="Property index, used when PID is omitted.")
@click.pass_context
@handle_errors
def desc(ctx: click.Context, host: str, device: str, object_index: int, pid: int,
         index: int, **kwargs) -> None:
    """Describe property PID (or the property at --index) of OBJECT_INDEX in DEVICE."""
    address = parse_address_arg(device)
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        description = mc.read_property_description(address, object_index, pid, index)
    if ctx.obj["use_json"]:
        print_json(property_description_to_dict(description))
    else:
        click.echo(format_property_description(description))


@click.command()
@click.argument("host")
@click.argument("device")
@link_options
@click.pass_context
@handle_errors
def scan(ctx: click.Context, host: str, device: str, **kwargs) -> None:
    """List every interface object of DEVICE with its property descriptions."""
    address = parse_address_arg(device)
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        objects = mc.scan_properties(address)
    if ctx.obj["use_json"]:
        print_json(
            [
                {
                    "object_index": obj.object_index,
                    "object_type": obj.object_type,
                    "properties": [property_description_to_dict(p) for p in obj.properties],
                }
                for obj in objects
            ]
        )
        return
    for obj in objects:
        click.echo(f"Object {obj.object_index} (type {obj.object_type})")
        for description in obj.properties:
            click.echo(f"  {format_property_description(description)}")


@click.group("property")
def property_group() -> None:
    """Interface object properties of a KNX device."""


property_group.add_command(get)
property_group.add_command(set_)
property_group.add_command(desc)
property_group.add_command(scan)
