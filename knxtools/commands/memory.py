"""memory commands -- read and write device memory."""

import click

from ..core.management import ManagementClient
from ..formatting import format_hex, format_hex_dump, print_json
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options
from .properties import parse_hex_arg

MEMORY_END = 0x10000


def parse_start(text: str) -> int:
    """Memory address, decimal or 0x-prefixed hex."""
    try:
        start = int(text, 0)
    except ValueError:
        raise click.BadParameter(f"invalid memory address {text!r}", param_hint="START") from None
    if not 0 <= start < MEMORY_END:
        raise click.BadParameter(f"memory address {text} out of range", param_hint="START")
    return start


def _client(ctx: click.Context, link) -> ManagementClient:
    return ManagementClient(link, ctx.obj["settings"].response_timeout, ctx.obj["cancel"])


@click.command()
@click.argument("host")
@click.argument("device")
@click.argument("start")
@click.argument("count", type=int, required=False, default=1)
@link_options
@click.pass_context
@handle_errors
def read(ctx: click.Context, host: str, device: str, start: str, count: int, **kwargs) -> None:
    """Read COUNT bytes of DEVICE memory from START."""
    address = parse_address_arg(device)
    first = parse_start(start)
    if count < 1 or first + count > MEMORY_END:
        raise click.BadParameter(f"cannot read {count} bytes from 0x{first:04X}",
                                 param_hint="COUNT")
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        data = mc.read_memory(address, first, count)
    if ctx.obj["use_json"]:
        print_json({"device": device, "start": first, "data": data.hex()})
    else:
        click.echo(format_hex_dump(first, data))


@click.command()
@click.argument("host")
@click.argument("device")
@click.argument("start")
@click.argument("data")
@link_options
@click.option("--verify", is_flag=True, default=False,
              help="Read back and compare the written bytes.")
@click.pass_context
@handle_errors
def write(ctx: click.Context, host: str, device: str, start: str, data: str,
          verify: bool, **kwargs) -> None:
    """Write hex DATA to DEVICE memory at START."""
    address = parse_address_arg(device)
    first = parse_start(start)
    payload = parse_hex_arg(data, "DATA")
    if first + len(payload) > MEMORY_END:
        raise click.BadParameter(f"{len(payload)} bytes do not fit at 0x{first:04X}",
                                 param_hint="DATA")
    with open_link(ctx, host, pop_link_options(kwargs)) as link, _client(ctx, link) as mc:
        mc.write_memory(address, first, payload, verify=verify)
    if ctx.obj["use_json"]:
        print_json({"device": device, "start": first, "written": payload.hex()})
    else:
        click.echo(f"{device} 0x{first:04X} <- {format_hex(payload)}")


@click.group()
def memory() -> None:
    """Device memory of a KNX device."""


memory.add_command(read)
memory.add_command(write)
