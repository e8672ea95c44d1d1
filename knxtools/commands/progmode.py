"""progmode command -- list or set devices in programming mode."""

import click

from ..core.management import ManagementClient
from ..formatting import print_json
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options


@click.command()
@click.argument("host")
@click.argument("mode", required=False, type=click.Choice(["on", "off"]))
@click.argument("device", required=False)
@link_options
@click.option("--once", is_flag=True, default=False, help="Query once instead of until interrupted.")
@click.pass_context
@handle_errors
def progmode(ctx: click.Context, host: str, mode: str | None, device: str | None,
             once: bool, **kwargs) -> None:
    """Show devices in programming mode, or switch DEVICE on/off.

    Without MODE the network is queried repeatedly until interrupted.
    """
    if (mode is None) != (device is None):
        raise click.UsageError("setting programming mode requires mode and KNX device address")
    address = parse_address_arg(device) if device else None
    settings = ctx.obj["settings"]
    cancel = ctx.obj["cancel"]
    use_json: bool = ctx.obj["use_json"]

    with open_link(ctx, host, pop_link_options(kwargs)) as link, ManagementClient(
        link, settings.response_timeout, cancel
    ) as mc:
        if address is not None:
            mc.set_programming_mode(address, mode == "on")
            click.echo(f"programming mode of {device} switched {mode}")
            return

        last = None
        while not cancel.is_set():
            devices = mc.read_addresses_in_progmode()
            if use_json:
                print_json([str(a) for a in devices])
            elif devices != last:
                listed = ", ".join(str(a) for a in devices)
                click.echo(f"Device(s) in programming mode: {listed or 'none'}")
            last = devices
            if once:
                break
