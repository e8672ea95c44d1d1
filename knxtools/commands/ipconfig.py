"""ipconfig command -- show or change the IP settings of a KNXnet/IP device."""

import click

from ..core.ipconfig import ASSIGNMENT_METHODS, IpConfigurator
from ..core.management import ManagementClient
from ..formatting import print_json, print_kv
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options


@click.command()
@click.argument("host")
@click.argument("device", required=False)
@link_options
@click.option("--ip", default=None, help="Configured IP address.")
@click.option("--subnet", default=None, help="Configured subnet mask.")
@click.option("--gateway", default=None, help="Configured default gateway.")
@click.option("--multicast", default=None, help="Routing multicast address.")
@click.option("--method", "methods", multiple=True, type=click.Choice(sorted(ASSIGNMENT_METHODS)),
              help="IP assignment method to enable; repeat for several.")
@click.pass_context
@handle_errors
def ipconfig(ctx: click.Context, host: str, device: str | None, ip: str | None,
             subnet: str | None, gateway: str | None, multicast: str | None,
             methods: tuple[str, ...], **kwargs) -> None:
    """Show the IP configuration of DEVICE (default: the server at HOST).

    With any setting option the configured values are written instead; most
    devices apply them after a restart.
    """
    settings = ctx.obj["settings"]
    with open_link(ctx, host, pop_link_options(kwargs)) as link, ManagementClient(
        link, settings.response_timeout, ctx.obj["cancel"]
    ) as mc:
        address = parse_address_arg(device) if device else link.gateway_address()
        configurator = IpConfigurator(mc, address)
        if any(v is not None for v in (ip, subnet, gateway, multicast)) or methods:
            written = configurator.write(ip, subnet, gateway, multicast, methods)
            if ctx.obj["use_json"]:
                print_json({"device": str(address), "written": written})
            else:
                click.echo(f"{address}: wrote {', '.join(written)}")
            return
        values = configurator.read()

    if ctx.obj["use_json"]:
        print_json({"device": str(address), **{label: value for label, value in values}})
    else:
        print_kv([("Device", str(address))] + [(label, value or "n/a") for label, value in values])
