"""restart command -- basic restart or master reset of a KNX device."""

import click

from ..core.management import ManagementClient
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options

ERASE_CODES = {
    "confirmed": 0x01,
    "factory-reset": 0x02,
    "reset-ia": 0x03,
    "reset-ap": 0x04,
    "reset-param": 0x05,
    "reset-links": 0x06,
    "factory-reset-no-ia": 0x07,
}
CONFIRMED_RESTART = ERASE_CODES["confirmed"]

# Erase codes acting on one channel
_CHANNEL_ERASE_CODES = {
    ERASE_CODES["factory-reset"],
    ERASE_CODES["reset-param"],
    ERASE_CODES["reset-links"],
    ERASE_CODES["factory-reset-no-ia"],
}

DEFAULT_PROCESS_TIME = 5


@click.command()
@click.argument("host")
@click.argument("device")
@link_options
@click.option("--erase-code", "-e", type=click.Choice(sorted(ERASE_CODES)), default=None,
              help="Master reset type (default: basic restart).")
@click.option("--channel", type=int, default=0, show_default=True,
              help="Channel for channel specific resets.")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
@handle_errors
def restart(ctx: click.Context, host: str, device: str, erase_code: str | None,
            channel: int, yes: bool, **kwargs) -> None:
    """Restart the KNX DEVICE via HOST."""
    address = parse_address_arg(device)
    code = ERASE_CODES[erase_code] if erase_code else None
    if code is not None and code not in _CHANNEL_ERASE_CODES and channel:
        raise click.BadParameter(f"{erase_code} does not take a channel", param_hint="--channel")
    if code not in (None, CONFIRMED_RESTART) and not yes:
        click.confirm(f"Really perform {erase_code} on {device}?", abort=True)

    settings = ctx.obj["settings"]
    with open_link(ctx, host, pop_link_options(kwargs)) as link, ManagementClient(
        link, settings.response_timeout, ctx.obj["cancel"]
    ) as mc:
        if code is None:
            mc.restart(address)
            click.echo(f"sent restart to {device}")
            return
        seconds = mc.restart(address, code, channel)
        click.echo(f"restart takes {seconds or DEFAULT_PROCESS_TIME} seconds")
