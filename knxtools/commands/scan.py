"""scan command -- find KNX devices in an area or line."""

import logging
import sys

import click
from xknx.telegram import IndividualAddress

from ..core.management import ManagementClient
from ..core.scanner import AddressScanner, ScanRange
from ..errors import KnxToolsError, OperationCancelled
from ..formatting import format_scan_summary, print_error, print_json
from .options import link_options, open_link, pop_link_options

logger = logging.getLogger("knxtools.scan")


@click.command()
@click.argument("host")
@click.argument("scan_range", metavar="RANGE")
@link_options
@click.option("--window", "-w", type=int, default=None,
              help="Existence checks in flight at once [8].")
@click.option("--timeout", "-t", type=float, default=None,
              help="Response timeout per check in seconds [3].")
@click.pass_context
def scan(ctx: click.Context, host: str, scan_range: str, window: int | None,
         timeout: float | None, **kwargs) -> None:
    """Scan RANGE (area[.line[.device]]) for KNX devices via HOST.

    Without a line all 16 lines of the area are scanned; with a device only
    that address is checked.
    """
    use_json: bool = ctx.obj["use_json"]
    settings = ctx.obj["settings"]
    try:
        rng = ScanRange.parse(scan_range)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="RANGE") from None

    # Filled by on_found; holds every answer even when the scan aborts
    found: list[IndividualAddress] = []
    failed = False

    def on_line(area: int, line: int):
        if not use_json:
            click.echo(f"start scan of {area}.{line}.[0..255] ...")

    def on_found(address: IndividualAddress):
        logger.info("%s responded", address)
        found.append(address)
        if not use_json:
            click.echo(str(address))

    try:
        with open_link(ctx, host, pop_link_options(kwargs)) as link, ManagementClient(
            link, timeout or settings.response_timeout, ctx.obj["cancel"]
        ) as mc:
            scanner = AddressScanner(mc, window or settings.scan_window, ctx.obj["cancel"])
            scanner.scan(rng, on_found, on_line)
    except OperationCancelled:
        logger.info("scanning for devices canceled")
    except KnxToolsError as e:
        print_error(str(e), use_json)
        failed = True
    except ValueError as e:
        raise click.BadParameter(str(e)) from None

    if use_json:
        print_json({"found": [str(a) for a in found]})
    else:
        click.echo(format_scan_summary(found))
    if failed:
        sys.exit(1)
