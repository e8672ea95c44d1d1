"""discover, describe and sd commands -- KNXnet/IP server discovery."""

import logging
import time

import click
from xknx.io import DEFAULT_MCAST_PORT
from xknx.knxip import SRP

from ..core.discovery import DescriptionOutcome, Discoverer, SearchState
from ..formatting import (
    format_description_failure,
    format_result,
    print_json,
    result_to_dict,
)
from ..knxip.netif import resolve_interface
from .options import handle_errors

logger = logging.getLogger("knxtools.discover")


def parse_mac(text: str) -> bytes:
    """aa:bb:cc:dd:ee:ff (or with dashes) → 6 bytes."""
    digits = text.replace(":", "").replace("-", "")
    try:
        mac = bytes.fromhex(digits)
    except ValueError:
        raise ValueError(f"invalid MAC address {text!r}") from None
    if len(mac) != 6:
        raise ValueError(f"MAC address {text!r} must have 6 bytes")
    return mac


def _discovery_options(fn):
    options = [
        click.option("--netif", "-i", default=None, help="Network interface name or address."),
        click.option("--localhost", default=None, help="Local IP address for unicast requests."),
        click.option("--localport", type=int, default=0, help="Local UDP port."),
        click.option("--nat", "-n", is_flag=True, default=False, help="Use NAT aware requests."),
        click.option("--serverport", "-p", type=int, default=DEFAULT_MCAST_PORT, show_default=True,
                     help="Server control endpoint port."),
        click.option("--timeout", "-t", type=float, default=None, help="Timeout in seconds."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _new_discoverer(ctx, localhost, localport, nat, unicast=False, srps=(), netif=None) -> Discoverer:
    settings = ctx.obj["settings"]
    if netif and not localhost:
        localhost = resolve_interface(netif).address
    return Discoverer(
        local_host=localhost,
        local_port=localport,
        nat=nat,
        mcast_response=not unicast,
        srps=srps,
        cancel=ctx.obj["cancel"],
        description_timeout=settings.description_timeout,
    )


@click.command()
@click.argument("host", required=False)
@_discovery_options
@click.option("--with-description", "-d", is_flag=True, default=False,
              help="Follow every search result with a description request.")
@click.option("--unicast", "-u", is_flag=True, default=False,
              help="Request unicast search responses.")
@click.option("--mac", default=None, help="Only servers with this MAC address.")
@click.option("--progmode", is_flag=True, default=False,
              help="Only servers in programming mode.")
@click.pass_context
@handle_errors
def discover(
    ctx: click.Context,
    host: str | None,
    netif: str | None,
    localhost: str | None,
    localport: int,
    nat: bool,
    serverport: int,
    timeout: float | None,
    with_description: bool,
    unicast: bool,
    mac: str | None,
    progmode: bool,
) -> None:
    """Search KNXnet/IP servers.

    Without HOST a multicast search runs on every interface (or --netif);
    with HOST the search request goes to HOST's control endpoint.
    """
    use_json: bool = ctx.obj["use_json"]
    timeout = timeout or ctx.obj["settings"].search_timeout

    srps = []
    if progmode:
        srps.append(SRP.with_programming_mode())
    if mac:
        try:
            srps.append(SRP.with_mac_address(parse_mac(mac)))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--mac") from None

    discoverer = _new_discoverer(ctx, localhost, localport, nat, unicast, srps)

    if host:
        if netif and not localhost:
            discoverer.local_host = resolve_interface(netif).address
        result = discoverer.search_unicast((host, serverport), timeout)
        if use_json:
            print_json([result_to_dict(result)])
        else:
            click.echo(format_result(result))
        return

    if with_description:
        _search_with_description(ctx, discoverer, timeout, netif)
        return

    discoverer.start_search(timeout, netif)
    shown = 0
    poll = ctx.obj["settings"].poll_interval
    try:
        while discoverer.is_searching():
            time.sleep(poll)
            shown = _show_new(discoverer, shown, use_json)
    finally:
        discoverer.stop_search()
    shown = _show_new(discoverer, shown, use_json)

    if use_json:
        print_json([result_to_dict(r) for r in discoverer.get_search_responses()])
    if discoverer.state is SearchState.CANCELED and ctx.obj["cancel"].is_set():
        logger.info("search canceled after %d responses", shown)
    elif shown == 0:
        logger.warning("search stopped after %g seconds with 0 responses", timeout)


def _show_new(discoverer: Discoverer, shown: int, use_json: bool) -> int:
    results = discoverer.get_search_responses()
    if not use_json:
        for result in results[shown:]:
            click.echo(format_result(result))
    return len(results)


def _search_with_description(ctx, discoverer: Discoverer, timeout: float, netif) -> None:
    use_json: bool = ctx.obj["use_json"]

    def on_result(outcome: DescriptionOutcome):
        if use_json:
            return
        if outcome.ok:
            click.echo(format_result(outcome.description))
        else:
            click.echo(format_description_failure(outcome.result, outcome.target, outcome.error), err=True)

    outcomes = discoverer.search_with_description(timeout, netif, on_result=on_result)
    if use_json:
        print_json(
            [
                {
                    "search": result_to_dict(o.result),
                    "target": f"{o.target[0]}:{o.target[1]}",
                    "description": result_to_dict(o.description) if o.ok else None,
                    "error": None if o.ok else str(o.error),
                }
                for o in outcomes
            ]
        )
    if not outcomes:
        logger.warning("search stopped after %g seconds with 0 responses", timeout)


@click.command()
@click.argument("host")
@_discovery_options
@click.pass_context
@handle_errors
def describe(
    ctx: click.Context,
    host: str,
    netif: str | None,
    localhost: str | None,
    localport: int,
    nat: bool,
    serverport: int,
    timeout: float | None,
) -> None:
    """Request the self description of the KNXnet/IP server at HOST."""
    timeout = timeout or ctx.obj["settings"].response_timeout
    discoverer = _new_discoverer(ctx, localhost, localport, nat, netif=netif)
    result = discoverer.get_description(host, timeout, port=serverport)
    if ctx.obj["use_json"]:
        print_json(result_to_dict(result))
    else:
        click.echo(format_result(result))


@click.command()
@_discovery_options
@click.pass_context
@handle_errors
def sd(
    ctx: click.Context,
    netif: str | None,
    localhost: str | None,
    localport: int,
    nat: bool,
    serverport: int,
    timeout: float | None,
) -> None:
    """Search KNXnet/IP servers and describe each one found."""
    timeout = timeout or ctx.obj["settings"].search_timeout
    discoverer = _new_discoverer(ctx, localhost, localport, nat)
    _search_with_description(ctx, discoverer, timeout, netif)
