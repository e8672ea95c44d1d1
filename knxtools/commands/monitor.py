"""groupmon, trafficmon and netmon commands -- print frames until interrupted."""

import json
from datetime import datetime

import click

from ..core.monitor import NetworkMonitor, TelegramEntry, TelegramMonitor
from .options import handle_errors, link_options, open_link, pop_link_options


def _wait(link, cancel):
    while not cancel.wait(0.25):
        if not link.is_open:
            break


def _run_monitor(ctx: click.Context, host: str, options: dict, group_only: bool) -> None:
    use_json: bool = ctx.obj["use_json"]
    cancel = ctx.obj["cancel"]

    def on_entry(entry: TelegramEntry):
        if use_json:
            click.echo(json.dumps(entry.to_dict()))
        else:
            click.echo(entry.format())

    with open_link(ctx, host, options) as link, TelegramMonitor(
        group_only=group_only, on_entry=on_entry
    ) as monitor:
        monitor.attach(link)
        _wait(link, cancel)
        stats = monitor.get_stats()
    if not use_json:
        click.echo(f"{stats['total_recorded']} frames", err=True)


@click.command()
@click.argument("host")
@link_options
@click.pass_context
@handle_errors
def groupmon(ctx: click.Context, host: str, **kwargs) -> None:
    """Print group communication seen via HOST until interrupted."""
    _run_monitor(ctx, host, pop_link_options(kwargs), group_only=True)


@click.command()
@click.argument("host")
@link_options
@click.pass_context
@handle_errors
def trafficmon(ctx: click.Context, host: str, **kwargs) -> None:
    """Print all link-layer frames seen via HOST until interrupted."""
    _run_monitor(ctx, host, pop_link_options(kwargs), group_only=False)


@click.command()
@click.argument("host")
@link_options
@click.pass_context
@handle_errors
def netmon(ctx: click.Context, host: str, **kwargs) -> None:
    """Print every cEMI frame from HOST raw, with its decoding, until interrupted."""
    use_json: bool = ctx.obj["use_json"]

    def on_frame(raw: bytes, entry: TelegramEntry | None):
        if use_json:
            click.echo(json.dumps({"raw": raw.hex(), "frame": entry.to_dict() if entry else None}))
            return
        ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        click.echo(f"{ts} {raw.hex()}")
        if entry is not None:
            click.echo(f"  {entry.msg_name} {entry.source}->{entry.destination_str} {entry.service}")

    with open_link(ctx, host, pop_link_options(kwargs)) as link, NetworkMonitor(on_frame) as monitor:
        monitor.attach(link)
        _wait(link, ctx.obj["cancel"])
    if not use_json:
        click.echo(
            f"{monitor.frame_count} frames, {monitor.undecoded_count} not decoded", err=True
        )
