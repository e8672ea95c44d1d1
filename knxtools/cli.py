"""Click CLI group and global options for the KNX tools."""

import logging
import signal
import sys
import threading

import click

from . import __version__
from .commands.devinfo import devinfo
from .commands.discover import describe, discover, sd
from .commands.ipconfig import ipconfig
from .commands.memory import memory
from .commands.monitor import groupmon, netmon, trafficmon
from .commands.proccomm import read, write
from .commands.progmode import progmode
from .commands.properties import get, property_group
from .commands.restart import restart
from .commands.scan import scan
from .config import load_config
from .errors import ConfigurationError
from .formatting import print_error

logger = logging.getLogger("knxtools")

_LEVELS = [logging.WARNING, logging.INFO, logging.DEBUG]
_XKNX_LEVELS = [logging.CRITICAL, logging.WARNING, logging.DEBUG]


def _install_signal_handlers(ctx: click.Context, cancel: threading.Event):
    """SIGINT/SIGTERM set the cancel event; previous handlers come back on exit."""
    if threading.current_thread() is not threading.main_thread():
        return

    def handle_signal(signum, frame):
        logger.info("Received signal %d, stopping", signum)
        cancel.set()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}

    def restore():
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    ctx.call_on_close(restore)


@click.group()
@click.version_option(__version__, prog_name="knxtools")
@click.option("--config", "config_path", default=None, metavar="FILE",
              help="YAML config file (default: $KNXTOOLS_CONFIG).")
@click.option("--json", "use_json", is_flag=True, default=False,
              help="Output JSON instead of text.")
@click.option("--verbose", "-v", count=True, help="More logging (-v info, -vv debug).")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, use_json: bool, verbose: int) -> None:
    """KNXnet/IP discovery and diagnostic tools."""
    logging.basicConfig(
        level=_LEVELS[min(verbose, len(_LEVELS) - 1)],
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    # xknx logs every frame at debug level
    logging.getLogger("xknx").setLevel(_XKNX_LEVELS[min(verbose, len(_XKNX_LEVELS) - 1)])
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print_error(str(e), use_json)
        sys.exit(1)

    cancel = threading.Event()
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["settings"] = config.settings
    ctx.obj["use_json"] = use_json
    ctx.obj["cancel"] = cancel
    _install_signal_handlers(ctx, cancel)


# Register commands
cli.add_command(discover)
cli.add_command(describe)
cli.add_command(sd)
cli.add_command(scan)
cli.add_command(progmode)
cli.add_command(restart)
cli.add_command(devinfo)
cli.add_command(get)
cli.add_command(read)
cli.add_command(write)
cli.add_command(groupmon)
cli.add_command(trafficmon)
cli.add_command(netmon)
cli.add_command(property_group)
cli.add_command(memory)
cli.add_command(ipconfig)


def main():
    cli(obj={})
