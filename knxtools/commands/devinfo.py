"""devinfo command -- device descriptor and device object properties."""

import click
from xknx.profile import ResourceDevicePropertyId, ResourceGenericPropertyId

from ..core.management import ManagementClient
from ..errors import ManagementError
from ..formatting import format_hex, print_json, print_kv
from .options import handle_errors, link_options, open_link, parse_address_arg, pop_link_options

DEVICE_OBJECT = 0

_DEVICE_PROPERTIES = [
    ("Manufacturer ID", ResourceGenericPropertyId.PID_MANUFACTURER_ID),
    ("Serial number", ResourceGenericPropertyId.PID_SERIAL_NUMBER),
    ("Hardware type", ResourceDevicePropertyId.PID_HARDWARE_TYPE),
    ("Firmware revision", ResourceGenericPropertyId.PID_FIRMWARE_REVISION),
    ("Program version", ResourceGenericPropertyId.PID_PROGRAM_VERSION),
    ("Order info", ResourceGenericPropertyId.PID_ORDER_INFO),
]


def _render(pid: int, value: bytes) -> str:
    if pid == ResourceGenericPropertyId.PID_MANUFACTURER_ID and len(value) == 2:
        return f"{int.from_bytes(value, 'big')} (0x{value.hex()})"
    if pid == ResourceGenericPropertyId.PID_SERIAL_NUMBER and len(value) == 6:
        return f"{value[:2].hex()}:{value[2:].hex()}"
    if pid == ResourceGenericPropertyId.PID_FIRMWARE_REVISION and len(value) == 1:
        return str(value[0])
    return format_hex(value)


@click.command()
@click.argument("host")
@click.argument("device")
@link_options
@click.pass_context
@handle_errors
def devinfo(ctx: click.Context, host: str, device: str, **kwargs) -> None:
    """Show device descriptor and device object properties of DEVICE."""
    address = parse_address_arg(device)
    settings = ctx.obj["settings"]
    with open_link(ctx, host, pop_link_options(kwargs)) as link, ManagementClient(
        link, settings.response_timeout, ctx.obj["cancel"]
    ) as mc:
        descriptor = mc.read_device_descriptor(address)
        values = mc.read_properties(address, [(DEVICE_OBJECT, pid) for _, pid in _DEVICE_PROPERTIES])

    info = [("Device", device), ("Mask version", f"{descriptor.hex().upper()}")]
    for label, pid in _DEVICE_PROPERTIES:
        value = values[(DEVICE_OBJECT, pid)]
        info.append((label, "n/a" if isinstance(value, ManagementError) else _render(pid, value)))

    if ctx.obj["use_json"]:
        print_json(dict(info))
    else:
        print_kv(info)
