"""Output formatting for the KNX tools.

Supports text (human-readable) and JSON output modes.
"""

import json
import sys
from typing import Any

from xknx.knxip import DIBServiceFamily, DIBTypeCode
from xknx.telegram import IndividualAddress

from .knxip.dib import DiscoveryResult


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def print_error(message: str, use_json: bool = False) -> None:
    """Print an error message, respecting output mode."""
    if use_json:
        print(json.dumps({"error": message}))
    else:
        print(f"Error: {message}", file=sys.stderr)


def print_kv(pairs: list[tuple[str, Any]]) -> None:
    """Print key-value pairs aligned on the colon."""
    if not pairs:
        return
    max_key = max(len(k) for k, _ in pairs)
    for key, value in pairs:
        print(f"  {key.ljust(max_key)}  {value}")


# ---------------------------------------------------------------------------
# Discovery results
# ---------------------------------------------------------------------------


def format_result(result: DiscoveryResult) -> str:
    """Render one search or description result.

    Search results never show the serial number. Optional DIBs follow the
    supported services: secured families indented, additional device info one
    field per line, tunneling info with the APDU length on its own line, then
    everything else as received.
    """
    head = f"Using {result.local_address} ({result.interface or 'unknown interface'})"
    lines = [head, "-" * len(head)]

    device = result.device
    first = f'"{device.name}"'
    if result.control_endpoint is not None:
        endpoint = str(result.control_endpoint)
        if result.service_families.version(DIBServiceFamily.CORE.value) > 1:
            endpoint = endpoint.replace("UDP", "UDP & TCP")
        first += f" endpoint {endpoint}"
    lines.append(first)
    lines += device.fields(with_serial=result.kind != "search")
    lines.append(f"Supported services: {result.service_families.describe()}")

    remaining = result.remaining_dibs()

    def extract(type_code):
        for dib in remaining:
            if dib.type_code == type_code:
                remaining.remove(dib)
                return dib
        return None

    secured = extract(DIBTypeCode.SECURED_SERVICE_FAMILIES.value)
    if secured is not None:
        lines.append(" " * 20 + secured.describe())
    additional = extract(DIBTypeCode.ADDITIONAL_DEVICE_INFO.value)
    if additional is not None:
        lines.append(additional.describe().replace(", ", "\n"))
    tunneling = extract(DIBTypeCode.TUNNELING_INFO.value)
    if tunneling is not None:
        lines.append(tunneling.describe().replace(", ", "\n", 1))
    lines += [dib.describe() for dib in remaining]
    lines.append("")
    return "\n".join(lines)


def result_to_dict(result: DiscoveryResult) -> dict:
    data = result.model_dump(mode="json")
    for dib, dumped in zip(result.dibs, data["dibs"]):
        dumped["type_name"] = dib.type_name
    return data


def format_description_failure(result: DiscoveryResult, target: tuple, error: Exception) -> str:
    return (
        f"description failed for server {target[0]}:{target[1]} "
        f"using {result.local_address} at {result.interface or 'unknown interface'}: {error}"
    )


# ---------------------------------------------------------------------------
# Scan results
# ---------------------------------------------------------------------------


def format_scan_summary(found: list[IndividualAddress]) -> str:
    lines = [f"found {len(found)} network devices"]
    lines += [str(a) for a in found]
    return "\n".join(lines)


def format_hex(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


def format_hex_dump(start: int, data: bytes, width: int = 16) -> str:
    """Memory dump: address, hex bytes, printable characters."""
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{start + offset:04X}  {format_hex(chunk).ljust(width * 3 - 1)}  {text}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Interface object properties
# ---------------------------------------------------------------------------


def property_description_to_dict(desc) -> dict:
    return {
        "object_index": desc.object_index,
        "pid": desc.property_id,
        "index": desc.property_index,
        "pdt": desc.type_ & 0x3F,
        "writable": bool(desc.type_ & 0x80),
        "max_elements": desc.max_count,
        "read_level": desc.access >> 4,
        "write_level": desc.access & 0x0F,
    }


def format_property_description(desc) -> str:
    d = property_description_to_dict(desc)
    access = "read/write" if d["writable"] else "read only"
    return (
        f"OI {d['object_index']} PI {d['index']} PID {d['pid']}: PDT 0x{d['pdt']:02X}, "
        f"max {d['max_elements']} elements, {access}, "
        f"access level r{d['read_level']}/w{d['write_level']}"
    )
