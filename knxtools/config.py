"""Configuration models for links and tool settings.

An option map assembled by the CLI is merged over the `link:` section of an
optional YAML file and turned into a LinkConfig; the `settings:` section holds
timeouts and the scan window.

Example config.yaml:

    link:
      port: 3671
      nat: true
      medium: tp1
    settings:
      search_timeout: 5
      scan_window: 16
"""
import ipaddress
import logging
import os
from enum import Enum
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from xknx.exceptions import CouldNotParseAddress
from xknx.io import DEFAULT_MCAST_PORT
from xknx.knxip import KNXMedium
from xknx.telegram import IndividualAddress

from .errors import ConfigurationError

logger = logging.getLogger("knxtools.config")

CONFIG_ENV = "KNXTOOLS_CONFIG"

DEFAULT_PORT = DEFAULT_MCAST_PORT
KEY_LENGTH = 16


class Medium(str, Enum):
    TP1 = "tp1"
    PL110 = "pl110"
    RF = "rf"
    KNXIP = "knxip"

    @classmethod
    def parse(cls, text: str) -> "Medium":
        aliases = {"p110": cls.PL110, "ip": cls.KNXIP}
        key = text.strip().lower()
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ConfigurationError(f"unknown KNX medium {text!r}") from None

    @property
    def code(self) -> KNXMedium:
        return {
            Medium.TP1: KNXMedium.TP1,
            Medium.PL110: KNXMedium.PL110,
            Medium.RF: KNXMedium.RF,
            Medium.KNXIP: KNXMedium.KNX_IP,
        }[self]


class TransportKind(str, Enum):
    TUNNELING = "tunneling"
    ROUTING = "routing"
    FT12 = "ft12"
    USB = "usb"
    TPUART = "tpuart"

    @property
    def is_serial(self) -> bool:
        return self in (TransportKind.FT12, TransportKind.USB, TransportKind.TPUART)


def _parse_key(value: str | bytes | None, what: str) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = bytes.fromhex(value)
        except ValueError:
            raise ConfigurationError(f"{what} is not a hex string") from None
    if len(value) != KEY_LENGTH:
        raise ConfigurationError(f"{what} requires {KEY_LENGTH} bytes, got {len(value)}")
    return bytes(value)


class SecurityConfig(BaseModel):
    """KNX IP Secure key material.

    Tunneling keys are derived from the user and device passwords when the
    secure session is set up, so passwords are kept as given.
    """

    model_config = ConfigDict(frozen=True)

    group_key: bytes | None = None
    user_id: int | None = Field(default=None, ge=1, le=127)
    user_key: bytes | None = None
    device_key: bytes | None = None
    user_password: str | None = None
    device_password: str | None = None

    @classmethod
    def from_keys(
        cls,
        group_key: str | bytes | None = None,
        user_id: int | None = None,
        user_key: str | bytes | None = None,
        device_key: str | bytes | None = None,
    ) -> "SecurityConfig":
        return cls._build(
            group_key=_parse_key(group_key, "group key"),
            user_id=user_id,
            user_key=_parse_key(user_key, "user key"),
            device_key=_parse_key(device_key, "device key"),
        )

    @classmethod
    def from_passwords(
        cls,
        group_key: str | bytes | None = None,
        user_id: int | None = None,
        user_password: str | None = None,
        device_password: str | None = None,
    ) -> "SecurityConfig":
        return cls._build(
            group_key=_parse_key(group_key, "group key"),
            user_id=user_id,
            user_password=user_password,
            device_password=device_password,
        )

    @classmethod
    def _build(cls, **fields) -> "SecurityConfig":
        try:
            return cls(**fields)
        except ValidationError as e:
            raise ConfigurationError(f"invalid security options: {e.errors()[0]['msg']}") from None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.group_key,
                self.user_id,
                self.user_key,
                self.device_key,
                self.user_password,
                self.device_password,
            )
        )

    @property
    def is_tunneling(self) -> bool:
        return (
            self.user_id is not None
            or self.user_key is not None
            or self.user_password is not None
        )


class LinkConfig(BaseModel):
    """Everything needed to open a KNX network link."""

    model_config = ConfigDict(frozen=True)

    transport: TransportKind = TransportKind.TUNNELING
    host: str | None = None
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    local_host: str | None = None
    local_port: int = Field(default=0, ge=0, le=65535)
    nat: bool = False
    tcp: bool = False
    device: str | None = None
    medium: Medium = Medium.TP1
    domain: bytes | None = None
    knx_address: int | None = Field(default=None, ge=0, le=0xFFFF)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    connect_timeout: float = Field(default=10.0, gt=0)

    @classmethod
    def from_options(cls, options: dict[str, Any]) -> "LinkConfig":
        """Build from an option map (CLI option names, None meaning "not given")."""
        opts = {k: v for k, v in options.items() if v is not None}

        serial = [k for k in ("ft12", "usb", "tpuart") if opts.get(k)]
        if len(serial) > 1:
            raise ConfigurationError(f"choose one of --{', --'.join(serial)}")
        host = opts.get("host")
        if serial:
            transport = TransportKind(serial[0])
            device = opts[serial[0]]
        elif host is None:
            raise ConfigurationError("no KNXnet/IP host given")
        else:
            device = None
            transport = (
                TransportKind.ROUTING
                if opts.get("routing") or _is_multicast(host)
                else TransportKind.TUNNELING
            )

        domain = opts.get("domain")
        if isinstance(domain, str):
            try:
                domain = bytes.fromhex(domain.removeprefix("0x"))
            except ValueError:
                raise ConfigurationError(f"domain address {domain!r} is not hex") from None

        knx_address = opts.get("knx_address")
        if isinstance(knx_address, str):
            try:
                knx_address = IndividualAddress(knx_address).raw
            except CouldNotParseAddress:
                raise ConfigurationError(f"invalid KNX address {knx_address!r}") from None

        medium = opts.get("medium", Medium.TP1)
        if isinstance(medium, str) and not isinstance(medium, Medium):
            medium = Medium.parse(medium)

        if opts.get("user_pwd") is not None or opts.get("device_pwd") is not None:
            security = SecurityConfig.from_passwords(
                group_key=opts.get("group_key"),
                user_id=opts.get("user"),
                user_password=opts.get("user_pwd"),
                device_password=opts.get("device_pwd"),
            )
        else:
            security = SecurityConfig.from_keys(
                group_key=opts.get("group_key"),
                user_id=opts.get("user"),
                user_key=opts.get("user_key"),
                device_key=opts.get("device_key"),
            )

        try:
            config = cls(
                transport=transport,
                host=host,
                port=opts.get("port", DEFAULT_PORT),
                local_host=opts.get("localhost"),
                local_port=opts.get("localport", 0),
                nat=opts.get("nat", False),
                tcp=opts.get("tcp", False),
                device=device,
                medium=medium,
                domain=domain,
                knx_address=knx_address,
                security=security,
                connect_timeout=opts.get("connect_timeout", 10.0),
            )
        except ValidationError as e:
            err = e.errors()[0]
            field = ".".join(str(p) for p in err["loc"])
            raise ConfigurationError(f"invalid option {field}: {err['msg']}") from None
        config.check_combination()
        return config

    def check_combination(self):
        """Reject inconsistent option combinations (raises ConfigurationError)."""
        if self.domain is not None:
            if self.medium is Medium.PL110 and len(self.domain) != 2:
                raise ConfigurationError("PL110 domain address requires 2 bytes")
            if self.medium is Medium.RF and len(self.domain) != 6:
                raise ConfigurationError("RF domain address requires 6 bytes")
            if self.medium not in (Medium.PL110, Medium.RF):
                raise ConfigurationError(
                    f"domain address not supported on medium {self.medium.value}"
                )
        if self.security.group_key is not None and self.transport is not TransportKind.ROUTING:
            raise ConfigurationError("group key requires KNX IP routing")
        if self.transport is TransportKind.ROUTING and self.security.is_tunneling:
            raise ConfigurationError("user and user key are not used with KNX IP routing")
        if self.transport is TransportKind.ROUTING and self.nat:
            raise ConfigurationError("NAT is not used with KNX IP routing")
        if self.transport is TransportKind.ROUTING and self.tcp:
            raise ConfigurationError("TCP is not used with KNX IP routing")


def _is_multicast(host: str) -> bool:
    try:
        return ipaddress.ip_address(host).is_multicast
    except ValueError:
        return False


class Settings(BaseModel):
    """Timeouts and tuning shared by the tools."""

    search_timeout: float = Field(default=3.0, gt=0)
    description_timeout: float = Field(default=2.0, gt=0)
    response_timeout: float = Field(default=3.0, gt=0)
    scan_window: int = Field(default=8, ge=1, le=64)
    poll_interval: float = Field(default=0.25, gt=0)


class ToolConfig(BaseModel):
    """Contents of a config file."""

    link: dict[str, Any] = Field(default_factory=dict)
    settings: Settings = Field(default_factory=Settings)


def load_config(path: str | None = None) -> ToolConfig:
    """Load a YAML config file; no path and no KNXTOOLS_CONFIG gives defaults."""
    path = path or os.environ.get(CONFIG_ENV)
    if not path:
        return ToolConfig()
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    try:
        config = ToolConfig(**raw)
    except ValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err["loc"])
        raise ConfigurationError(f"{path}: {field}: {err['msg']}") from None
    logger.debug("Loaded config from %s", path)
    return config
