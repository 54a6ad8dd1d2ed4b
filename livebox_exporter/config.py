"""
Configuration for the Livebox exporter.

We use pydantic-settings (Pydantic v2) to load settings from:
- environment variables
- a local `.env` file in the working directory

Command-line flags (see `livebox_exporter.main`) override these values.
"""

from typing import Annotated, List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_ADDRESS = "http://192.168.1.1"
DEFAULT_POLLING_FREQUENCY = 30

EXPERIMENTAL_INTERFACE_HOMELAN = "livebox_interface_homelan"
EXPERIMENTAL_INTERFACE_NETDEV = "livebox_interface_netdev"
EXPERIMENTAL_WAN = "livebox_wan"
EXPERIMENTAL_DEVICES = "livebox_devices"
EXPERIMENTAL_INTERFACE_RESULTS = "livebox_interface_results"
EXPERIMENTAL_ONT = "livebox_ont"

EXPERIMENTAL_METRICS = [
    EXPERIMENTAL_INTERFACE_HOMELAN,
    EXPERIMENTAL_INTERFACE_NETDEV,
    EXPERIMENTAL_WAN,
    EXPERIMENTAL_DEVICES,
    EXPERIMENTAL_INTERFACE_RESULTS,
    EXPERIMENTAL_ONT,
]


class Settings(BaseSettings):
    """
    Application-wide settings.

    Environment variables (with defaults):

    - ADMIN_PASSWORD:          Livebox admin password (required unless stubbed)
    - LIVEBOX_ADDRESS:         Base URL of the Livebox (default: http://192.168.1.1)
    - LIVEBOX_CACERT:          Extra CA bundle trusted for the Livebox certificate
    - POLLING_FREQUENCY:       Seconds between two polls (default: 30)
    - TICK_TIMEOUT_SECONDS:    Deadline for a whole poll (default: 60)
    - REQUEST_TIMEOUT_SECONDS: Deadline for one Livebox request (default: 10)
    - LISTEN:                  HTTP listen address, "host:port" (default: ":8080")
    - EXPERIMENTAL:            Comma-separated experimental metrics to enable
    - MAX_RATE_MBITS:          Rates above this are discarded (default: 10000)
    - DISPLAY_MAX_MBITS:       Published rates are clamped to this (default: 2150)
    - USE_DEVICE_STUB:         "1" to poll an in-memory fake Livebox (default: 0)
    - LOG_LEVEL:               DEBUG, INFO, WARNING or ERROR (default: INFO)
    """

    admin_password: str = ""
    livebox_address: str = DEFAULT_ADDRESS
    livebox_cacert: Optional[str] = None

    polling_frequency: int = Field(default=DEFAULT_POLLING_FREQUENCY, gt=0)
    tick_timeout_seconds: float = Field(default=60.0, gt=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)

    listen: str = ":8080"

    # Populated from EXPERIMENTAL; parsed below.
    experimental: Annotated[List[str], NoDecode] = Field(default_factory=list)

    max_rate_mbits: float = 10000.0
    display_max_mbits: float = 2150.0

    use_device_stub: bool = False

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("experimental", mode="before")
    @classmethod
    def parse_experimental(cls, v):
        """
        Allow EXPERIMENTAL to be specified as:

        - ""                                  -> []
        - "livebox_wan"                       -> ["livebox_wan"]
        - "livebox_wan, livebox_devices"      -> ["livebox_wan", "livebox_devices"]
        - ["livebox_wan"]                     -> ["livebox_wan"]
        """
        if v is None:
            return []
        if isinstance(v, str):
            return [p.strip() for p in v.split(",") if p.strip()]
        return v

    @field_validator("listen")
    @classmethod
    def validate_listen(cls, v: str) -> str:
        parse_listen_address(v)
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    def listen_address(self) -> Tuple[str, int]:
        return parse_listen_address(self.listen)


def parse_listen_address(listen: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts. An empty host listens on all interfaces.

    >>> parse_listen_address(":8080")
    ('0.0.0.0', 8080)
    """
    host, sep, port = listen.rpartition(":")
    if not sep:
        raise ValueError(f"invalid listen address {listen!r}, expected host:port")
    return host.strip("[]") or "0.0.0.0", int(port)

