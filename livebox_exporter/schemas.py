"""
Pydantic models ("schemas") for Livebox responses and API output.

Livebox responses are JSON envelopes whose payload lives under `status`.
Only the fields the pollers read are declared; everything else is ignored.
Field names follow the device's own capitalization.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from livebox_exporter.errors import DecodeError


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Traffic counters
# ---------------------------------------------------------------------------

class ByteCounters(_Model):
    """HomeLan interface stats, WAN counters and SSID stats."""

    BytesReceived: int = 0
    BytesSent: int = 0


class NetDevCounters(_Model):
    RxBytes: int = 0
    TxBytes: int = 0


class ByteCountersResponse(_Model):
    status: ByteCounters


class NetDevCountersResponse(_Model):
    status: NetDevCounters


class TrafficReading(_Model):
    """One `HomeLan.getResults` reading: bits transferred over the last 30 seconds."""

    Timestamp: int = 0
    RxCounter: int = Field(default=0, alias="Rx_Counter")
    TxCounter: int = Field(default=0, alias="Tx_Counter")


class InterfaceResults(_Model):
    Traffic: List[TrafficReading] = []


class ResultsResponse(_Model):
    status: Dict[str, InterfaceResults]


class StationCounters(_Model):
    MACAddress: str
    RxBytes: int = 0
    TxBytes: int = 0


class StationStatsResponse(_Model):
    status: List[StationCounters]


# ---------------------------------------------------------------------------
# Discovery and devices
# ---------------------------------------------------------------------------

class InterfaceMib(_Model):
    flags: str = ""


class MibsStatus(_Model):
    base: Dict[str, InterfaceMib] = {}


class MibsResponse(_Model):
    status: MibsStatus


class DevicesByTypeResponse(_Model):
    """`Devices.get` called with an expression map: one list per type."""

    status: Dict[str, List[Dict[str, Any]]]


class Device(_Model):
    Key: str
    Name: str = ""
    DeviceType: str = ""
    Active: bool = False


class DevicesResponse(_Model):
    status: List[Device]


# ---------------------------------------------------------------------------
# Device information
# ---------------------------------------------------------------------------

class DeviceInfoStatus(_Model):
    UpTime: float


class DeviceInfoResponse(_Model):
    status: DeviceInfoStatus


class MemoryStatus(_Model):
    Total: float
    Free: float


class MemoryStatusResponse(_Model):
    status: MemoryStatus


class RebootStatus(_Model):
    BootCounter: float


class RebootResponse(_Model):
    status: RebootStatus


class OntStatus(_Model):
    """GPON interface (`veip0`). Rates are reported in kB/s."""

    Temperature: float = 0
    DownstreamCurrRate: float = 0
    UpstreamCurrRate: float = 0


class OntResponse(_Model):
    status: OntStatus


# ---------------------------------------------------------------------------
# API output
# ---------------------------------------------------------------------------

class HealthOut(BaseModel):
    """
    Response of `GET /health`.

    - status: "ok" once a tick succeeded and the last tick did not fail
    - last_success_at: time of the last fully successful tick
    - last_error: message of the last failed tick, if any
    """

    status: str
    last_success_at: Optional[datetime] = None
    last_error: Optional[str] = None


M = TypeVar("M", bound=BaseModel)


def decode(model: Type[M], payload: Any) -> M:
    """Validate a raw response against `model`, raising DecodeError on mismatch."""
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(
            f"unexpected response for {model.__name__}: {exc.error_count()} validation error(s)"
        ) from exc
