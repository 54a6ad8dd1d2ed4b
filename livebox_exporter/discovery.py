"""Livebox network interface discovery and role flags."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

from livebox_exporter.errors import DecodeError
from livebox_exporter.livebox_client import Client
from livebox_exporter.schemas import MibsResponse, decode

WAN_FLAG = "wan"
WLAN_FLAG = "wlanvap"


@dataclass(frozen=True)
class Interface:
    """A Livebox network interface and its capability flags."""

    name: str
    flags: str = ""

    def is_wan(self) -> bool:
        return WAN_FLAG in self.flags

    def is_wlan(self) -> bool:
        return WLAN_FLAG in self.flags


async def discover_interfaces(client: Client) -> List[Interface]:
    """
    Discover the enabled, monitored network interfaces on the Livebox.

    VLAN sub-interfaces are skipped. Raises DecodeError when none are found.
    """
    payload = await client.request(
        "NeMo.Intf.data",
        "getMIBs",
        {"traverse": "all", "flag": "statmon && !vlan && enabled"},
    )
    mibs = decode(MibsResponse, payload)

    if not mibs.status.base:
        raise DecodeError("no interfaces found")

    return [Interface(name=name, flags=mib.flags) for name, mib in mibs.status.base.items()]
