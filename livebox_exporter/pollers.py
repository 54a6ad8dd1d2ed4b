"""
Pollers exposing Livebox bandwidth and device metrics.

Each poller owns its own `BitrateCalculator`, so a given name (interface or
station MAC) is only ever measured by one poller.

Counter orientation differs per data source. Rates are always published
from the LAN side: tx is traffic leaving the monitored network, rx is
traffic entering it.

- HomeLan interface stats and WAN counters: swapped for WAN interfaces
- NeMo netdev/SSID stats: swapped for non-WAN interfaces
- Station stats (reported by the access point): always swapped
- HomeLan traffic results: published as reported
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import Dict, Iterator, List, Optional, Sequence

from prometheus_client import Counter, Gauge
from prometheus_client.registry import Collector

from livebox_exporter.bitrate import (
    DEFAULT_DISPLAY_MAX_MBITS,
    DEFAULT_MAX_MBITS,
    BitrateCalculator,
    CadenceGate,
    Clock,
    Counters,
    RateValue,
    bits_per_30_secs_to_mbits,
    sanitize_mbits,
)
from livebox_exporter.discovery import Interface, discover_interfaces
from livebox_exporter.errors import LiveboxError, is_fatal_error
from livebox_exporter.livebox_client import Client
from livebox_exporter.orchestrator import Poller, run_all
from livebox_exporter.schemas import (
    ByteCountersResponse,
    DeviceInfoResponse,
    DevicesByTypeResponse,
    DevicesResponse,
    MemoryStatusResponse,
    NetDevCountersResponse,
    OntResponse,
    RebootResponse,
    ResultsResponse,
    StationCounters,
    StationStatsResponse,
    decode,
)

logger = logging.getLogger(__name__)

# The Livebox refreshes HomeLan interface statistics every 30 seconds.
HOMELAN_MIN_DELAY = 30.0

# getNetDevStats changes too fast for the default polling frequency.
NETDEV_MAX_POLLING_INTERVAL = 5.0

DEVICE_TYPE_EXPRESSIONS = {
    "ethernet": "not interface and not self and eth and .Active==true",
    "wifi": "not interface and not self and wifi and .Active==true",
    "printer": "printer and .Active==true",
    "dongle": "usb && wwan and .Active==true",
}


def _publish(gauge, rate: Optional[RateValue], ceiling: float, **labels: str) -> None:
    """Set `gauge` from `rate` unless the rate is absent or a counter reset."""
    if rate is None or not rate.publishable:
        return
    target = gauge.labels(**labels) if labels else gauge
    target.set(sanitize_mbits(rate.value, ceiling))


async def _byte_counters(client: Client, service: str, method: str) -> Counters:
    """Fetch a `BytesSent`/`BytesReceived` pair as raw (device side) counters."""
    stats = decode(ByteCountersResponse, await client.request(service, method)).status
    return Counters(tx=stats.BytesSent, rx=stats.BytesReceived)


class DevicesTotal(Poller):
    """Number of active devices per type (ethernet, wifi, printer, dongle)."""

    def __init__(self, client: Client):
        self._client = client
        self.devices_total = Gauge(
            "livebox_devices_total",
            "The total number of active devices",
            ["type"],
            registry=None,
        )

    def collectors(self) -> List[Collector]:
        return [self.devices_total]

    async def poll(self) -> None:
        payload = await self._client.request(
            "Devices", "get", {"expression": DEVICE_TYPE_EXPRESSIONS}
        )
        devices = decode(DevicesByTypeResponse, payload)

        for device_type, active in devices.status.items():
            self.devices_total.labels(type=device_type).set(len(active))


class InterfaceMbits(Poller):
    """
    Bandwidth usage and cumulative traffic on every Livebox interface.

    Interfaces are discovered on the first poll when none were given. Each
    interface is read at most once every 30 seconds. The byte counters are
    kept cumulative across device counter resets: after a reset they are
    reseeded from the new raw value.
    """

    def __init__(
        self,
        client: Client,
        interfaces: Optional[Sequence[Interface]] = None,
        max_rate_mbits: float = DEFAULT_MAX_MBITS,
        display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS,
        clock: Clock = time.monotonic,
    ):
        self._client = client
        self._interfaces = list(interfaces or [])
        self._display_max_mbits = display_max_mbits
        self._bitrate = BitrateCalculator(max_mbits=max_rate_mbits, clock=clock)
        self._cadence = CadenceGate(HOMELAN_MIN_DELAY, clock=clock)

        self.tx_mbits = Gauge(
            "livebox_interface_tx_mbits", "Transmitted Mbits per second.", ["interface"], registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_interface_rx_mbits", "Received Mbits per second.", ["interface"], registry=None
        )
        self.bytes_sent = Counter(
            "livebox_interface_bytes_sent_total", "Bytes sent on the interface", ["interface"], registry=None
        )
        self.bytes_received = Counter(
            "livebox_interface_bytes_received_total",
            "Bytes received on the interface",
            ["interface"],
            registry=None,
        )

    def collectors(self) -> List[Collector]:
        return [self.tx_mbits, self.rx_mbits, self.bytes_sent, self.bytes_received]

    async def poll(self) -> None:
        if not self._interfaces:
            self._interfaces = await discover_interfaces(self._client)

        for itf in self._interfaces:
            if not self._cadence.should_measure(itf.name):
                continue

            counters = await _byte_counters(self._client, f"HomeLan.Interface.{itf.name}.Stats", "get")
            if itf.is_wan():
                counters = counters.swapped()

            previous = self._bitrate.last_sample(itf.name)
            rates = self._bitrate.measure(itf.name, counters)
            self._cadence.mark(itf.name)

            self._count(self.bytes_sent, itf.name, counters.tx, previous.counters.tx if previous else None)
            self._count(self.bytes_received, itf.name, counters.rx, previous.counters.rx if previous else None)

            _publish(self.tx_mbits, rates.tx, self._display_max_mbits, interface=itf.name)
            _publish(self.rx_mbits, rates.rx, self._display_max_mbits, interface=itf.name)

    @staticmethod
    def _count(counter: Counter, name: str, current: int, previous: Optional[int]) -> None:
        if previous is None:
            counter.labels(interface=name).inc(current)
        elif current >= previous:
            counter.labels(interface=name).inc(current - previous)
        else:
            logger.info("Byte counter reset detected on interface %s", name)
            counter.remove(name)
            counter.labels(interface=name).inc(current)


class InterfaceHomeLanMbits(Poller):
    """Bandwidth usage on the Livebox interfaces, from HomeLan statistics."""

    def __init__(
        self,
        client: Client,
        interfaces: Sequence[Interface],
        max_rate_mbits: float = DEFAULT_MAX_MBITS,
        display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS,
        clock: Clock = time.monotonic,
    ):
        self._client = client
        self._interfaces = list(interfaces)
        self._display_max_mbits = display_max_mbits
        self._bitrate = BitrateCalculator(HOMELAN_MIN_DELAY, max_mbits=max_rate_mbits, clock=clock)

        self.tx_mbits = Gauge(
            "livebox_interface_homelan_tx_mbits", "Transmitted Mbits per second.", ["interface"], registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_interface_homelan_rx_mbits", "Received Mbits per second.", ["interface"], registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.tx_mbits, self.rx_mbits]

    async def poll(self) -> None:
        for itf in self._interfaces:
            if not self._bitrate.should_measure(itf.name):
                continue

            counters = await _byte_counters(self._client, f"HomeLan.Interface.{itf.name}.Stats", "get")
            if itf.is_wan():
                counters = counters.swapped()

            rates = self._bitrate.measure(itf.name, counters)

            _publish(self.rx_mbits, rates.rx, self._display_max_mbits, interface=itf.name)
            _publish(self.tx_mbits, rates.tx, self._display_max_mbits, interface=itf.name)


class InterfaceNetDevMbits(Poller):
    """
    Bandwidth usage on the Livebox interfaces, from kernel netdev statistics.

    WLAN interfaces are read through getSSIDStats. Interfaces are polled
    concurrently.
    """

    max_polling_interval = NETDEV_MAX_POLLING_INTERVAL

    def __init__(
        self,
        client: Client,
        interfaces: Sequence[Interface],
        max_rate_mbits: float = DEFAULT_MAX_MBITS,
        display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS,
        clock: Clock = time.monotonic,
    ):
        self._client = client
        self._interfaces = list(interfaces)
        self._display_max_mbits = display_max_mbits
        self._bitrate = BitrateCalculator(max_mbits=max_rate_mbits, clock=clock)

        self.tx_mbits = Gauge(
            "livebox_interface_netdev_tx_mbits", "Transmitted Mbits per second.", ["interface"], registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_interface_netdev_rx_mbits", "Received Mbits per second.", ["interface"], registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.tx_mbits, self.rx_mbits]

    async def poll(self) -> None:
        await run_all(self._poll_interface(itf) for itf in self._interfaces)

    async def _counters(self, itf: Interface) -> Counters:
        service = f"NeMo.Intf.{itf.name}"
        if itf.is_wlan():
            return await _byte_counters(self._client, service, "getSSIDStats")

        stats = decode(NetDevCountersResponse, await self._client.request(service, "getNetDevStats")).status
        return Counters(tx=stats.TxBytes, rx=stats.RxBytes)

    async def _poll_interface(self, itf: Interface) -> None:
        try:
            counters = await self._counters(itf)
        except LiveboxError as exc:
            raise type(exc)(
                f"failed to get stats for interface (WLAN={itf.is_wlan()}): {itf.name}: {exc}",
                exc.kind,
            ) from exc

        if not itf.is_wan():
            counters = counters.swapped()

        rates = self._bitrate.measure(itf.name, counters)

        _publish(self.rx_mbits, rates.rx, self._display_max_mbits, interface=itf.name)
        _publish(self.tx_mbits, rates.tx, self._display_max_mbits, interface=itf.name)


class WANMbits(Poller):
    """Bandwidth usage on the WAN interface."""

    def __init__(
        self,
        client: Client,
        max_rate_mbits: float = DEFAULT_MAX_MBITS,
        display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS,
        clock: Clock = time.monotonic,
    ):
        self._client = client
        self._display_max_mbits = display_max_mbits
        self._bitrate = BitrateCalculator(max_mbits=max_rate_mbits, clock=clock)

        self.tx_mbits = Gauge(
            "livebox_wan_tx_mbits", "Transmitted Mbits per second on the WAN interface.", registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_wan_rx_mbits", "Received Mbits per second on the WAN interface.", registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.tx_mbits, self.rx_mbits]

    async def poll(self) -> None:
        counters = await _byte_counters(self._client, "HomeLan", "getWANCounters")

        rates = self._bitrate.measure("WAN", counters.swapped())

        _publish(self.rx_mbits, rates.rx, self._display_max_mbits)
        _publish(self.tx_mbits, rates.tx, self._display_max_mbits)


class InterfaceResultsMbits(Poller):
    """
    Bandwidth usage on the Livebox interfaces, from HomeLan traffic results.

    The Livebox computes these itself: each reading holds the bits
    transferred during the last 30 seconds, so no baseline is kept here.
    """

    def __init__(self, client: Client, display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS):
        self._client = client
        self._display_max_mbits = display_max_mbits

        self.tx_mbits = Gauge(
            "livebox_interface_results_tx_mbits", "Transmitted Mbits per second.", ["interface"], registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_interface_results_rx_mbits", "Received Mbits per second.", ["interface"], registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.tx_mbits, self.rx_mbits]

    async def poll(self) -> None:
        payload = await self._client.request(
            "HomeLan", "getResults", {"Seconds": 0, "NumberOfReadings": 1}
        )
        results = decode(ResultsResponse, payload).status

        for name, result in results.items():
            rx = tx = 0
            if result.Traffic:
                rx = result.Traffic[0].RxCounter
                tx = result.Traffic[0].TxCounter

            self.rx_mbits.labels(interface=name).set(
                sanitize_mbits(bits_per_30_secs_to_mbits(rx), self._display_max_mbits)
            )
            self.tx_mbits.labels(interface=name).set(
                sanitize_mbits(bits_per_30_secs_to_mbits(tx), self._display_max_mbits)
            )


@contextlib.contextmanager
def _tolerate(what: str) -> Iterator[None]:
    """Log recoverable Livebox errors instead of raising them. Fatal ones propagate."""
    try:
        yield
    except LiveboxError as exc:
        if is_fatal_error(exc):
            raise
        logger.warning("Failed to get %s: %s", what, exc)


class DeviceInfo(Poller):
    """
    Livebox uptime, memory usage and number of reboots.

    The three requests run concurrently and fail independently: a
    recoverable failure of one of them only leaves its own metrics stale.
    """

    def __init__(self, client: Client):
        self._client = client
        self.uptime = Gauge(
            "livebox_deviceinfo_uptime_seconds_total", "Livebox current uptime.", registry=None
        )
        self.memory_total = Gauge(
            "livebox_deviceinfo_memory_total_bytes", "Livebox system total memory.", registry=None
        )
        self.memory_usage = Gauge(
            "livebox_deviceinfo_memory_usage_bytes", "Livebox system used memory.", registry=None
        )
        self.reboots = Gauge(
            "livebox_deviceinfo_reboots_total", "Number of Livebox reboots.", registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.uptime, self.memory_total, self.memory_usage, self.reboots]

    async def poll(self) -> None:
        await run_all([self._device_info(), self._memory_status(), self._number_of_reboots()])

    async def _device_info(self) -> None:
        with _tolerate("device info"):
            info = decode(DeviceInfoResponse, await self._client.request("DeviceInfo", "get"))
            self.uptime.set(info.status.UpTime)

    async def _memory_status(self) -> None:
        with _tolerate("memory status"):
            memory = decode(MemoryStatusResponse, await self._client.request("DeviceInfo.MemoryStatus", "get"))
            # The Livebox reports memory in kB.
            self.memory_total.set(1000 * memory.status.Total)
            self.memory_usage.set(1000 * (memory.status.Total - memory.status.Free))

    async def _number_of_reboots(self) -> None:
        with _tolerate("number of reboots"):
            reboots = decode(RebootResponse, await self._client.request("NMC.Reboot", "get"))
            self.reboots.set(reboots.status.BootCounter)


class StationMbits(Poller):
    """
    Per-device status and bandwidth usage.

    Rates come from the station statistics of every WLAN interface, so only
    wireless devices get rate metrics. The last known rate of a station is
    kept between polls and published while the device is active.
    """

    SOURCE = "stationStats"

    def __init__(
        self,
        client: Client,
        interfaces: Sequence[Interface],
        max_rate_mbits: float = DEFAULT_MAX_MBITS,
        display_max_mbits: float = DEFAULT_DISPLAY_MAX_MBITS,
        clock: Clock = time.monotonic,
    ):
        self._client = client
        self._interfaces = [itf for itf in interfaces if itf.is_wlan()]
        self._display_max_mbits = display_max_mbits
        self._bitrate = BitrateCalculator(max_mbits=max_rate_mbits, clock=clock)
        self._rates: Dict[str, Dict[str, float]] = {}

        self.device_active = Gauge(
            "livebox_device_active", "Status of the device.", ["name", "type", "mac"], registry=None
        )
        self.rx_mbits = Gauge(
            "livebox_device_rx_mbits",
            "Received Mbits per second by device.",
            ["name", "type", "mac", "source"],
            registry=None,
        )
        self.tx_mbits = Gauge(
            "livebox_device_tx_mbits",
            "Transmitted Mbits per second by device.",
            ["name", "type", "mac", "source"],
            registry=None,
        )

    def collectors(self) -> List[Collector]:
        return [self.device_active, self.rx_mbits, self.tx_mbits]

    async def poll(self) -> None:
        await run_all(self._poll_stations(itf) for itf in self._interfaces)

        payload = await self._client.request(
            "Devices", "get", {"expression": '.DeviceType!="" and .DeviceType!="SAH HGW"'}
        )
        devices = decode(DevicesResponse, payload).status

        self.device_active.clear()
        self.rx_mbits.clear()
        self.tx_mbits.clear()

        for device in devices:
            # Skip entries without a MAC address.
            if ":" not in device.Key:
                continue

            labels = {"name": device.Name, "type": device.DeviceType, "mac": device.Key}
            self.device_active.labels(**labels).set(1 if device.Active else 0)

            if not device.Active:
                continue

            rates = self._rates.get(device.Key)
            if rates is None:
                continue

            self.rx_mbits.labels(source=self.SOURCE, **labels).set(
                sanitize_mbits(rates["rx"], self._display_max_mbits)
            )
            self.tx_mbits.labels(source=self.SOURCE, **labels).set(
                sanitize_mbits(rates["tx"], self._display_max_mbits)
            )

    async def _poll_stations(self, itf: Interface) -> None:
        # A failing interface only leaves its own stations stale.
        with _tolerate(f"station stats of {itf.name}"):
            payload = await self._client.request(f"NeMo.Intf.{itf.name}", "getStationStats")
            stations = decode(StationStatsResponse, payload).status
            self._measure_stations(stations)

    def _measure_stations(self, stations: Sequence[StationCounters]) -> None:
        for station in stations:
            # Reported by the access point: tx and rx are swapped here.
            counters = Counters(tx=station.RxBytes, rx=station.TxBytes)
            result = self._bitrate.measure(station.MACAddress, counters)

            rates = self._rates.setdefault(station.MACAddress, {"tx": 0.0, "rx": 0.0})
            if result.rx is not None and result.rx.publishable:
                rates["rx"] = result.rx.value
            if result.tx is not None and result.tx.publishable:
                rates["tx"] = result.tx.value


GPON_INTERFACE = "veip0"


class ONT(Poller):
    """Temperature and current line rates of the fiber ONT."""

    def __init__(self, client: Client, interfaces: Sequence[Interface]):
        self._client = client
        # Only Livebox models with an integrated ONT expose veip0.
        self.enabled = any(itf.name == GPON_INTERFACE for itf in interfaces)

        self.temperature = Gauge(
            "livebox_ont_temperature_celsius", "Current ONT temperature.", registry=None
        )
        self.downstream_rate = Gauge(
            "livebox_ont_downstream_current_rate_bytes", "Current ONT downstream rate.", registry=None
        )
        self.upstream_rate = Gauge(
            "livebox_ont_upstream_current_rate_bytes", "Current ONT upstream rate.", registry=None
        )

    def collectors(self) -> List[Collector]:
        return [self.temperature, self.downstream_rate, self.upstream_rate]

    async def poll(self) -> None:
        if not self.enabled:
            return

        ont = decode(OntResponse, await self._client.request(f"NeMo.Intf.{GPON_INTERFACE}", "get")).status

        self.temperature.set(ont.Temperature)
        self.downstream_rate.set(1000 * ont.DownstreamCurrRate)
        self.upstream_rate.set(1000 * ont.UpstreamCurrRate)
