"""
Bitrate calculation from monotonic byte counters.

The Livebox only exposes cumulative byte counters. To turn them into
throughput gauges we keep, per name (interface, station MAC, ...), the last
sample we saw and compute a first-difference rate on the next one:

    rate (Mbit/s) = (current - previous) * 8 / elapsed_seconds / 1e6

A calculator is owned by exactly one poller. Within a poller a given name is
never measured concurrently, so `measure()` needs no locking: it contains no
await point and runs to completion on the event loop.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

# Rates above this are arithmetic artifacts (e.g. near-zero elapsed time).
DEFAULT_MAX_MBITS = 10000.0

# Publish-time clamp applied by the pollers.
DEFAULT_DISPLAY_MAX_MBITS = 2150.0

# A baseline older than this is too stale to compute a meaningful rate.
DEFAULT_STALE_AFTER_SECONDS = 6 * 60

Clock = Callable[[], float]


@dataclass(frozen=True)
class Counters:
    """Cumulative tx/rx byte counters for one interface or station."""

    tx: int
    rx: int

    def swapped(self) -> "Counters":
        return Counters(tx=self.rx, rx=self.tx)


@dataclass(frozen=True)
class Sample:
    name: str
    counters: Counters
    observed_at: float


@dataclass(frozen=True)
class RateValue:
    """
    A bitrate in Mbit/s.

    When `reset_detected` is true the counter went backwards, `value` is 0
    and must not be published.
    """

    value: float
    reset_detected: bool = False

    @property
    def publishable(self) -> bool:
        return not self.reset_detected


@dataclass(frozen=True)
class RateResult:
    tx: Optional[RateValue] = None
    rx: Optional[RateValue] = None


def bytes_per_sec_to_mbits(value: float) -> float:
    """Convert B/s to Mbit/s."""
    return value * 8 / 1_000_000


def bits_per_30_secs_to_mbits(value: int) -> float:
    """Convert bits/30s to Mbit/s."""
    return value / 30_000_000


def sanitize_mbits(value: float, ceiling: float = DEFAULT_DISPLAY_MAX_MBITS) -> float:
    return min(value, ceiling)


class CadenceGate:
    """
    Enforces a minimum delay between two measurements of the same name.

    Used by pollers whose upstream data is only refreshed on a fixed
    interval: reading it more often would return the same counters and
    produce a bogus zero rate.
    """

    def __init__(self, min_delay: float, clock: Clock = time.monotonic):
        self.min_delay = min_delay
        self._clock = clock
        self._last: Dict[str, float] = {}

    def should_measure(self, name: str) -> bool:
        last = self._last.get(name)
        if last is None:
            return True
        return self._clock() - last >= self.min_delay

    def mark(self, name: str) -> None:
        self._last[name] = self._clock()


class BitrateCalculator:
    """
    Stateful rate estimator keyed by name.

    Only the most recent sample per name is kept. `measure()` never raises:
    anomalies yield an absent channel (`None`) or a `RateValue` with
    `reset_detected` set.
    """

    def __init__(
        self,
        min_delay_between_measures: float = 0.0,
        max_mbits: float = DEFAULT_MAX_MBITS,
        stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Clock = time.monotonic,
    ):
        self.min_delay_between_measures = min_delay_between_measures
        self.max_mbits = max_mbits
        self.stale_after = stale_after
        self._clock = clock
        self._samples: Dict[str, Sample] = {}

    def last_sample(self, name: str) -> Optional[Sample]:
        return self._samples.get(name)

    def should_measure(self, name: str) -> bool:
        """True if `name` was never measured or its last sample is older than the minimum delay."""
        last = self._samples.get(name)
        if last is None:
            return True
        return self._clock() - last.observed_at > self.min_delay_between_measures

    def measure(self, name: str, counters: Counters) -> RateResult:
        """Record `counters` as the latest sample for `name` and return the rates since the previous one."""
        now = self._clock()
        last = self._samples.get(name)

        tx = rx = None
        if last is not None:
            elapsed = now - last.observed_at
            if 0 < elapsed <= self.stale_after:
                tx = self._channel_rate(counters.tx, last.counters.tx, elapsed)
                rx = self._channel_rate(counters.rx, last.counters.rx, elapsed)

        self._samples[name] = Sample(name=name, counters=counters, observed_at=now)

        return RateResult(tx=tx, rx=rx)

    def _channel_rate(self, current: int, previous: int, elapsed: float) -> Optional[RateValue]:
        diff = current - previous
        if diff < 0:
            return RateValue(value=0.0, reset_detected=True)

        value = bytes_per_sec_to_mbits(diff / elapsed)
        if value > self.max_mbits:
            return None
        return RateValue(value=value)
