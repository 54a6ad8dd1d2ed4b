#!/usr/bin/env python3
"""
Livebox Prometheus exporter.

Usage:
    livebox-exporter [--polling-frequency 30] [--listen :8080] [--experimental ...]
    python -m livebox_exporter.main --help

The exporter polls the Livebox in the background and serves the resulting
metrics on /metrics. It exits with status 1 when the Livebox rejects the
admin password or its certificate cannot be verified.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import ssl
import sys
import time
from typing import List, Optional

import uvicorn
from prometheus_client import CollectorRegistry, GCCollector, PlatformCollector, ProcessCollector
from pydantic import ValidationError

from livebox_exporter.api import create_app
from livebox_exporter.bitrate import Clock
from livebox_exporter.config import (
    EXPERIMENTAL_DEVICES,
    EXPERIMENTAL_INTERFACE_HOMELAN,
    EXPERIMENTAL_INTERFACE_NETDEV,
    EXPERIMENTAL_INTERFACE_RESULTS,
    EXPERIMENTAL_METRICS,
    EXPERIMENTAL_ONT,
    EXPERIMENTAL_WAN,
    Settings,
)
from livebox_exporter.discovery import Interface, discover_interfaces
from livebox_exporter.errors import LiveboxError, PollError
from livebox_exporter.livebox_client import Client, LiveboxClient, StubLiveboxClient
from livebox_exporter.orchestrator import PollOrchestrator, Poller
from livebox_exporter.pollers import (
    DeviceInfo,
    DevicesTotal,
    InterfaceHomeLanMbits,
    InterfaceMbits,
    InterfaceNetDevMbits,
    InterfaceResultsMbits,
    ONT,
    StationMbits,
    WANMbits,
)
from livebox_exporter.scheduler import Scheduler

logger = logging.getLogger(__name__)

# Experimental pollers that need the interface list.
NEEDS_INTERFACES = {
    EXPERIMENTAL_INTERFACE_HOMELAN,
    EXPERIMENTAL_INTERFACE_NETDEV,
    EXPERIMENTAL_DEVICES,
    EXPERIMENTAL_ONT,
}


def setup_logging(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        level=level,
        stream=sys.stdout,
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Prometheus exporter for the Livebox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  ADMIN_PASSWORD          Livebox admin password (required)
  LIVEBOX_ADDRESS         Livebox base URL (default http://192.168.1.1)
  LIVEBOX_CACERT          CA bundle trusted for the Livebox certificate
  TICK_TIMEOUT_SECONDS    Deadline for a whole poll (default 60)
  REQUEST_TIMEOUT_SECONDS Deadline for one Livebox request (default 10)
  MAX_RATE_MBITS          Rates above this are discarded (default 10000)
  DISPLAY_MAX_MBITS       Published rates are clamped to this (default 2150)
  USE_DEVICE_STUB         Poll an in-memory fake Livebox (default 0)
  LOG_LEVEL               Log level: DEBUG|INFO|WARNING|ERROR

Metric orientation:
  All *_tx_mbits and *_rx_mbits metrics are seen from the LAN side: tx is
  traffic leaving the home network, rx is traffic entering it. Compared with
  earlier releases, livebox_interface_tx_mbits and livebox_interface_rx_mbits
  are inverted on every interface.
        """,
    )
    parser.add_argument(
        "--polling-frequency",
        type=int,
        help="Seconds between two polls (default: 30)",
    )
    parser.add_argument(
        "--listen",
        help="Listening address (default: :8080)",
    )
    parser.add_argument(
        "--experimental",
        help="Comma separated list of experimental metrics to enable "
        f"(available metrics: {','.join(EXPERIMENTAL_METRICS)})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    """Environment settings, overridden by the flags that were given."""
    overrides = {
        "polling_frequency": args.polling_frequency,
        "listen": args.listen,
        "experimental": args.experimental,
        "log_level": args.log_level,
    }
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def build_client(settings: Settings) -> Client:
    if settings.use_device_stub:
        logger.warning("Using the stub Livebox, metrics are fake")
        return StubLiveboxClient()

    return LiveboxClient(
        settings.admin_password,
        address=settings.livebox_address,
        cacert=settings.livebox_cacert,
        timeout=settings.request_timeout_seconds,
    )


async def build_pollers(client: Client, settings: Settings, clock: Clock = time.monotonic) -> List[Poller]:
    """
    Default pollers plus the experimental ones enabled in `settings`.

    Raises LiveboxError if interface discovery is needed and fails.
    """
    rate_opts = {
        "max_rate_mbits": settings.max_rate_mbits,
        "display_max_mbits": settings.display_max_mbits,
        "clock": clock,
    }
    pollers: List[Poller] = [
        DevicesTotal(client),
        InterfaceMbits(client, **rate_opts),
        DeviceInfo(client),
    ]

    interfaces: Optional[List[Interface]] = None
    enabled = set()

    for exp in settings.experimental:
        if exp not in EXPERIMENTAL_METRICS:
            logger.warning("Unknown experimental metrics: %s", exp)
            continue
        if exp in enabled:
            continue

        if exp in NEEDS_INTERFACES and interfaces is None:
            interfaces = await discover_interfaces(client)

        if exp == EXPERIMENTAL_INTERFACE_HOMELAN:
            pollers.append(InterfaceHomeLanMbits(client, interfaces, **rate_opts))
        elif exp == EXPERIMENTAL_INTERFACE_NETDEV:
            pollers.append(InterfaceNetDevMbits(client, interfaces, **rate_opts))
        elif exp == EXPERIMENTAL_WAN:
            pollers.append(WANMbits(client, **rate_opts))
        elif exp == EXPERIMENTAL_DEVICES:
            pollers.append(StationMbits(client, interfaces, **rate_opts))
        elif exp == EXPERIMENTAL_INTERFACE_RESULTS:
            pollers.append(InterfaceResultsMbits(client, display_max_mbits=settings.display_max_mbits))
        elif exp == EXPERIMENTAL_ONT:
            pollers.append(ONT(client, interfaces))

        logger.info("Enabled experimental metrics: %s", exp)
        enabled.add(exp)

    return pollers


def build_registry(orchestrator: PollOrchestrator) -> CollectorRegistry:
    registry = CollectorRegistry()
    for collector in orchestrator.collectors():
        registry.register(collector)

    ProcessCollector(registry=registry)
    PlatformCollector(registry=registry)
    GCCollector(registry=registry)
    return registry


async def serve(settings: Settings) -> int:
    """Run the exporter until shutdown. Returns the process exit status."""
    if not settings.use_device_stub and not settings.admin_password:
        logger.critical("ADMIN_PASSWORD environment variable must be set")
        return 1

    try:
        client = build_client(settings)
    except (OSError, ssl.SSLError) as exc:
        logger.critical("Failed to load Livebox CA cert: %s", exc)
        return 1

    async with client:
        try:
            pollers = await build_pollers(client, settings)
        except LiveboxError as exc:
            logger.critical("Failed to discover Livebox interfaces: %s", exc)
            return 1

        orchestrator = PollOrchestrator(pollers)
        scheduler = Scheduler(
            orchestrator,
            orchestrator.effective_polling_frequency(settings.polling_frequency),
            settings.tick_timeout_seconds,
        )

        host, port = settings.listen_address()
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(build_registry(orchestrator), scheduler),
                host=host,
                port=port,
                log_config=None,
            )
        )
        logger.info("Listening on %s:%s", host, port)

        server_task = asyncio.create_task(server.serve())
        poll_task = asyncio.create_task(scheduler.run())

        done, _ = await asyncio.wait({server_task, poll_task}, return_when=asyncio.FIRST_COMPLETED)

        if poll_task not in done:
            # HTTP server stopped (signal): stop polling too.
            scheduler.stop()
            poll_task.cancel()
            await asyncio.gather(poll_task, return_exceptions=True)
            return 0

        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)

        exc = poll_task.exception()
        if exc is None:
            return 0
        if not isinstance(exc, PollError):
            logger.critical("Polling loop crashed", exc_info=exc)
        return 1


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)

    try:
        settings = load_settings(args)
    except (ValidationError, ValueError) as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    setup_logging(settings.log_level)

    sys.exit(asyncio.run(serve(settings)))


if __name__ == "__main__":
    main()
