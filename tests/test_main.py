import asyncio
import logging
import os
import subprocess
import sys
from pathlib import Path

import pytest
import uvicorn
from pydantic import ValidationError

from livebox_exporter import main as exporter
from livebox_exporter.config import Settings, parse_listen_address
from livebox_exporter.errors import AuthError
from livebox_exporter.livebox_client import StubLiveboxClient
from livebox_exporter.main import build_pollers, build_registry, load_settings, main, parse_args
from livebox_exporter.orchestrator import PollOrchestrator


# =============================================================================
# Configuration
# =============================================================================


def test_experimental_is_parsed_from_env(monkeypatch):
    monkeypatch.setenv("EXPERIMENTAL", "livebox_wan, livebox_devices")

    assert Settings().experimental == ["livebox_wan", "livebox_devices"]


def test_flags_override_env(monkeypatch):
    monkeypatch.setenv("POLLING_FREQUENCY", "60")
    monkeypatch.setenv("LISTEN", ":9000")

    settings = load_settings(parse_args(["--polling-frequency", "10", "--experimental", "livebox_wan"]))

    assert settings.polling_frequency == 10
    assert settings.listen == ":9000"
    assert settings.experimental == ["livebox_wan"]


def test_invalid_settings():
    with pytest.raises(ValidationError):
        Settings(listen="8080")
    with pytest.raises(ValidationError):
        Settings(polling_frequency=0)


@pytest.mark.parametrize(
    "listen, expected",
    [(":8080", ("0.0.0.0", 8080)), ("127.0.0.1:9100", ("127.0.0.1", 9100)), ("[::1]:80", ("::1", 80))],
)
def test_parse_listen_address(listen, expected):
    assert parse_listen_address(listen) == expected


# =============================================================================
# Poller wiring
# =============================================================================


@pytest.mark.asyncio
async def test_default_pollers():
    pollers = await build_pollers(StubLiveboxClient(), Settings(use_device_stub=True))

    assert [p.name for p in pollers] == ["DevicesTotal", "InterfaceMbits", "DeviceInfo"]


@pytest.mark.asyncio
async def test_experimental_pollers_and_frequency():
    settings = Settings(
        use_device_stub=True,
        experimental="livebox_wan,livebox_interface_netdev,livebox_wan,bogus,livebox_interface_homelan,livebox_devices",
    )

    pollers = await build_pollers(StubLiveboxClient(), settings)
    orchestrator = PollOrchestrator(pollers)

    assert [p.name for p in pollers][3:] == [
        "WANMbits",
        "InterfaceNetDevMbits",
        "InterfaceHomeLanMbits",
        "StationMbits",
    ]
    assert orchestrator.effective_polling_frequency(settings.polling_frequency) == 5


@pytest.mark.asyncio
async def test_polling_the_stub_livebox(clock):
    settings = Settings(
        use_device_stub=True,
        experimental="livebox_wan,livebox_interface_netdev,livebox_interface_homelan,livebox_devices,"
        "livebox_interface_results,livebox_ont",
    )
    pollers = await build_pollers(StubLiveboxClient(seed=1), settings, clock=clock)
    orchestrator = PollOrchestrator(pollers)
    registry = build_registry(orchestrator)

    # Two ticks one second apart, so every rate has a baseline.
    await orchestrator.poll()
    clock.advance(1)
    await orchestrator.poll()

    assert registry.get_sample_value("livebox_wan_rx_mbits") > 0
    assert registry.get_sample_value("livebox_interface_netdev_tx_mbits", {"interface": "eth1"}) > 0
    assert registry.get_sample_value("livebox_interface_bytes_sent_total", {"interface": "eth1"}) > 0
    assert registry.get_sample_value("livebox_deviceinfo_reboots_total") == 3
    assert registry.get_sample_value(
        "livebox_device_active", {"name": "laptop", "type": "Computer", "mac": "AA:BB:CC:00:00:01"}
    ) == 1
    assert registry.get_sample_value("livebox_interface_results_rx_mbits", {"interface": "eth1"}) >= 0
    assert registry.get_sample_value("livebox_ont_downstream_current_rate_bytes") == 2_488_320_000


def test_help_describes_metric_orientation(capsys):
    with pytest.raises(SystemExit):
        parse_args(["--help"])

    assert "seen from the LAN side" in capsys.readouterr().out


# =============================================================================
# Process exit status
# =============================================================================


class RejectingClient:
    """Livebox client whose every request is refused for bad credentials."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return None

    async def request(self, service, method, parameters=None):
        raise AuthError("invalid Livebox admin password")


@pytest.fixture
def servers(monkeypatch):
    """Record the uvicorn servers created by `serve()`."""
    created = []

    class RecordingServer(uvicorn.Server):
        def __init__(self, config):
            super().__init__(config)
            created.append(self)

    monkeypatch.setattr(exporter.uvicorn, "Server", RecordingServer)
    return created


def test_invalid_environment_exits_with_status_2(monkeypatch, capsys):
    monkeypatch.setenv("POLLING_FREQUENCY", "0")

    with pytest.raises(SystemExit) as excinfo:
        main([])

    assert excinfo.value.code == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_command_line_reports_invalid_environment():
    root = Path(__file__).resolve().parents[1]
    env = {**os.environ, "POLLING_FREQUENCY": "0", "USE_DEVICE_STUB": "1", "PYTHONPATH": str(root)}

    proc = subprocess.run(
        [sys.executable, "-m", "livebox_exporter.main"],
        cwd=root,
        env=env,
        capture_output=True,
        text=True,
        timeout=60,
    )

    assert proc.returncode == 2
    assert "Invalid configuration" in proc.stderr


@pytest.mark.asyncio
async def test_serve_requires_admin_password(caplog):
    status = await exporter.serve(Settings(admin_password="", use_device_stub=False))

    assert status == 1
    assert "ADMIN_PASSWORD" in caplog.text


@pytest.mark.asyncio
async def test_serve_exits_on_fatal_poll_error(monkeypatch, servers, caplog):
    monkeypatch.setattr(exporter, "build_client", lambda settings: RejectingClient())
    settings = Settings(
        admin_password="wrong", use_device_stub=False, experimental=[], listen="127.0.0.1:0"
    )

    status = await asyncio.wait_for(exporter.serve(settings), timeout=10)

    assert status == 1
    assert servers and servers[0].should_exit
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert any("invalid Livebox admin password" in r.getMessage() for r in critical)


@pytest.mark.asyncio
async def test_serve_exits_cleanly_when_the_server_stops(servers):
    settings = Settings(use_device_stub=True, experimental=[], listen="127.0.0.1:0")

    async def stop_server():
        while not servers or not servers[0].started:
            await asyncio.sleep(0.01)
        servers[0].should_exit = True

    status, _ = await asyncio.wait_for(asyncio.gather(exporter.serve(settings), stop_server()), timeout=10)

    assert status == 0
