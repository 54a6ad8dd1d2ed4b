import asyncio
import logging

import pytest
from prometheus_client import CollectorRegistry, Gauge

from livebox_exporter.errors import AuthError, ErrorKind, PollError, TransportError, is_fatal_error
from livebox_exporter.orchestrator import PollOrchestrator, Poller, run_all


class StubPoller(Poller):
    """Sets its own gauge to 1 after an optional delay, or raises `error`."""

    def __init__(self, name, registry, error=None, delay=0.0, max_polling_interval=None):
        self._name = name
        self.error = error
        self.delay = delay
        self.max_polling_interval = max_polling_interval
        self.cancelled = False
        self.gauge = Gauge(f"stub_{name}", "Stub poller output.", registry=registry)

    @property
    def name(self):
        return self._name

    def collectors(self):
        return [self.gauge]

    async def poll(self):
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        self.gauge.set(1)


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.mark.asyncio
async def test_poll_all_succeed(registry):
    pollers = [StubPoller(f"p{i}", registry) for i in range(3)]

    await PollOrchestrator(pollers).poll()

    for i in range(3):
        assert registry.get_sample_value(f"stub_p{i}") == 1


@pytest.mark.asyncio
async def test_fatal_error_is_reported_and_siblings_still_update(registry):
    pollers = [StubPoller(f"ok{i}", registry) for i in range(9)]
    pollers.insert(4, StubPoller("auth", registry, error=AuthError("invalid password")))

    with pytest.raises(PollError) as excinfo:
        await PollOrchestrator(pollers).poll()

    assert excinfo.value.poller == "auth"
    assert excinfo.value.kind is ErrorKind.AUTH
    assert excinfo.value.fatal
    assert isinstance(excinfo.value.cause, AuthError)
    assert is_fatal_error(excinfo.value)
    for i in range(9):
        assert registry.get_sample_value(f"stub_ok{i}") == 1


@pytest.mark.asyncio
async def test_recoverable_error_keeps_other_updates(registry):
    ok = StubPoller("ok", registry)
    broken = StubPoller("broken", registry, error=TransportError("timeout"))

    with pytest.raises(PollError) as excinfo:
        await PollOrchestrator([broken, ok]).poll()

    assert excinfo.value.poller == "broken"
    assert excinfo.value.kind is ErrorKind.TRANSPORT
    assert not excinfo.value.fatal
    assert "broken: timeout" in str(excinfo.value)
    assert registry.get_sample_value("stub_ok") == 1
    assert registry.get_sample_value("stub_broken") == 0


@pytest.mark.asyncio
async def test_first_failure_cancels_running_siblings(registry):
    slow = StubPoller("slow", registry, delay=10)
    broken = StubPoller("broken", registry, error=TransportError("boom"), delay=0.01)

    with pytest.raises(PollError) as excinfo:
        await asyncio.wait_for(PollOrchestrator([slow, broken]).poll(), timeout=5)

    assert excinfo.value.poller == "broken"
    assert slow.cancelled
    assert registry.get_sample_value("stub_slow") == 0


@pytest.mark.asyncio
async def test_unexpected_exception_is_recoverable(registry):
    broken = StubPoller("broken", registry, error=KeyError("status"))

    with pytest.raises(PollError) as excinfo:
        await PollOrchestrator([broken]).poll()

    assert excinfo.value.kind is ErrorKind.UNKNOWN
    assert not excinfo.value.fatal


@pytest.mark.asyncio
async def test_cancelling_the_tick_cancels_pollers(registry):
    slow = StubPoller("slow", registry, delay=10)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(PollOrchestrator([slow]).poll(), timeout=0.05)

    assert slow.cancelled


@pytest.mark.asyncio
async def test_no_pollers():
    await PollOrchestrator([]).poll()


@pytest.mark.asyncio
async def test_slow_poller_is_logged(registry, caplog):
    caplog.set_level(logging.WARNING)
    orchestrator = PollOrchestrator([StubPoller("lazy", registry)], slow_poll_threshold=-1)

    await orchestrator.poll()

    assert "Poll was slow" in caplog.text
    assert "lazy" in caplog.text


@pytest.mark.asyncio
async def test_run_all_reraises_first_failure():
    results = []

    async def ok():
        results.append("ok")

    async def fail():
        raise TransportError("down")

    with pytest.raises(TransportError, match="down"):
        await run_all([ok(), fail(), ok()])

    assert results == ["ok", "ok"]


def test_collectors_are_concatenated(registry):
    a = StubPoller("a", registry)
    b = StubPoller("b", registry)

    assert PollOrchestrator([a, b]).collectors() == [a.gauge, b.gauge]


def test_polling_frequency_is_only_tightened(registry):
    orchestrator = PollOrchestrator(
        [
            StubPoller("default", registry),
            StubPoller("netdev", registry, max_polling_interval=5),
            StubPoller("relaxed", registry, max_polling_interval=60),
        ]
    )

    assert orchestrator.effective_polling_frequency(30) == 5
    assert orchestrator.effective_polling_frequency(3) == 3
