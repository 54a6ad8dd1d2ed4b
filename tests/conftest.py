from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest
from prometheus_client import CollectorRegistry

Response = Union[Dict[str, Any], BaseException, Callable[[Optional[dict]], Any]]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    """
    Scripted Livebox client.

    Responses are registered per (service, method). A response can be a
    payload, an exception to raise, or a callable receiving the parameters.
    """

    def __init__(self):
        self.responses: Dict[Tuple[str, str], Response] = {}
        self.calls: List[Tuple[str, str, Optional[dict]]] = []

    def on(self, service: str, method: str, response: Response) -> None:
        self.responses[(service, method)] = response

    async def request(self, service, method, parameters=None):
        self.calls.append((service, method, parameters))
        try:
            response = self.responses[(service, method)]
        except KeyError:
            raise AssertionError(f"unexpected request {service}.{method}") from None
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(parameters)
            if hasattr(response, "__await__"):
                response = await response
        return response

    def called(self, service: str, method: str) -> int:
        return sum(1 for s, m, _ in self.calls if (s, m) == (service, method))


def byte_counters(sent: int, received: int) -> dict:
    return {"status": {"BytesSent": sent, "BytesReceived": received}}


def register(*pollers) -> CollectorRegistry:
    registry = CollectorRegistry()
    for poller in pollers:
        for collector in poller.collectors():
            registry.register(collector)
    return registry


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client():
    return FakeClient()
