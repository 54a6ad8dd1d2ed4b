"""
Livebox API client abstraction.

We support two modes:

1. Real Livebox (using httpx against the `/ws` JSON endpoint).
2. Stub mode: an in-memory Livebox producing realistic-looking counters.

This lets you:
- run the exporter locally without a Livebox
- later flip USE_DEVICE_STUB=0 and talk to a real device

Both expose the same coroutine:

    await client.request(service, method, parameters) -> dict

which returns the decoded JSON envelope (payload under "status"). Failures
are raised as `LiveboxError` subclasses tagged with their `ErrorKind`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import ssl
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx

from livebox_exporter.config import DEFAULT_ADDRESS
from livebox_exporter.errors import (
    AuthError,
    CertificateError,
    DecodeError,
    RemoteError,
    TransportError,
)

logger = logging.getLogger(__name__)

Parameters = Dict[str, Any]

SAH_CONTENT_TYPE = "application/x-sah-ws-4-call+json"

# Error code returned by the Livebox when the session context is not valid.
PERMISSION_DENIED = 13


class Client(Protocol):
    async def request(
        self, service: str, method: str, parameters: Optional[Parameters] = None
    ) -> Dict[str, Any]:
        ...


class _SessionExpired(Exception):
    pass


# ---------------------------------------------------------------------------
# Real Livebox implementation
# ---------------------------------------------------------------------------


def build_verify(cacert: Optional[str]) -> Union[bool, ssl.SSLContext]:
    """
    Return the `verify` argument for httpx.

    The CA bundle at `cacert` is trusted in addition to the system store.
    """
    if not cacert:
        return True
    context = ssl.create_default_context()
    context.load_verify_locations(cafile=cacert)
    return context


def _is_certificate_error(exc: BaseException) -> bool:
    seen = set()
    err: Optional[BaseException] = exc
    while err is not None and id(err) not in seen:
        if isinstance(err, ssl.SSLCertVerificationError):
            return True
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return "CERTIFICATE_VERIFY_FAILED" in str(exc)


class LiveboxClient:
    """
    Client for the Livebox `/ws` endpoint.

    A session context is created lazily on the first request and shared by
    all concurrent callers. When the Livebox reports the session as expired
    the client logs in again and retries the request once.
    """

    def __init__(
        self,
        password: str,
        address: str = DEFAULT_ADDRESS,
        username: str = "admin",
        cacert: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.address = address.rstrip("/")
        self._username = username
        self._password = password
        self._http = httpx.AsyncClient(
            base_url=self.address,
            timeout=timeout,
            verify=build_verify(cacert),
            transport=transport,
        )
        self._context_id: Optional[str] = None
        self._login_lock = asyncio.Lock()

    async def __aenter__(self) -> "LiveboxClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self, service: str, method: str, parameters: Optional[Parameters] = None
    ) -> Dict[str, Any]:
        context_id = await self._session()
        try:
            return await self._call(context_id, service, method, parameters)
        except _SessionExpired:
            logger.info("Livebox session expired, logging in again")

        context_id = await self._session(expired=context_id)
        try:
            return await self._call(context_id, service, method, parameters)
        except _SessionExpired as exc:
            raise AuthError(f"{service}.{method}: permission denied with a fresh session") from exc

    async def _session(self, expired: Optional[str] = None) -> str:
        async with self._login_lock:
            if self._context_id is None or self._context_id == expired:
                self._context_id = await self._login()
            return self._context_id

    async def _login(self) -> str:
        body = {
            "service": "sah.Device.Information",
            "method": "createContext",
            "parameters": {
                "applicationName": "webui",
                "username": self._username,
                "password": self._password,
            },
        }
        try:
            data = await self._post(body, {"Authorization": "X-Sah-Login"})
        except _SessionExpired as exc:
            raise AuthError("invalid Livebox admin password") from exc

        context_id = (data.get("data") or {}).get("contextID")
        if data.get("status") != 0 or not context_id:
            raise AuthError("invalid Livebox admin password")

        logger.debug("Logged in to Livebox at %s", self.address)
        return context_id

    async def _call(
        self,
        context_id: str,
        service: str,
        method: str,
        parameters: Optional[Parameters],
    ) -> Dict[str, Any]:
        body = {"service": service, "method": method, "parameters": parameters or {}}
        headers = {"Authorization": f"X-Sah {context_id}", "X-Context": context_id}
        return await self._post(body, headers)

    async def _post(self, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        target = f"{body['service']}.{body['method']}"
        try:
            resp = await self._http.post(
                "/ws",
                content=json.dumps(body),
                headers={"Content-Type": SAH_CONTENT_TYPE, **headers},
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"{target}: request timed out") from exc
        except httpx.HTTPError as exc:
            if _is_certificate_error(exc):
                raise CertificateError(f"{target}: certificate verification failed: {exc}") from exc
            raise TransportError(f"{target}: {exc}") from exc

        if resp.status_code == 401:
            raise _SessionExpired()
        if resp.status_code >= 400:
            raise TransportError(f"{target}: unexpected HTTP status {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise DecodeError(f"{target}: response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise DecodeError(f"{target}: expected a JSON object, got {type(data).__name__}")

        errors = data.get("errors") or []
        if any(err.get("error") == PERMISSION_DENIED for err in errors if isinstance(err, dict)):
            raise _SessionExpired()
        if errors:
            descriptions = ", ".join(
                str(err.get("description", err)) if isinstance(err, dict) else str(err)
                for err in errors
            )
            raise RemoteError(f"{target}: {descriptions}")

        return data


# ---------------------------------------------------------------------------
# Stub implementation: fake Livebox for demo purposes
# ---------------------------------------------------------------------------

DEFAULT_STUB_INTERFACES = {
    "veip0": "wan statmon enabled netdev",
    "eth1": "eth statmon enabled netdev",
    "eth2": "eth statmon enabled netdev",
    "eth3": "eth statmon enabled netdev",
    "wl0": "wlanvap statmon enabled netdev",
    "eth6": "wlanvap statmon enabled netdev",
}

DEFAULT_STUB_DEVICES = [
    {"Key": "AA:BB:CC:00:00:01", "Name": "laptop", "DeviceType": "Computer", "Active": True, "station": "wl0"},
    {"Key": "AA:BB:CC:00:00:02", "Name": "phone", "DeviceType": "Mobile", "Active": True, "station": "eth6"},
    {"Key": "AA:BB:CC:00:00:03", "Name": "nas", "DeviceType": "NAS", "Active": True, "station": None},
    {"Key": "AA:BB:CC:00:00:04", "Name": "printer", "DeviceType": "Printer", "Active": False, "station": None},
]


class StubLiveboxClient:
    """
    In-memory Livebox.

    Each call increments counters by a random amount to simulate traffic.
    """

    def __init__(
        self,
        interfaces: Optional[Dict[str, str]] = None,
        devices: Optional[List[Dict[str, Any]]] = None,
        seed: Optional[int] = None,
    ):
        self._rng = random.Random(seed)
        self._interfaces = dict(interfaces or DEFAULT_STUB_INTERFACES)
        self._devices = list(devices or DEFAULT_STUB_DEVICES)
        self._counters: Dict[str, Dict[str, int]] = {}
        self._boot_counter = 3
        self._uptime = 0.0

    async def __aenter__(self) -> "StubLiveboxClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        pass

    def _bump(self, key: str) -> Dict[str, int]:
        """Advance the fake counters for `key` and return them."""
        st = self._counters.setdefault(
            key,
            {
                "tx": self._rng.randint(1_000_000, 10_000_000),
                "rx": self._rng.randint(1_000_000, 10_000_000),
            },
        )
        st["tx"] += self._rng.randint(10_000, 5_000_000)
        st["rx"] += self._rng.randint(10_000, 5_000_000)
        return st

    async def request(
        self, service: str, method: str, parameters: Optional[Parameters] = None
    ) -> Dict[str, Any]:
        parameters = parameters or {}

        if service == "NeMo.Intf.data" and method == "getMIBs":
            return {"status": {"base": {n: {"flags": f} for n, f in self._interfaces.items()}}}

        if service == "HomeLan" and method == "getWANCounters":
            st = self._bump("wan")
            return {"status": {"BytesSent": st["tx"], "BytesReceived": st["rx"]}}

        if service == "HomeLan" and method == "getResults":
            return {
                "status": {
                    name: {
                        "Traffic": [
                            {
                                "Timestamp": 0,
                                "Rx_Counter": self._rng.randint(0, 3_000_000_000),
                                "Tx_Counter": self._rng.randint(0, 3_000_000_000),
                            }
                        ]
                    }
                    for name in self._interfaces
                }
            }

        if service.startswith("HomeLan.Interface.") and service.endswith(".Stats"):
            itf = service[len("HomeLan.Interface."):-len(".Stats")]
            self._require_interface(itf)
            st = self._bump(f"homelan:{itf}")
            return {"status": {"BytesSent": st["tx"], "BytesReceived": st["rx"]}}

        if service.startswith("NeMo.Intf."):
            itf = service[len("NeMo.Intf."):]
            self._require_interface(itf)
            if method == "getNetDevStats":
                st = self._bump(f"netdev:{itf}")
                return {"status": {"TxBytes": st["tx"], "RxBytes": st["rx"]}}
            if method == "get" and itf == "veip0":
                return {
                    "status": {
                        "Temperature": self._rng.uniform(40, 60),
                        "DownstreamCurrRate": 2_488_320,
                        "UpstreamCurrRate": 1_244_160,
                    }
                }
            if method == "getSSIDStats":
                st = self._bump(f"ssid:{itf}")
                return {"status": {"BytesSent": st["tx"], "BytesReceived": st["rx"]}}
            if method == "getStationStats":
                stations = []
                for dev in self._devices:
                    if dev["station"] == itf and dev["Active"]:
                        st = self._bump(f"station:{dev['Key']}")
                        stations.append(
                            {"MACAddress": dev["Key"], "TxBytes": st["tx"], "RxBytes": st["rx"]}
                        )
                return {"status": stations}

        if service == "Devices" and method == "get":
            expression = parameters.get("expression")
            if isinstance(expression, dict):
                active = [d for d in self._devices if d["Active"]]
                return {
                    "status": {
                        t: [{} for _ in range(self._rng.randint(0, len(active)))]
                        for t in expression
                    }
                }
            return {
                "status": [
                    {k: v for k, v in dev.items() if k != "station"} for dev in self._devices
                ]
            }

        if service == "DeviceInfo" and method == "get":
            self._uptime += self._rng.uniform(1, 30)
            return {"status": {"UpTime": int(self._uptime)}}

        if service == "DeviceInfo.MemoryStatus" and method == "get":
            total = 2_000_000
            return {"status": {"Total": total, "Free": self._rng.randint(200_000, total)}}

        if service == "NMC.Reboot" and method == "get":
            return {"status": {"BootCounter": self._boot_counter}}

        raise RemoteError(f"{service}.{method}: unknown service or method")

    def _require_interface(self, itf: str) -> None:
        if itf not in self._interfaces:
            raise RemoteError(f"unknown interface {itf}")
