"""Shared test fixtures for mihomot."""

import asyncio
import copy
import json
from dataclasses import replace

import httpx
import pytest

from mihomot.config import Config, Settings, SystemConfig

BASE_URL = "http://daemon.test:9090"
PROBE_URL = "http://probe.test/generate_204"

PROXIES_BODY = {
    "proxies": {
        "Proxy": {"name": "Proxy", "type": "Selector", "all": ["HK", "JP", "US"], "now": "HK"},
        "Auto": {"name": "Auto", "type": "URLTest", "all": ["HK", "JP"], "now": "JP"},
        "Streaming": {"name": "Streaming", "type": "Selector", "all": ["US", "DIRECT"], "now": "US"},
        "GLOBAL": {"name": "GLOBAL", "type": "Selector", "all": ["Proxy", "DIRECT"], "now": "Proxy"},
        "HK": {"name": "HK", "type": "Shadowsocks", "udp": True, "history": []},
        "JP": {"name": "JP", "type": "Vmess", "udp": False, "history": []},
        "US": {"name": "US", "type": "Trojan", "udp": True, "history": []},
        "DIRECT": {"name": "DIRECT", "type": "Direct", "history": []},
    }
}

CONFIG_BODY = {
    "port": 0,
    "socks-port": 0,
    "mixed-port": 7890,
    "mode": "rule",
    "log-level": "info",
    "allow-lan": False,
    "bind-address": "*",
    "ipv6": False,
    "tun": {"enable": False, "stack": "gvisor"},
}


def _merge(target: dict, patch: dict) -> None:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


class FakeDaemon:
    """Scriptable stand-in for the daemon, served through httpx.MockTransport.

    Responses can be held back with gates (asyncio.Event per key) so tests
    decide the order in which concurrent requests complete.
    """

    def __init__(self) -> None:
        self.config = copy.deepcopy(CONFIG_BODY)
        self.proxies = copy.deepcopy(PROXIES_BODY)
        self.requests: list[httpx.Request] = []
        self.delays: dict[str, int] = {"HK": 80, "JP": 250, "US": 700, "DIRECT": 5}
        self.delay_status: dict[str, int] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.status_overrides: dict[tuple[str, str], int] = {}
        self.apply_patches = True
        self.patch_coercions: dict[str, object] = {}
        self.down = False
        self.probe_status = 200
        self.traffic_lines: list[str] = []

    def gate(self, key: str) -> asyncio.Event:
        """Hold back responses for `key` until the returned event is set."""
        event = asyncio.Event()
        self.gates[key] = event
        return event

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    async def _wait_gate(self, key: str) -> None:
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        override = self.status_overrides.get((request.method, path))
        if override is not None:
            return httpx.Response(override)

        if request.url.host == "probe.test":
            await self._wait_gate("probe")
            return httpx.Response(self.probe_status)

        if request.method == "GET" and path == "/proxies":
            await self._wait_gate("proxies")
            return httpx.Response(200, json=self.proxies)
        if request.method == "GET" and path == "/configs":
            await self._wait_gate("configs")
            return httpx.Response(200, json=self.config)
        if request.method == "PATCH" and path == "/configs":
            await self._wait_gate("patch")
            if self.apply_patches:
                patch = json.loads(request.content)
                _merge(patch, {k: v for k, v in self.patch_coercions.items() if k in patch})
                _merge(self.config, patch)
            return httpx.Response(204)
        if request.method == "GET" and path == "/traffic":
            body = "\n".join(self.traffic_lines).encode()
            return httpx.Response(200, content=body)

        parts = path.strip("/").split("/")
        if request.method == "PUT" and len(parts) == 2 and parts[0] == "proxies":
            await self._wait_gate("select")
            group = self.proxies["proxies"].get(parts[1])
            if group is None:
                return httpx.Response(404, json={"message": "resource not found"})
            group["now"] = json.loads(request.content)["name"]
            return httpx.Response(204)
        if request.method == "GET" and len(parts) == 3 and parts[2] == "delay":
            name = parts[1]
            await self._wait_gate(f"delay:{name}")
            status = self.delay_status.get(name)
            if status is not None:
                return httpx.Response(status, json={"message": "An error occurred"})
            return httpx.Response(200, json={"delay": self.delays.get(name, 100)})

        return httpx.Response(404)


@pytest.fixture
def daemon() -> FakeDaemon:
    """Fresh fake daemon with two selector groups plus GLOBAL."""
    return FakeDaemon()


@pytest.fixture
def test_config() -> Config:
    """Config pointing at the fake daemon, with a fast tick."""
    return replace(
        Config(),
        settings=Settings(
            base_url=BASE_URL,
            api_secret="s3cret",
            test_url=PROBE_URL,
            test_timeout_ms=1000,
        ),
        system=replace(SystemConfig(), tick_interval=0.01, control_timeout=1.0),
    )
