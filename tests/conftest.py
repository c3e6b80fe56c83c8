import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from airc_bridge.config import BridgeConfig
from airc_bridge.registry.client import RegistrySessionClient

REGISTRY_URL = "https://registry.test"
GATEWAY_URL = "ws://gateway.test:18789"


class FakeRegistry:
    """In-process stand-in for the AIRC registry HTTP API."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.register_response: Any = {"success": True, "token": "T1", "sessionId": "S1"}
        self.inbox: list[list[dict]] = []
        self.presence: Any = {"active": []}
        self.send_response: Any = {"success": True}
        self.consent_response: Any = {"success": True}
        self.unreachable = False
        self.events: list[str] | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("registry unreachable", request=request)

        path = request.url.path
        method = request.method
        if self.events is not None:
            self.events.append(f"{method} {path}")

        if path == "/api/presence" and method == "POST":
            body = json.loads(request.content)
            if body.get("action") == "register":
                return httpx.Response(200, json=self.register_response)
            return httpx.Response(200, json={"success": True})
        if path == "/api/presence" and method == "GET":
            return httpx.Response(200, json=self.presence)
        if path == "/api/messages" and method == "GET":
            batch = self.inbox.pop(0) if self.inbox else []
            return httpx.Response(200, json={"messages": batch})
        if path == "/api/messages" and method == "POST":
            return httpx.Response(200, json=self.send_response)
        if path == "/api/consent" and method == "POST":
            return httpx.Response(200, json=self.consent_response)
        return httpx.Response(404, json={"success": False, "message": "not found"})

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def bodies(self, method: str, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.calls(method, path)]


class FakeGateway:
    """Duplex connection double with the websockets client surface the bridge uses."""

    _CLOSE = object()

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(self._CLOSE)

    def feed(self, frame: Any) -> None:
        """Deliver a frame from the host; dicts are JSON-encoded."""
        self._incoming.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self) -> None:
        """Remote side closes cleanly."""
        self._incoming.put_nowait(self._CLOSE)

    def fail(self, error: Exception) -> None:
        """Remote side closes abnormally."""
        self._incoming.put_nowait(error)

    def frames(self) -> list[dict]:
        return [json.loads(s) for s in self.sent]

    def frames_of(self, frame_type: str) -> list[dict]:
        return [f for f in self.frames() if f.get("type") == frame_type]

    def __aiter__(self) -> "FakeGateway":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is self._CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Connector double; each call consumes the next outcome ("ok" or an exception)."""

    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.urls: list[str] = []
        self.gateways: list[FakeGateway] = []
        self.events: list[str] | None = None

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url: str) -> FakeGateway:
        self.urls.append(url)
        if self.events is not None:
            self.events.append("connect")
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        gateway = FakeGateway()
        self.gateways.append(gateway)
        return gateway


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
async def http_client(fake_registry: FakeRegistry):
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_registry.handler))
    yield client
    await client.aclose()


@pytest.fixture
async def client(http_client: httpx.AsyncClient):
    registry_client = RegistrySessionClient(
        "@alice",
        working_on="testing",
        registry_url=REGISTRY_URL,
        http_client=http_client,
    )
    yield registry_client
    await registry_client.stop()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def bridge_config() -> BridgeConfig:
    return BridgeConfig(
        handle="alice",
        working_on="testing",
        registry_url=REGISTRY_URL,
        gateway_url=GATEWAY_URL,
        poll_interval=0.05,
        heartbeat_interval=10.0,
    )
