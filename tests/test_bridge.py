import asyncio
import json

import pytest
import websockets

import airc_bridge.transport.bridge as bridge_module
from airc_bridge.errors import GatewayConnectionError, RegistrationError
from airc_bridge.transport.bridge import GatewayState, RelayBridge, reconnect_delay

from conftest import FakeConnector, wait_for


@pytest.fixture
def recorded_delays(monkeypatch) -> list[float]:
    """Record backoff delays while sleeping for none of them."""
    delays: list[float] = []

    def fake_delay(attempt: int) -> float:
        delays.append(reconnect_delay(attempt))
        return 0

    monkeypatch.setattr(bridge_module, "reconnect_delay", fake_delay)
    return delays


@pytest.fixture
async def make_bridge(bridge_config, http_client):
    bridges: list[RelayBridge] = []

    def factory(connector, **overrides) -> RelayBridge:
        for key, value in overrides.items():
            setattr(bridge_config, key, value)
        bridge = RelayBridge(bridge_config, connect=connector, http_client=http_client)
        bridges.append(bridge)
        return bridge

    yield factory
    for bridge in bridges:
        await bridge.stop()


def incoming(sender="@bob", text="hello", msg_type="text", msg_id="m1") -> dict:
    return {"id": msg_id, "from": sender, "to": "alice", "text": text,
            "type": msg_type, "timestamp": 1700000000000}


# === Startup ===

async def test_registration_failure_is_fatal_and_reported(make_bridge, connector, fake_registry):
    errors = []
    fake_registry.register_response = {"success": False, "message": "Handle taken"}
    bridge = make_bridge(connector, on_error=errors.append)

    with pytest.raises(RegistrationError, match="Handle taken"):
        await bridge.start()

    assert connector.calls == 0
    assert len(errors) == 1 and isinstance(errors[0], RegistrationError)
    assert not bridge.is_connected()


async def test_initial_gateway_failure_is_fatal(make_bridge, fake_registry):
    connector = FakeConnector([ConnectionRefusedError("no gateway")])
    errors = []
    bridge = make_bridge(connector, on_error=errors.append)

    with pytest.raises(GatewayConnectionError):
        await bridge.start()

    assert isinstance(errors[0], GatewayConnectionError)
    assert fake_registry.calls("GET", "/api/messages") == []
    assert bridge.gateway_state is GatewayState.CLOSED


async def test_start_opens_gateway_before_polling(make_bridge, connector, fake_registry):
    events: list[str] = []
    connector.events = events
    fake_registry.events = events
    ready = []
    bridge = make_bridge(connector, on_ready=lambda: ready.append(True))

    await bridge.start()
    await wait_for(lambda: "GET /api/messages" in events)

    assert events.index("connect") < events.index("GET /api/messages")
    assert ready == [True]
    assert bridge.is_connected()
    assert bridge.gateway_state is GatewayState.OPEN
    assert connector.urls == ["ws://gateway.test:18789"]


async def test_open_announces_relay_channel(make_bridge, connector):
    bridge = make_bridge(connector)
    await bridge.start()

    assert connector.gateways[0].frames()[0] == {
        "type": "channel:register",
        "channel": "airc",
        "handle": "alice",
    }


# === Registry -> gateway ===

async def test_inbound_message_is_forwarded_and_offered_to_callback(make_bridge, connector, fake_registry):
    seen = []
    fake_registry.inbox.append([incoming()])
    bridge = make_bridge(connector, on_message=seen.append)

    await bridge.start()
    gateway = connector.gateways[0]
    await wait_for(lambda: gateway.frames_of("airc:message"))

    assert gateway.frames_of("airc:message") == [{
        "type": "airc:message",
        "from": "bob",
        "text": "hello",
        "payload": None,
        "timestamp": 1700000000000,
        "messageId": "m1",
    }]
    assert [m.sender for m in seen] == ["bob"]


async def test_consent_request_is_auto_accepted(make_bridge, connector, fake_registry):
    seen = []
    fake_registry.inbox.append([incoming(sender="@carol", msg_type="consent_request")])
    bridge = make_bridge(connector, on_message=seen.append)

    await bridge.start()
    await wait_for(lambda: fake_registry.calls("POST", "/api/consent"))

    assert fake_registry.bodies("POST", "/api/consent") == [
        {"action": "accept", "from": "alice", "handle": "carol"}
    ]
    assert seen == []
    assert connector.gateways[0].frames_of("airc:message") == []
    assert connector.gateways[0].frames_of("airc:consent_request") == []


async def test_consent_request_is_forwarded_when_auto_accept_disabled(make_bridge, connector, fake_registry):
    fake_registry.inbox.append([incoming(sender="carol", text="intro", msg_type="system:handshake_request")])
    bridge = make_bridge(connector, auto_accept_consent=False)

    await bridge.start()
    gateway = connector.gateways[0]
    await wait_for(lambda: gateway.frames_of("airc:consent_request"))

    assert gateway.frames_of("airc:consent_request") == [{
        "type": "airc:consent_request",
        "from": "carol",
        "message": "intro",
        "timestamp": 1700000000000,
    }]
    assert fake_registry.calls("POST", "/api/consent") == []


# === Gateway -> registry ===

async def test_gateway_commands_reach_the_registry(make_bridge, connector, fake_registry):
    bridge = make_bridge(connector)
    await bridge.start()
    gateway = connector.gateways[0]

    gateway.feed({"type": "airc:send", "to": "@bob", "text": "ping", "payload": {"type": "task"}})
    gateway.feed({"type": "airc:accept_consent", "handle": "carol"})
    gateway.feed({"type": "airc:block", "handle": "@mallory"})
    gateway.feed({"type": "airc:update_status", "workingOn": "shipping"})
    await wait_for(lambda: bridge.registry.identity.working_on == "shipping")

    assert fake_registry.bodies("POST", "/api/messages") == [
        {"from": "alice", "to": "bob", "text": "ping", "type": "task", "payload": {"type": "task"}}
    ]
    assert [b["action"] for b in fake_registry.bodies("POST", "/api/consent")] == ["accept", "block"]
    assert [b["handle"] for b in fake_registry.bodies("POST", "/api/consent")] == ["carol", "mallory"]


async def test_presence_request_is_answered_over_the_gateway(make_bridge, connector, fake_registry):
    fake_registry.presence = {"active": [{"handle": "bob", "status": "available", "workingOn": "x"}]}
    bridge = make_bridge(connector)
    await bridge.start()
    gateway = connector.gateways[0]

    gateway.feed({"type": "airc:presence"})
    await wait_for(lambda: gateway.frames_of("airc:presence_response"))

    assert gateway.frames_of("airc:presence_response") == [{
        "type": "airc:presence_response",
        "agents": [{"handle": "bob", "status": "available", "workingOn": "x"}],
    }]


async def test_malformed_and_unknown_frames_do_not_break_the_connection(make_bridge, connector):
    bridge = make_bridge(connector)
    await bridge.start()
    gateway = connector.gateways[0]

    gateway.feed("{not json")
    gateway.feed({"type": "airc:send"})
    gateway.feed({"type": "something:else", "x": 1})
    gateway.feed({"type": "airc:update_status", "workingOn": "still here"})
    await wait_for(lambda: bridge.registry.identity.working_on == "still here")

    assert bridge.is_connected()
    assert connector.calls == 1


# === Reconnect ===

def test_backoff_sequence():
    assert [reconnect_delay(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 30.0]


async def test_reconnect_gives_up_after_five_attempts(make_bridge, recorded_delays):
    connector = FakeConnector(["ok"] + [ConnectionRefusedError("down")] * 10)
    bridge = make_bridge(connector)
    await bridge.start()

    connector.gateways[0].drop()
    await wait_for(lambda: connector.calls == 6)
    await asyncio.sleep(0.05)

    assert connector.calls == 6
    assert bridge.reconnect_attempts == 5
    assert recorded_delays == [2.0, 4.0, 8.0, 16.0, 30.0]
    assert bridge.gateway_state is GatewayState.CLOSED
    assert not bridge.is_connected()


async def test_successful_reconnect_resets_attempts(make_bridge, recorded_delays):
    connector = FakeConnector(["ok", ConnectionRefusedError("down"), "ok"])
    bridge = make_bridge(connector)
    await bridge.start()

    connector.gateways[0].drop()
    await wait_for(lambda: len(connector.gateways) == 2)

    assert bridge.reconnect_attempts == 0
    assert bridge.gateway_state is GatewayState.OPEN
    assert recorded_delays == [2.0, 4.0]
    assert connector.gateways[1].frames()[0]["type"] == "channel:register"

    # A fresh run of closes starts from the first delay again
    connector.gateways[1].drop()
    await wait_for(lambda: len(connector.gateways) == 3)
    assert recorded_delays == [2.0, 4.0, 2.0]


async def test_abnormal_close_reports_error_then_reconnects(make_bridge, recorded_delays):
    connector = FakeConnector()
    errors = []
    bridge = make_bridge(connector, on_error=errors.append)
    await bridge.start()

    failure = ConnectionResetError("reset by peer")
    connector.gateways[0].fail(failure)
    await wait_for(lambda: len(connector.gateways) == 2)

    assert errors == [failure]
    assert bridge.is_connected()


# === Stop ===

async def test_stop_closes_gateway_without_reconnecting(make_bridge, connector, recorded_delays):
    bridge = make_bridge(connector)
    await bridge.start()
    gateway = connector.gateways[0]

    await bridge.stop()
    await bridge.stop()
    await asyncio.sleep(0.05)

    assert gateway.closed
    assert connector.calls == 1
    assert recorded_delays == []
    assert not bridge.is_connected()
    assert not bridge.registry.is_connected()


async def test_stop_before_start_is_harmless(make_bridge, connector):
    bridge = make_bridge(connector)
    await bridge.stop()
    assert bridge.gateway_state is GatewayState.ABSENT


async def test_delegated_send_and_presence(make_bridge, connector, fake_registry):
    bridge = make_bridge(connector)
    assert (await bridge.send("bob", "early")).success is False

    await bridge.start()
    assert (await bridge.send("@bob", "hi")).success is True
    assert await bridge.get_presence() == []


# === Real websocket ===

async def test_relay_over_a_real_websocket(bridge_config, http_client, fake_registry):
    received: list[dict] = []
    presence_answered = asyncio.Event()
    fake_registry.presence = {"active": [{"handle": "bob", "status": "available"}]}

    async def gateway_handler(ws, *args):
        async for raw in ws:
            frame = json.loads(raw)
            received.append(frame)
            if frame["type"] == "channel:register":
                await ws.send(json.dumps({"type": "airc:presence"}))
            elif frame["type"] == "airc:presence_response":
                presence_answered.set()

    async with websockets.serve(gateway_handler, "127.0.0.1", 0) as server:
        port = server.sockets[0].getsockname()[1]
        bridge_config.gateway_url = f"ws://127.0.0.1:{port}"
        bridge = RelayBridge(bridge_config, http_client=http_client)
        try:
            await bridge.start()
            await asyncio.wait_for(presence_answered.wait(), timeout=5)
        finally:
            await bridge.stop()

    assert received[0] == {"type": "channel:register", "channel": "airc", "handle": "alice"}
    assert received[1] == {"type": "airc:presence_response", "agents": [{"handle": "bob", "status": "available"}]}
