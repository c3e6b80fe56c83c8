"""
Bridge Configuration

Dataclass settings for the registry client and the relay bridge, with an
environment-based loader.

Environment variables (a .env file in the working directory is loaded first):
- AIRC_HANDLE: Agent handle (required)
- AIRC_WORKING_ON: Status line published with presence
- AIRC_REGISTRY_URL: Registry base URL (default: https://www.slashvibe.dev)
- AIRC_GATEWAY_URL: Host gateway websocket URL (default: ws://127.0.0.1:18789)
- AIRC_AUTO_ACCEPT_CONSENT: Accept handshakes without asking the host (default: true)
- AIRC_IS_AGENT: Register as an autonomous agent (default: true)
- AIRC_OPERATOR: Optional human operator handle
- AIRC_POLL_INTERVAL: Seconds between inbox polls (default: 3)
- AIRC_HEARTBEAT_INTERVAL: Seconds between heartbeats (default: 30)
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable

from dotenv import find_dotenv, load_dotenv

from airc_bridge.errors import ConfigError
from airc_bridge.registry.client import DEFAULT_REGISTRY, DEFAULT_WORKING_ON
from airc_bridge.registry.models import InboundMessage

DEFAULT_GATEWAY = "ws://127.0.0.1:18789"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class AgentConfig:
    """
    Identity settings for the registry client.

    Attributes:
        handle: Unique agent handle
        working_on: Status line published with presence
        registry_url: Registry base URL
        is_agent: Whether the identity is an autonomous agent
        operator: Optional human operator handle
    """
    handle: str
    working_on: str = DEFAULT_WORKING_ON
    registry_url: str = DEFAULT_REGISTRY
    is_agent: bool = True
    operator: str | None = None


@dataclass
class BridgeConfig(AgentConfig):
    """
    Relay bridge settings.

    Attributes:
        gateway_url: Local host gateway websocket URL
        auto_accept_consent: Accept handshakes automatically instead of
            forwarding them to the host. Fixed for the bridge's lifetime.
        poll_interval: Seconds between inbox polls
        heartbeat_interval: Seconds between heartbeats
        on_ready: Called once the bridge is fully started
        on_message: Called for every inbound registry message
        on_error: Called with registration and gateway errors
    """
    gateway_url: str = DEFAULT_GATEWAY
    auto_accept_consent: bool = True
    poll_interval: float = 3.0
    heartbeat_interval: float = 30.0
    on_ready: Callable[[], Awaitable[None] | None] | None = None
    on_message: Callable[[InboundMessage], Awaitable[None] | None] | None = None
    on_error: Callable[[Exception], Awaitable[None] | None] | None = None


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _parse_float(name: str, value: str) -> float:
    try:
        result = float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if result <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return result


def load_bridge_config(**overrides: Any) -> BridgeConfig:
    """
    Build a BridgeConfig from the environment.

    Keyword overrides take precedence over environment values; an
    override of None is treated as "not given".

    Raises:
        ConfigError: On a missing handle or unparseable values
    """
    load_dotenv(find_dotenv(usecwd=True))

    values: dict[str, Any] = {}
    env = os.environ

    if "AIRC_HANDLE" in env:
        values["handle"] = env["AIRC_HANDLE"]
    if "AIRC_WORKING_ON" in env:
        values["working_on"] = env["AIRC_WORKING_ON"]
    if "AIRC_REGISTRY_URL" in env:
        values["registry_url"] = env["AIRC_REGISTRY_URL"]
    if "AIRC_GATEWAY_URL" in env:
        values["gateway_url"] = env["AIRC_GATEWAY_URL"]
    if "AIRC_OPERATOR" in env:
        values["operator"] = env["AIRC_OPERATOR"] or None
    if "AIRC_AUTO_ACCEPT_CONSENT" in env:
        values["auto_accept_consent"] = _parse_bool(
            "AIRC_AUTO_ACCEPT_CONSENT", env["AIRC_AUTO_ACCEPT_CONSENT"]
        )
    if "AIRC_IS_AGENT" in env:
        values["is_agent"] = _parse_bool("AIRC_IS_AGENT", env["AIRC_IS_AGENT"])
    if "AIRC_POLL_INTERVAL" in env:
        values["poll_interval"] = _parse_float("AIRC_POLL_INTERVAL", env["AIRC_POLL_INTERVAL"])
    if "AIRC_HEARTBEAT_INTERVAL" in env:
        values["heartbeat_interval"] = _parse_float(
            "AIRC_HEARTBEAT_INTERVAL", env["AIRC_HEARTBEAT_INTERVAL"]
        )

    known = {f.name for f in fields(BridgeConfig)}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown config option: {key}")
        if value is not None:
            values[key] = value

    if not values.get("handle"):
        raise ConfigError("An agent handle is required (set AIRC_HANDLE)")

    return BridgeConfig(**values)


def generate_handle() -> str:
    """Throwaway handle: 'openclaw_' plus the last 6 base36 digits of the clock."""
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    n = int(time.time() * 1000)
    digits = ""
    while n:
        n, rem = divmod(n, 36)
        digits = alphabet[rem] + digits
    return f"openclaw_{digits[-6:]}"
