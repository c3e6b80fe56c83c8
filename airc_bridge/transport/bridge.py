"""
Relay Bridge

Connects an AIRC registry session to the local host gateway over a
websocket. Registry events are forwarded to the gateway as tagged
frames, and gateway commands are turned into registry calls.

Startup order:
1. Register with the registry (fatal on failure)
2. Open the gateway connection (fatal on failure)
3. Start registry polling and heartbeats
4. Call on_ready

Polling only starts once the gateway is open, so the first forwarded
events always have somewhere to go.

Reconnect policy applies to the gateway only. Each close schedules a
reconnect after min(2**attempt, 30) seconds, up to 5 attempts. A
successful open resets the counter. Once the ceiling is reached the
bridge stays disconnected from the gateway until started again.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
import websockets

from airc_bridge.config import BridgeConfig
from airc_bridge.errors import FrameDecodeError, GatewayConnectionError, RegistrationError
from airc_bridge.protocol.frames import (
    AcceptConsentCommand,
    BlockCommand,
    OpaqueFrame,
    PresenceCommand,
    SendCommand,
    UpdateStatusCommand,
    create_channel_register,
    create_consent_request,
    create_incoming_message,
    create_presence_response,
    encode_frame,
    parse_gateway_frame,
)
from airc_bridge.registry.client import RegistrySessionClient
from airc_bridge.registry.models import (
    ConsentRequest,
    InboundMessage,
    PresenceRecord,
    SendResult,
)

MAX_RECONNECT_ATTEMPTS = 5
BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0

# Opens a websocket to the given URL
GatewayConnector = Callable[[str], Awaitable[Any]]


class GatewayState(str, Enum):
    """Host gateway connection state."""
    ABSENT = "absent"  # Never connected
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def reconnect_delay(attempt: int) -> float:
    """Backoff in seconds before reconnect `attempt` (1-based)."""
    return min(BASE_RECONNECT_DELAY * 2 ** attempt, MAX_RECONNECT_DELAY)


class RelayBridge:
    """
    AIRC <-> host gateway relay.

    Owns the gateway connection and its reconnect policy. Everything
    registry-side is delegated to a RegistrySessionClient.
    """

    def __init__(
        self,
        config: BridgeConfig,
        registry: RegistrySessionClient | None = None,
        connect: GatewayConnector | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the bridge and wire registry handlers.

        Args:
            config: Bridge settings; auto_accept_consent is read once here
            registry: Optional pre-built registry client
            connect: Optional websocket connector (default: websockets.connect)
            http_client: Optional httpx client for the registry client
            logger: Optional logger; defaults to the module logger
        """
        self._config = config
        self._log = logger or logging.getLogger(__name__)
        self._owns_registry = registry is None
        self._registry = registry or RegistrySessionClient(
            handle=config.handle,
            working_on=config.working_on,
            registry_url=config.registry_url,
            is_agent=config.is_agent,
            operator=config.operator,
            http_client=http_client,
            logger=logger,
        )
        self._connect = connect or websockets.connect
        self._gateway_url = config.gateway_url
        self._auto_accept_consent = config.auto_accept_consent

        self._gateway: Any = None
        self._gateway_state = GatewayState.ABSENT
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._reconnect_attempts = 0
        self._max_reconnect_attempts = MAX_RECONNECT_ATTEMPTS
        self._stopped = False

        self._registry.on_message(self._handle_airc_message)
        if self._auto_accept_consent:
            self._registry.on_consent_request(self._accept_consent_request)
        else:
            self._registry.on_consent_request(self._forward_consent_request)

    # === Lifecycle ===

    async def start(self) -> None:
        """
        Register, open the gateway, then start polling.

        Raises:
            RegistrationError: If the registry rejects the agent
            GatewayConnectionError: If the gateway cannot be opened
        """
        self._stopped = False
        handle = self._registry.handle

        self._log.info(f"Registering @{handle} with AIRC...")
        result = await self._registry.register()
        if not result.success:
            error = RegistrationError(result.error)
            await self._emit_error(error)
            raise error

        self._log.info("Registered! Connecting to gateway...")
        self._reconnect_attempts = 0
        try:
            await self._connect_gateway()
        except Exception as e:
            error = GatewayConnectionError(self._gateway_url, e)
            await self._emit_error(error)
            raise error from e

        await self._registry.start(
            self._config.poll_interval,
            self._config.heartbeat_interval,
        )

        self._log.info(f"Bridge active. @{handle} is now on AIRC + gateway.")
        await self._call(self._config.on_ready)

    async def stop(self) -> None:
        """Stop polling and close the gateway. Idempotent."""
        self._stopped = True
        await self._registry.stop()

        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and reconnect is not asyncio.current_task():
            reconnect.cancel()

        gateway = self._gateway
        reader = self._reader_task
        self._gateway = None
        self._reader_task = None
        if gateway is None:
            return

        self._gateway_state = GatewayState.CLOSED
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        try:
            await gateway.close()
        except Exception as e:
            self._log.warning(f"Error closing gateway: {e}")
        self._log.info("Bridge stopped")

    async def aclose(self) -> None:
        """Stop and release the registry client if the bridge created it."""
        await self.stop()
        if self._owns_registry:
            await self._registry.aclose()

    def is_connected(self) -> bool:
        """True only when the registry session and the gateway are both up."""
        return self._registry.is_connected() and self._gateway_state is GatewayState.OPEN

    # === Gateway connection ===

    async def _connect_gateway(self) -> None:
        self._gateway_state = GatewayState.CONNECTING
        try:
            gateway = await self._connect(self._gateway_url)
        except Exception:
            self._gateway_state = GatewayState.CLOSED
            raise

        if self._stopped:
            # stop() ran while the open was in flight
            self._gateway_state = GatewayState.CLOSED
            await gateway.close()
            return

        self._gateway = gateway
        self._gateway_state = GatewayState.OPEN
        await self._on_gateway_open()
        self._reader_task = asyncio.create_task(
            self._read_gateway(gateway),
            name="airc_gateway_reader",
        )

    async def _on_gateway_open(self) -> None:
        self._log.info(f"Connected to gateway at {self._gateway_url}")
        self._reconnect_attempts = 0
        await self._send_to_gateway(create_channel_register(self._registry.handle))

    async def _read_gateway(self, gateway: Any) -> None:
        """Consume frames until the connection ends, then handle the close."""
        try:
            async for raw in gateway:
                await self._handle_gateway_frame(raw)
        except Exception as e:
            # Abnormal closure; reconnect is driven by the close below
            self._log.error(f"Gateway error: {e}")
            await self._emit_error(e)
        self._on_gateway_close(gateway)

    def _on_gateway_close(self, gateway: Any) -> None:
        if gateway is not self._gateway:
            return
        self._gateway = None
        self._reader_task = None
        self._gateway_state = GatewayState.CLOSED
        self._log.info("Gateway connection closed")
        if not self._stopped:
            self._attempt_reconnect()

    def _attempt_reconnect(self) -> None:
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            self._log.error("Max reconnect attempts reached")
            return

        self._reconnect_attempts += 1
        delay = reconnect_delay(self._reconnect_attempts)
        self._log.info(
            f"Reconnecting in {delay:g}s (attempt {self._reconnect_attempts})"
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay),
            name=f"airc_gateway_reconnect_{self._reconnect_attempts}",
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopped:
            return
        try:
            await self._connect_gateway()
        except Exception as e:
            # A failed open is another close
            self._log.error(f"Reconnect failed: {e}")
            await self._emit_error(e)
            if not self._stopped:
                self._attempt_reconnect()

    async def _send_to_gateway(self, frame: dict[str, Any]) -> None:
        gateway = self._gateway
        if gateway is None or self._gateway_state is not GatewayState.OPEN:
            self._log.debug(f"Gateway not open, dropping {frame['type']} frame")
            return
        try:
            await gateway.send(encode_frame(frame))
        except Exception as e:
            self._log.error(f"Failed to send {frame['type']} to gateway: {e}")

    # === Gateway -> AIRC ===

    async def _handle_gateway_frame(self, raw: str | bytes) -> None:
        try:
            command = parse_gateway_frame(raw)
        except FrameDecodeError as e:
            self._log.warning(f"Failed to parse gateway message: {e}")
            return

        try:
            await self._dispatch_command(command)
        except Exception as e:
            self._log.error(f"Gateway command {type(command).__name__} failed: {e}")

    async def _dispatch_command(self, command: Any) -> None:
        if isinstance(command, SendCommand):
            result = await self._registry.send(command.to, command.text, command.payload)
            if not result.success:
                self._log.warning(f"Send to @{command.to} failed: {result.error}")

        elif isinstance(command, AcceptConsentCommand):
            await self._registry.accept_consent(command.handle)

        elif isinstance(command, BlockCommand):
            await self._registry.block_agent(command.handle)

        elif isinstance(command, PresenceCommand):
            agents = await self._registry.get_presence()
            await self._send_to_gateway(create_presence_response(agents))

        elif isinstance(command, UpdateStatusCommand):
            self._registry.set_working_on(command.working_on)

        elif isinstance(command, OpaqueFrame):
            self._log.debug(f"Ignoring gateway frame of type {command.type!r}")

    # === AIRC -> gateway ===

    async def _handle_airc_message(self, message: InboundMessage) -> None:
        self._log.info(f"Message from @{message.sender}: {message.text[:50]}...")
        await self._call(self._config.on_message, message)
        await self._send_to_gateway(create_incoming_message(message))

    async def _accept_consent_request(self, request: ConsentRequest) -> None:
        self._log.info(f"Auto-accepting consent from @{request.sender}")
        await self._registry.accept_consent(request.sender)

    async def _forward_consent_request(self, request: ConsentRequest) -> None:
        await self._send_to_gateway(create_consent_request(request))

    # === Delegation ===

    async def send(self, to: str, text: str, payload: Any = None) -> SendResult:
        return await self._registry.send(to, text, payload)

    async def get_presence(self) -> list[PresenceRecord]:
        return await self._registry.get_presence()

    @property
    def registry(self) -> RegistrySessionClient:
        return self._registry

    @property
    def gateway_state(self) -> GatewayState:
        return self._gateway_state

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # === Callbacks ===

    async def _emit_error(self, error: Exception) -> None:
        await self._call(self._config.on_error, error)

    async def _call(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._log.error(f"Callback {getattr(callback, '__name__', callback)!r} raised: {e}")
