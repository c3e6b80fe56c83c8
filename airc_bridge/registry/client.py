"""
Registry Session Client

Owns the agent's session with the AIRC registry: registration, the
bearer token, periodic inbox polling and heartbeats, and the outbound
send/consent/block/presence calls.

Failure model:
- register() never raises; transport faults and registry rejections
  both come back as RegistrationResult(success=False).
- Steady-state calls swallow transport faults into structured results,
  empty lists or False.
- Poll and heartbeat ticks log their failures and keep ticking.

Timing:
- start() spawns two timer tasks. Every tick runs its action as a
  separate task so a slow network call never delays the schedule.
  Overlapping polls are tolerated; the watermark only moves forward.
- stop() cancels the timers only. Actions already in flight complete
  after stop() and must find the client in a usable state.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError

from airc_bridge import __version__
from airc_bridge.errors import NotRegisteredError
from airc_bridge.registry.models import (
    AgentIdentity,
    ConsentRequest,
    InboundMessage,
    PresenceRecord,
    RegistrationResult,
    SendResult,
    normalize_handle,
)

DEFAULT_REGISTRY = "https://www.slashvibe.dev"
DEFAULT_WORKING_ON = "AIRC agent"
CLIENT_NAME = "airc-bridge"

# Handler types; coroutine functions are awaited
MessageHandler = Callable[[InboundMessage], Awaitable[None] | None]
ConsentHandler = Callable[[ConsentRequest], Awaitable[None] | None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class RegistrySessionClient:
    """
    Client for one agent's session with the AIRC registry.

    State machine:
        Unregistered --register()--> Registered --start()--> Polling
        Polling --stop()--> Registered (quiescent, can start() again)
    A failed register() leaves the client Unregistered.
    """

    def __init__(
        self,
        handle: str,
        working_on: str | None = None,
        registry_url: str | None = None,
        is_agent: bool = True,
        operator: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ):
        """
        Initialize the client. No network traffic happens here.

        Args:
            handle: Unique agent handle (a leading '@' is dropped)
            working_on: Status line published with presence
            registry_url: Registry base URL
            is_agent: Whether this identity is an autonomous agent
            operator: Optional human operator handle
            http_client: Optional pre-configured httpx client (not closed by aclose())
            logger: Optional logger; defaults to the module logger
        """
        self._registry = (registry_url or DEFAULT_REGISTRY).rstrip("/")
        self._identity = AgentIdentity(
            handle=normalize_handle(handle),
            working_on=working_on or DEFAULT_WORKING_ON,
            is_agent=is_agent,
            operator=operator,
        )

        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            headers={"Content-Type": "application/json"},
        )
        self._log = logger or logging.getLogger(__name__)

        self._message_handlers: list[MessageHandler] = []
        self._consent_handlers: list[ConsentHandler] = []

        # Epoch ms; messages newer than this have not been delivered
        self._last_poll_time: int = 0
        self._connected = False

        self._poll_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        # Strong references to in-flight tick actions
        self._inflight: set[asyncio.Task] = set()

    # === Session lifecycle ===

    async def register(self) -> RegistrationResult:
        """
        Register the identity with the registry.

        On success stores the token and session id, marks the client
        connected and sets the poll watermark to now. On failure the
        client state is left untouched.
        """
        identity = self._identity
        body = {
            "action": "register",
            "username": identity.handle,
            "workingOn": identity.working_on,
            "status": "available",
            "isAgent": identity.is_agent,
            "client": {"name": CLIENT_NAME, "version": __version__},
        }
        if identity.operator:
            body["operator"] = identity.operator

        try:
            response = await self._http.post(self._url("/api/presence"), json=body)
            data = response.json()
        except Exception as e:
            self._log.error(f"Registration request for @{identity.handle} failed: {e}")
            return RegistrationResult(success=False, error=str(e) or type(e).__name__)

        if isinstance(data, dict) and data.get("success") and data.get("token"):
            identity.token = str(data["token"])
            session_id = data.get("sessionId")
            identity.session_id = str(session_id) if session_id is not None else None
            self._connected = True
            self._last_poll_time = _now_ms()
            self._log.info(f"Registered @{identity.handle} (session: {identity.session_id})")
            return RegistrationResult(success=True, token=identity.token)

        message = data.get("message") if isinstance(data, dict) else None
        return RegistrationResult(success=False, error=message or "Registration failed")

    async def start(
        self,
        poll_interval: float = 5.0,
        heartbeat_interval: float = 30.0,
    ) -> None:
        """
        Start polling and heartbeats. The first poll runs immediately.

        Args:
            poll_interval: Seconds between inbox polls
            heartbeat_interval: Seconds between heartbeats

        Raises:
            NotRegisteredError: If register() has not succeeded
        """
        if not self._identity.is_registered:
            raise NotRegisteredError("Must register before starting")

        # Restarting replaces any running schedule
        await self._cancel_timers()

        self._connected = True
        self._poll_task = asyncio.create_task(
            self._tick_loop(self.poll, poll_interval, immediate=True),
            name=f"airc_poll_{self._identity.handle}",
        )
        self._heartbeat_task = asyncio.create_task(
            self._tick_loop(self.heartbeat, heartbeat_interval, immediate=False),
            name=f"airc_heartbeat_{self._identity.handle}",
        )
        self._log.info(
            f"Polling every {poll_interval}s, heartbeat every {heartbeat_interval}s"
        )

    async def stop(self) -> None:
        """Cancel polling and heartbeats. Idempotent, safe before start()."""
        await self._cancel_timers()
        self._connected = False

    async def aclose(self) -> None:
        """Stop and release the HTTP client if this client created it."""
        await self.stop()
        if self._owns_http:
            await self._http.aclose()

    async def _cancel_timers(self) -> None:
        tasks = [t for t in (self._poll_task, self._heartbeat_task) if t is not None]
        self._poll_task = None
        self._heartbeat_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _tick_loop(
        self,
        action: Callable[[], Awaitable[Any]],
        interval: float,
        immediate: bool,
    ) -> None:
        """Run `action` every `interval` seconds as an independent task."""
        if immediate:
            self._spawn(action)
        while True:
            await asyncio.sleep(interval)
            self._spawn(action)

    def _spawn(self, action: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.create_task(action())
        self._inflight.add(task)
        task.add_done_callback(self._action_done)

    def _action_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error(f"Scheduled registry action failed: {exc!r}")

    # === Periodic actions ===

    async def heartbeat(self) -> None:
        """Publish current status. Silently does nothing when unregistered."""
        identity = self._identity
        if not identity.is_registered:
            return

        try:
            await self._http.post(
                self._url("/api/presence"),
                headers=self._auth_headers(),
                json={
                    "action": "heartbeat",
                    "username": identity.handle,
                    "status": "available",
                    "workingOn": identity.working_on,
                    "source": CLIENT_NAME,
                },
            )
        except Exception as e:
            self._log.error(f"Heartbeat failed: {e}")

    async def poll(self) -> list[InboundMessage]:
        """
        Fetch messages newer than the watermark and dispatch them.

        Consent/handshake items go to consent handlers, everything else
        to message handlers, in registry order. The watermark moves to
        "now" (not the newest message timestamp) only when the batch is
        non-empty; a message stored between the fetch and that update
        can therefore be missed.

        Items that fail validation are logged and skipped; they still
        count toward advancing the watermark.

        Returns:
            The well-formed part of the fetched batch, or [] on failure
        """
        identity = self._identity
        if not identity.is_registered:
            return []

        try:
            response = await self._http.get(
                self._url("/api/messages"),
                params={"user": identity.handle, "since": self._last_poll_time},
                headers=self._auth_headers(),
            )
            data = response.json()
            items = data.get("messages") or []
        except Exception as e:
            self._log.error(f"Poll failed: {e}")
            return []

        if not items:
            return []

        # Advance even if every item is malformed, or the inbox stalls on them
        self._last_poll_time = max(self._last_poll_time, _now_ms())

        messages = []
        for item in items:
            try:
                messages.append(InboundMessage.model_validate(item))
            except ValidationError as e:
                self._log.warning(f"Skipping malformed inbox item: {e}")

        for message in messages:
            if message.is_consent_request:
                request = message.to_consent_request()
                for handler in list(self._consent_handlers):
                    await self._invoke(handler, request)
            else:
                for handler in list(self._message_handlers):
                    await self._invoke(handler, message)

        return messages

    async def _invoke(self, handler: Callable[[Any], Any], item: Any) -> None:
        try:
            result = handler(item)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._log.error(f"Handler {getattr(handler, '__name__', handler)!r} raised: {e}")

    # === Outbound operations ===

    async def send(self, to: str, text: str, payload: Any = None) -> SendResult:
        """
        Send a message as this agent.

        Never touches the network when unregistered. Any registry reply
        without an explicit `success: false` counts as delivered.
        """
        identity = self._identity
        if not identity.is_registered:
            return SendResult(success=False, error="Not registered")

        message_type = "text"
        if isinstance(payload, dict) and payload.get("type"):
            message_type = payload["type"]

        try:
            response = await self._http.post(
                self._url("/api/messages"),
                headers=self._auth_headers(),
                json={
                    "from": identity.handle,
                    "to": normalize_handle(to),
                    "text": text,
                    "type": message_type,
                    "payload": payload,
                },
            )
            data = response.json()
        except Exception as e:
            return SendResult(success=False, error=str(e) or type(e).__name__)

        if isinstance(data, dict) and data.get("success") is False:
            return SendResult(success=False, error=data.get("message") or data.get("error"))
        return SendResult(success=True)

    async def get_presence(self) -> list[PresenceRecord]:
        """Fetch the active-agent list. Unauthenticated; [] on any failure."""
        try:
            response = await self._http.get(self._url("/api/presence"))
            data = response.json()
            items = data.get("active") or []
        except Exception as e:
            self._log.error(f"Presence fetch failed: {e}")
            return []

        records = []
        for item in items:
            try:
                records.append(PresenceRecord.model_validate(item))
            except ValidationError as e:
                self._log.warning(f"Skipping malformed presence record: {e}")
        return records

    async def accept_consent(self, from_handle: str) -> bool:
        """Record consent for `from_handle` to message this agent."""
        return await self._post_consent("accept", from_handle)

    async def block_agent(self, from_handle: str) -> bool:
        """Block `from_handle` from contacting this agent."""
        return await self._post_consent("block", from_handle)

    async def _post_consent(self, action: str, from_handle: str) -> bool:
        identity = self._identity
        if not identity.is_registered:
            return False

        try:
            response = await self._http.post(
                self._url("/api/consent"),
                headers=self._auth_headers(),
                json={
                    "action": action,
                    "from": identity.handle,
                    "handle": normalize_handle(from_handle),
                },
            )
            data = response.json()
        except Exception as e:
            self._log.error(f"Consent {action} for @{from_handle} failed: {e}")
            return False

        return not (isinstance(data, dict) and data.get("success") is False)

    # === Handlers and local state ===

    def on_message(self, handler: MessageHandler) -> None:
        """Append a message handler. Handlers are never removed."""
        self._message_handlers.append(handler)

    def on_consent_request(self, handler: ConsentHandler) -> None:
        """Append a consent handler. Handlers are never removed."""
        self._consent_handlers.append(handler)

    def set_working_on(self, working_on: str) -> None:
        """Update the status line; published on the next heartbeat."""
        self._identity.working_on = working_on

    def is_connected(self) -> bool:
        return self._connected

    @property
    def handle(self) -> str:
        return self._identity.handle

    @property
    def identity(self) -> AgentIdentity:
        """Snapshot of the identity; mutating it does not affect the client."""
        return self._identity.model_copy()

    @property
    def watermark(self) -> int:
        return self._last_poll_time

    # === Helpers ===

    def _url(self, path: str) -> str:
        return f"{self._registry}{path}"

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._identity.token}"}
