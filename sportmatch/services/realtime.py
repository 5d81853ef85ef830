"""Realtime transport: one STOMP session over a negotiated channel.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (error/close) -> RECONNECTING -> CONNECTING ...
DISCONNECTED is also where the transport ends up after the reconnect ceiling;
only an explicit connect() leaves it.

Invariants:
- The local subscription registry is authoritative. Every (re)connect sends one
  SUBSCRIBE per distinct topic, so a message is delivered once per handler.
- The Authorization header is read from the credential store on every
  (re)connect, never cached from an earlier connect.
- publish() is fire-and-forget and fails fast when not connected. Nothing is
  queued across disconnects.
- Missing heart-beats count as a connection error.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import inspect
import itertools
import json
import logging
from typing import Any, Awaitable, Callable

from sportmatch import errors
from sportmatch.services.channels import Channel, open_channel
from sportmatch.services.signals import SignalBus, TransportUnavailable
from sportmatch.services.stomp import (
    HEARTBEAT,
    StompFrame,
    StompParser,
    negotiate_heartbeat,
    parse_heartbeat,
)
from sportmatch.settings import Settings, get_settings
from sportmatch.stores.credentials import Credential, CredentialStore

logger = logging.getLogger("sportmatch")

ChannelFactory = Callable[[], Awaitable[Channel]]


class TransportState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff: base, 2*base, 4*base ... capped at max_delay."""

    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def delays(self) -> list[float]:
        return [self.delay(n) for n in range(1, self.max_attempts + 1)]


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    body: str
    headers: dict[str, str]

    def json(self) -> Any:
        return json.loads(self.body)


Handler = Callable[[InboundMessage], Any]


@dataclass(frozen=True)
class Subscription:
    id: str
    topic: str
    handler: Handler


class RealtimeTransport:
    def __init__(
        self,
        store: CredentialStore,
        bus: SignalBus,
        settings: Settings | None = None,
        channel_factory: ChannelFactory | None = None,
        policy: ReconnectPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.bus = bus
        self.policy = policy or ReconnectPolicy(
            base_delay=self.settings.reconnect_base_delay,
            max_delay=self.settings.reconnect_max_delay,
            max_attempts=self.settings.reconnect_max_attempts,
        )
        self._channel_factory = channel_factory or (
            lambda: open_channel(self.settings.ws_url, timeout=self.settings.request_timeout)
        )
        self._sleep = sleep

        self._state = TransportState.DISCONNECTED
        self._state_changed = asyncio.Event()
        self._attempts = 0
        self._gave_up = False
        self._stopping = False
        self._task: asyncio.Task | None = None
        self._channel: Channel | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._side_tasks: set[asyncio.Task] = set()

        self._subscriptions: dict[str, Subscription] = {}
        self._topic_ids: dict[str, str] = {}
        self._handle_ids = itertools.count(1)
        self._stomp_ids = itertools.count(1)

        store.add_listener(self._on_credential_change)

    # ------------------------------------------------------------
    # State
    # ------------------------------------------------------------

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    def is_connected(self) -> bool:
        return self._state is TransportState.CONNECTED

    def _set_state(self, state: TransportState) -> None:
        if state is self._state:
            return
        logger.debug(f"Realtime transport {self._state.value} -> {state.value}")
        self._state = state
        self._state_changed.set()
        self._state_changed = asyncio.Event()

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait until CONNECTED.

        Raises:
            errors.TransportUnavailable: The reconnect ceiling was hit.
            errors.NotConnected: The transport is stopped.
            TimeoutError: On timeout.
        """

        async def _wait() -> None:
            while self._state is not TransportState.CONNECTED:
                if self._state is TransportState.DISCONNECTED:
                    if self._gave_up:
                        raise errors.TransportUnavailable(self.policy.max_attempts)
                    if self._stopping or not self._running():
                        raise errors.NotConnected("Realtime transport is not running")
                await self._state_changed.wait()

        await asyncio.wait_for(_wait(), timeout)

    def _running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    def connect(self) -> None:
        """Start the connection loop. No-op while already running."""
        if self._running():
            return
        self._stopping = False
        self._gave_up = False
        self._attempts = 0
        self._task = asyncio.ensure_future(self._run())

    async def disconnect(self) -> None:
        self._stopping = True
        if self._state is TransportState.CONNECTED and self._channel is not None:
            try:
                await self._channel.send(StompFrame("DISCONNECT").encode())
            except errors.TransportError as e:
                logger.debug(f"DISCONNECT frame not delivered: {e}")
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._close_channel()
        self._set_state(TransportState.DISCONNECTED)

    async def _run(self) -> None:
        while not self._stopping:
            self._set_state(TransportState.CONNECTING)
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Realtime connection lost: {e}")
            finally:
                await self._close_channel()

            if self._stopping:
                break

            self._attempts += 1
            if self._attempts > self.policy.max_attempts:
                logger.error(
                    f"Max reconnection attempts reached ({self.policy.max_attempts}), giving up"
                )
                self._gave_up = True
                self._set_state(TransportState.DISCONNECTED)
                self.bus.emit(TransportUnavailable(attempts=self.policy.max_attempts))
                return

            delay = self.policy.delay(self._attempts)
            self._set_state(TransportState.RECONNECTING)
            logger.info(
                f"Reconnecting in {delay:.1f}s (attempt {self._attempts}/{self.policy.max_attempts})"
            )
            await self._sleep(delay)

        self._set_state(TransportState.DISCONNECTED)

    async def _session(self) -> None:
        """One connection: handshake, resubscribe, read until it breaks."""
        channel = await self._channel_factory()
        self._channel = channel
        parser = StompParser()

        client_beat = (self.settings.heartbeat_outgoing_ms, self.settings.heartbeat_incoming_ms)
        headers = {
            "accept-version": "1.2,1.1",
            "heart-beat": f"{client_beat[0]},{client_beat[1]}",
        }
        auth = self.store.auth_header()
        if auth:
            headers["Authorization"] = auth
        await channel.send(StompFrame("CONNECT", headers).encode())

        connected = await asyncio.wait_for(
            self._next_frame(channel, parser), self.settings.request_timeout
        )
        if connected.command == "ERROR":
            raise errors.StompProtocolError(connected.headers.get("message", "CONNECT rejected"))
        if connected.command != "CONNECTED":
            raise errors.StompProtocolError(f"Expected CONNECTED, got {connected.command}")

        send_every, expect_every = negotiate_heartbeat(
            client_beat, parse_heartbeat(connected.headers.get("heart-beat"))
        )
        self._attempts = 0
        self._set_state(TransportState.CONNECTED)
        logger.info("Realtime transport connected")

        for topic, stomp_id in list(self._topic_ids.items()):
            await self._send_subscribe(topic, stomp_id)

        if send_every:
            self._heartbeat_task = asyncio.ensure_future(self._send_heartbeats(channel, send_every))

        timeout = expect_every * self.settings.heartbeat_grace / 1000 if expect_every else None
        while True:
            try:
                batch = await asyncio.wait_for(channel.recv(), timeout)
            except asyncio.TimeoutError:
                raise errors.TransportError("Heart-beat timeout") from None
            for payload in batch:
                for frame in parser.feed(payload):
                    await self._handle_frame(frame)

    async def _next_frame(self, channel: Channel, parser: StompParser) -> StompFrame:
        while True:
            for payload in await channel.recv():
                frames = parser.feed(payload)
                if frames:
                    # Nothing else is sent by the server before CONNECTED.
                    return frames[0]

    async def _send_heartbeats(self, channel: Channel, every_ms: int) -> None:
        while True:
            await asyncio.sleep(every_ms / 1000)
            try:
                await channel.send(HEARTBEAT)
            except errors.TransportError:
                # The reader notices the dead link and drives the reconnect.
                return

    async def _close_channel(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.debug(f"Channel close failed: {e}")

    # ------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------

    async def subscribe(self, topic: str, handler: Handler) -> Subscription:
        subscription = Subscription(id=f"h-{next(self._handle_ids)}", topic=topic, handler=handler)
        self._subscriptions[subscription.id] = subscription
        if topic not in self._topic_ids:
            stomp_id = f"sub-{next(self._stomp_ids)}"
            self._topic_ids[topic] = stomp_id
            if self.is_connected():
                await self._send_subscribe(topic, stomp_id)
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is None:
            return
        topic = subscription.topic
        if any(s.topic == topic for s in self._subscriptions.values()):
            return
        stomp_id = self._topic_ids.pop(topic, None)
        if stomp_id and self.is_connected() and self._channel is not None:
            try:
                await self._channel.send(StompFrame("UNSUBSCRIBE", {"id": stomp_id}).encode())
            except errors.TransportError as e:
                # Server-side subscriptions die with the connection anyway.
                logger.debug(f"UNSUBSCRIBE {topic} not delivered: {e}")

    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def _send_subscribe(self, topic: str, stomp_id: str) -> None:
        if self._channel is None:
            return
        await self._channel.send(
            StompFrame("SUBSCRIBE", {"id": stomp_id, "destination": topic, "ack": "auto"}).encode()
        )

    # ------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------

    async def publish(self, destination: str, payload: Any) -> None:
        """Send an application message. At most once; never queued.

        Raises:
            errors.NotConnected: When the transport is not CONNECTED.
        """
        channel = self._channel
        if not self.is_connected() or channel is None:
            raise errors.NotConnected(f"Cannot publish to {destination}: not connected")
        body = payload if isinstance(payload, str) else json.dumps(payload)
        frame = StompFrame(
            "SEND",
            {"destination": destination, "content-type": "application/json"},
            body,
        )
        await channel.send(frame.encode())

    async def _handle_frame(self, frame: StompFrame) -> None:
        if frame.command == "MESSAGE":
            await self._dispatch(frame)
        elif frame.command == "ERROR":
            raise errors.StompProtocolError(frame.headers.get("message", "STOMP error"))
        elif frame.command == "RECEIPT":
            return
        else:
            logger.debug(f"Ignoring STOMP frame {frame.command}")

    async def _dispatch(self, frame: StompFrame) -> None:
        topic = frame.headers.get("destination", "")
        stomp_id = frame.headers.get("subscription")
        if stomp_id:
            for known_topic, known_id in self._topic_ids.items():
                if known_id == stomp_id:
                    topic = known_topic
                    break

        message = InboundMessage(topic=topic, body=frame.body, headers=frame.headers)
        for subscription in [s for s in self._subscriptions.values() if s.topic == topic]:
            try:
                result = subscription.handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Realtime handler {subscription.id} failed on {topic}")

    # ------------------------------------------------------------
    # Credential rotation
    # ------------------------------------------------------------

    def _on_credential_change(self, old: Credential | None, new: Credential | None) -> None:
        if new is None and old is not None and self._running():
            logger.info("Session ended, closing realtime transport")
            task = asyncio.ensure_future(self.disconnect())
            self._side_tasks.add(task)
            task.add_done_callback(self._side_tasks.discard)
        elif new is not None and old is not None:
            logger.debug("Credential rotated; next reconnect authenticates with the new token")
