"""Tests for RealtimeTransport: handshake, resubscription, reconnect ceiling."""

import json

import pytest

from sportmatch import errors
from sportmatch.services.realtime import (
    InboundMessage,
    ReconnectPolicy,
    RealtimeTransport,
    TransportState,
)
from sportmatch.services.signals import SignalBus, TransportUnavailable
from sportmatch.services.stomp import StompFrame
from sportmatch.settings import Settings
from sportmatch.stores.credentials import Credential, CredentialStore
from tests.conftest import FakeStompServer, RecordingSleep, Recorder, until

TOPIC = "/user/1/queue/messages"
OTHER_TOPIC = "/user/1/queue/matches"


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def transport(
    store: CredentialStore,
    bus: SignalBus,
    settings: Settings,
    stomp_server: FakeStompServer,
    sleep: RecordingSleep,
):
    transport = RealtimeTransport(
        store, bus, settings, channel_factory=stomp_server.open, sleep=sleep
    )
    yield transport
    await transport.disconnect()


def test_backoff_grows_and_is_capped() -> None:
    policy = ReconnectPolicy(base_delay=1.0, max_delay=30.0, max_attempts=7)
    assert policy.delays() == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_connect_sends_current_authorization(
    transport: RealtimeTransport, store: CredentialStore, stomp_server: FakeStompServer
) -> None:
    writer = store.claim_writer()
    await writer.install(Credential("token-a", "refresh-a"))

    transport.connect()
    await transport.wait_connected(timeout=1)
    await writer.install(Credential("token-b", "refresh-b"))
    stomp_server.current.drop()
    await until(lambda: len(stomp_server.channels) == 2 and transport.is_connected())

    first, second = (c.frames("CONNECT")[0] for c in stomp_server.channels)
    assert first.headers["Authorization"] == "Bearer token-a"
    assert second.headers["Authorization"] == "Bearer token-b"
    assert first.headers["accept-version"] == "1.2,1.1"


@pytest.mark.asyncio
async def test_resubscribes_once_per_topic_after_reconnect(
    transport: RealtimeTransport, stomp_server: FakeStompServer, sleep: RecordingSleep
) -> None:
    received: list[tuple[str, str]] = []
    await transport.subscribe(TOPIC, lambda m: received.append(("a", m.body)))
    await transport.subscribe(TOPIC, lambda m: received.append(("b", m.body)))
    await transport.subscribe(OTHER_TOPIC, lambda m: received.append(("c", m.body)))

    transport.connect()
    await transport.wait_connected(timeout=1)
    stomp_server.current.drop()
    await until(lambda: len(stomp_server.channels) == 2 and transport.is_connected())

    for channel in stomp_server.channels:
        destinations = [f.headers["destination"] for f in channel.frames("SUBSCRIBE")]
        assert destinations == [TOPIC, OTHER_TOPIC]
    assert sleep.delays == [1.0]
    assert transport.reconnect_attempts == 0

    stomp_server.deliver(TOPIC, "hello")
    await until(lambda: len(received) == 2)
    assert received == [("a", "hello"), ("b", "hello")]


@pytest.mark.asyncio
async def test_subscribe_while_connected_sends_subscribe(
    transport: RealtimeTransport, stomp_server: FakeStompServer
) -> None:
    transport.connect()
    await transport.wait_connected(timeout=1)

    messages: list[InboundMessage] = []
    await transport.subscribe(TOPIC, messages.append)
    stomp_server.deliver(TOPIC, '{"id": 1}')
    await until(lambda: bool(messages))

    assert messages[0].topic == TOPIC
    assert messages[0].json() == {"id": 1}


@pytest.mark.asyncio
async def test_unsubscribe_keeps_topic_while_other_handlers_remain(
    transport: RealtimeTransport, stomp_server: FakeStompServer
) -> None:
    transport.connect()
    await transport.wait_connected(timeout=1)
    first = await transport.subscribe(TOPIC, lambda m: None)
    second = await transport.subscribe(TOPIC, lambda m: None)

    await transport.unsubscribe(first)
    assert stomp_server.current.frames("UNSUBSCRIBE") == []

    await transport.unsubscribe(second)
    [frame] = stomp_server.current.frames("UNSUBSCRIBE")
    assert frame.headers["id"] == stomp_server.current.frames("SUBSCRIBE")[0].headers["id"]
    assert transport.subscriptions() == []


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(
    transport: RealtimeTransport, stomp_server: FakeStompServer
) -> None:
    received: list[str] = []

    def broken(message: InboundMessage) -> None:
        raise ValueError("handler bug")

    async def working(message: InboundMessage) -> None:
        received.append(message.body)

    await transport.subscribe(TOPIC, broken)
    await transport.subscribe(TOPIC, working)
    transport.connect()
    await transport.wait_connected(timeout=1)

    stomp_server.deliver(TOPIC, "one")
    stomp_server.deliver(TOPIC, "two")
    await until(lambda: len(received) == 2)

    assert received == ["one", "two"]
    assert transport.is_connected()
    assert len(stomp_server.channels) == 1


@pytest.mark.asyncio
async def test_publish_requires_connection(
    transport: RealtimeTransport, stomp_server: FakeStompServer
) -> None:
    with pytest.raises(errors.NotConnected):
        await transport.publish("/app/chat.send", {"content": "hi"})

    transport.connect()
    await transport.wait_connected(timeout=1)
    await transport.publish("/app/chat.send", {"content": "hi"})

    [frame] = stomp_server.current.frames("SEND")
    assert frame.headers["destination"] == "/app/chat.send"
    assert json.loads(frame.body) == {"content": "hi"}


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_until_connect(
    transport: RealtimeTransport,
    stomp_server: FakeStompServer,
    bus: SignalBus,
    sleep: RecordingSleep,
) -> None:
    unavailable = Recorder(bus, TransportUnavailable)
    stomp_server.fail_opens = 100

    transport.connect()
    with pytest.raises(errors.TransportUnavailable):
        await transport.wait_connected(timeout=1)

    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]
    assert stomp_server.open_attempts == 5
    assert transport.state is TransportState.DISCONNECTED
    assert [s.attempts for s in unavailable.of(TransportUnavailable)] == [4]

    stomp_server.fail_opens = 0
    transport.connect()
    await transport.wait_connected(timeout=1)
    assert transport.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_error_frame_drops_connection_and_reconnects(
    transport: RealtimeTransport, stomp_server: FakeStompServer, sleep: RecordingSleep
) -> None:
    transport.connect()
    await transport.wait_connected(timeout=1)
    stomp_server.current.push(StompFrame("ERROR", {"message": "session expired"}))
    await until(lambda: len(stomp_server.channels) == 2 and transport.is_connected())
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_missing_heartbeats_trigger_reconnect(
    store: CredentialStore, bus: SignalBus, stomp_server: FakeStompServer, sleep: RecordingSleep
) -> None:
    settings = Settings(heartbeat_incoming_ms=20, heartbeat_outgoing_ms=0, redis_url="")
    stomp_server.heartbeat = "10,0"
    transport = RealtimeTransport(
        store, bus, settings, channel_factory=stomp_server.open, sleep=sleep
    )
    try:
        transport.connect()
        await transport.wait_connected(timeout=1)
        await until(lambda: len(stomp_server.channels) >= 2)
    finally:
        await transport.disconnect()

    assert stomp_server.channels[0].closed


@pytest.mark.asyncio
async def test_session_end_disconnects(
    transport: RealtimeTransport, store: CredentialStore
) -> None:
    writer = store.claim_writer()
    await writer.install(Credential("token-a", "refresh-a"))
    transport.connect()
    await transport.wait_connected(timeout=1)

    await writer.clear()
    await until(lambda: transport.state is TransportState.DISCONNECTED)

    with pytest.raises(errors.NotConnected):
        await transport.wait_connected(timeout=1)
