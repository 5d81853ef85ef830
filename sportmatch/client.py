"""SportMatch client: composition root.

Owns one instance of every component and wires them together:

    store  <- gateway (single writer) <- api <- auth / candidates
    store  <- realtime <- chat
    bus    <- everything that emits signals

Lifecycle:
- start(): connect Redis (when configured) and restore a persisted session
- close(): stop the realtime transport, close HTTP and Redis
"""

import logging

import httpx

from sportmatch.services.api import SportMatchApi
from sportmatch.services.auth import AuthService
from sportmatch.services.candidates import MatchCandidateCache
from sportmatch.services.chat import ChatChannel
from sportmatch.services.gateway import RequestGateway
from sportmatch.services.realtime import ChannelFactory, ReconnectPolicy, RealtimeTransport
from sportmatch.services.signals import SessionEnded, SignalBus
from sportmatch.settings import Settings, get_settings
from sportmatch.stores.credentials import CredentialStore
from sportmatch.stores.redis import DEFAULT_SESSION_SLOT, close_redis, init_redis

logger = logging.getLogger("sportmatch")


class SportMatchClient:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_slot: str = DEFAULT_SESSION_SLOT,
        http_transport: httpx.AsyncBaseTransport | None = None,
        channel_factory: ChannelFactory | None = None,
        reconnect_policy: ReconnectPolicy | None = None,
    ):
        self.settings = settings or get_settings()
        self.bus = SignalBus()
        self.store = CredentialStore(
            slot=session_slot, persist=bool(self.settings.redis_url), settings=self.settings
        )
        self.gateway = RequestGateway(self.store, self.bus, self.settings, transport=http_transport)
        self.api = SportMatchApi(self.gateway)
        self.auth = AuthService(self.gateway, self.api, self.settings)
        self.candidates = MatchCandidateCache(self.api, self.bus, self.settings)
        self.realtime = RealtimeTransport(
            self.store,
            self.bus,
            self.settings,
            channel_factory=channel_factory,
            policy=reconnect_policy,
        )
        self.chat = ChatChannel(self.realtime, self.bus)
        self._redis_started = False

        self.bus.connect(SessionEnded, self._on_session_ended)

    async def start(self) -> bool:
        """Bring up persistence and restore a saved session.

        Returns:
            True when a persisted session was restored.
        """
        if self.settings.redis_url:
            try:
                await init_redis(self.settings.redis_url)
                self._redis_started = True
            except Exception:
                logger.exception("Redis init failed, session stays in memory")
        return await self.store.restore()

    async def close(self) -> None:
        await self.realtime.disconnect()
        await self.gateway.close()
        if self._redis_started:
            await close_redis()
            self._redis_started = False
        await self.bus.drain()

    async def __aenter__(self) -> "SportMatchClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _on_session_ended(self, signal: SessionEnded) -> None:
        # Candidates belong to the user who just left.
        self.candidates.clear()
        logger.info(f"Session ended ({signal.reason}), candidate cache cleared")
