"""Shared fixtures: a fake SportMatch backend and a fake STOMP endpoint."""

import asyncio
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from httpx import ASGITransport
import pytest

from sportmatch.errors import ChannelClosed
from sportmatch.schemas import AuthResponse
from sportmatch.services.api import SportMatchApi
from sportmatch.services.gateway import RequestGateway
from sportmatch.services.signals import Signal, SignalBus
from sportmatch.services.stomp import StompFrame, StompParser
from sportmatch.settings import Settings
from sportmatch.stores.credentials import CredentialStore

USER = {"id": 1, "email": "ana@example.com", "firstName": "Ana", "lastName": "Lopez"}
PASSWORD = "secret"


def candidate(user_id: int) -> dict[str, Any]:
    return {"id": user_id, "email": f"u{user_id}@example.com", "firstName": f"User{user_id}"}


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate() is true."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class FakeBackend:
    """In-memory SportMatch API with rotating, single-use refresh tokens."""

    def __init__(self) -> None:
        self.app = FastAPI()
        self._counter = 0
        self.valid_access: set[str] = set()
        self.valid_refresh: set[str] = set()
        self.used_refresh: list[str] = []
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.reject_refresh = False
        self.seen: list[tuple[str, str]] = []
        self.latency = 0.005

        self.candidates: list[dict[str, Any]] = [candidate(i) for i in range(101, 108)]
        self.page_requests: list[int] = []
        self.page_gate: asyncio.Event | None = None
        self.decision_gate: asyncio.Event | None = None
        self.decisions: list[tuple[str, int]] = []
        self.like_status = "LIKE_STORED"
        self.fail_decisions = False

        self.profile_status: int | None = None
        self.logout_status = 200
        self.boom_calls = 0
        self._routes()

    def issue_pair(self) -> dict[str, Any]:
        self._counter += 1
        access, refresh = f"access-{self._counter}", f"refresh-{self._counter}"
        self.valid_access.add(access)
        self.valid_refresh.add(refresh)
        return {"token": access, "refreshToken": refresh, "user": USER, "message": "ok"}

    def expire_access(self) -> None:
        self.valid_access.clear()

    async def _require(self, request: Request) -> None:
        auth = request.headers.get("authorization", "")
        self.seen.append((request.url.path, auth))
        # Let concurrent requests all arrive before any of them is answered.
        await asyncio.sleep(self.latency)
        if auth.removeprefix("Bearer ") not in self.valid_access:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

    def auth_seen(self, path: str) -> list[str]:
        return [auth for p, auth in self.seen if p == path]

    def _routes(self) -> None:
        app = self.app

        @app.post("/api/auth/login")
        async def login(body: dict[str, Any]) -> Any:
            if body.get("password") != PASSWORD:
                return JSONResponse({"message": "Bad credentials"}, status_code=401)
            return self.issue_pair()

        @app.post("/api/auth/register")
        async def register(body: dict[str, Any]) -> Any:
            return self.issue_pair()

        @app.post("/api/auth/refresh")
        async def refresh(request: Request) -> Any:
            self.refresh_calls += 1
            if self.refresh_delay:
                await asyncio.sleep(self.refresh_delay)
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if self.reject_refresh or token not in self.valid_refresh:
                return JSONResponse({"message": "Invalid refresh token"}, status_code=401)
            self.valid_refresh.discard(token)
            self.used_refresh.append(token)
            self.valid_access.clear()
            return self.issue_pair()

        @app.post("/api/auth/logout")
        async def logout(request: Request) -> Any:
            if self.logout_status >= 400:
                return JSONResponse({"message": "down"}, status_code=self.logout_status)
            return PlainTextResponse("Logged out")

        @app.get("/api/sports")
        async def sports(request: Request) -> Any:
            await self._require(request)
            return [{"id": 1, "name": "Tennis"}, {"id": 2, "name": "Football", "isTeamSport": True}]

        @app.get("/api/users/{user_id}/profile")
        async def profile(user_id: int, request: Request) -> Any:
            await self._require(request)
            if self.profile_status:
                return JSONResponse({"message": "unavailable"}, status_code=self.profile_status)
            return USER

        @app.get("/api/always-401")
        async def always_401(request: Request) -> Any:
            self.seen.append((request.url.path, request.headers.get("authorization", "")))
            raise HTTPException(status_code=401, detail="nope")

        @app.get("/api/boom")
        async def boom(request: Request) -> Any:
            self.boom_calls += 1
            return PlainTextResponse("kaboom", status_code=500)

        @app.post("/api/bad")
        async def bad(request: Request) -> Any:
            return JSONResponse({"errors": {"content": "must not be blank"}}, status_code=400)

        @app.get("/api/matching/potential-matches")
        async def potential_matches(
            request: Request, userId: int, sportId: int, page: int = 0, size: int = 10
        ) -> Any:
            await self._require(request)
            self.page_requests.append(page)
            if self.page_gate is not None and page > 0:
                await self.page_gate.wait()
            return self.candidates[page * size:(page + 1) * size]

        @app.post("/api/matching/like")
        async def like(request: Request, userId: int, targetUserId: int, sportId: int) -> Any:
            await self._require(request)
            return await self._decide("like", targetUserId)

        @app.post("/api/matching/dislike")
        async def dislike(request: Request, userId: int, targetUserId: int, sportId: int) -> Any:
            await self._require(request)
            result = await self._decide("dislike", targetUserId)
            if isinstance(result, JSONResponse):
                return result
            return PlainTextResponse("Dislike processed")

    async def _decide(self, kind: str, target_user_id: int) -> Any:
        self.decisions.append((kind, target_user_id))
        if self.decision_gate is not None:
            await self.decision_gate.wait()
        if self.fail_decisions:
            return JSONResponse({"message": "matching unavailable"}, status_code=503)
        return {
            "isMatch": self.like_status == "MATCH_CREATED",
            "targetUserId": target_user_id,
            "message": "ok",
            "matchId": 55 if self.like_status == "MATCH_CREATED" else None,
            "status": self.like_status,
        }


class Recorder:
    """Collects emitted signals of the given types."""

    def __init__(self, bus: SignalBus, *signal_types: type[Signal]):
        self.signals: list[Signal] = []
        for signal_type in signal_types:
            bus.connect(signal_type, self.signals.append)

    def of(self, signal_type: type[Signal]) -> list[Any]:
        return [s for s in self.signals if isinstance(s, signal_type)]


# ============================================================
# Fake STOMP endpoint
# ============================================================


class FakeChannel:
    def __init__(self, server: "FakeStompServer"):
        self.server = server
        self.inbound: asyncio.Queue[list[str] | Exception] = asyncio.Queue()
        self.sent: list[StompFrame] = []
        self.closed = False
        self._parser = StompParser()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ChannelClosed(reason="closed")
        for frame in self._parser.feed(data):
            self.sent.append(frame)
            self.server.on_frame(self, frame)

    async def recv(self) -> list[str]:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True

    def push(self, frame: StompFrame) -> None:
        self.inbound.put_nowait([frame.encode()])

    def drop(self) -> None:
        self.inbound.put_nowait(ChannelClosed(1006, "dropped"))

    def frames(self, command: str) -> list[StompFrame]:
        return [f for f in self.sent if f.command == command]


class FakeStompServer:
    def __init__(self) -> None:
        self.channels: list[FakeChannel] = []
        self.open_attempts = 0
        self.fail_opens = 0
        self.heartbeat = "0,0"

    async def open(self) -> FakeChannel:
        self.open_attempts += 1
        if self.fail_opens:
            self.fail_opens -= 1
            raise ChannelClosed(reason="connection refused")
        channel = FakeChannel(self)
        self.channels.append(channel)
        return channel

    @property
    def current(self) -> FakeChannel:
        return self.channels[-1]

    def on_frame(self, channel: FakeChannel, frame: StompFrame) -> None:
        if frame.command == "CONNECT":
            channel.push(StompFrame("CONNECTED", {"version": "1.2", "heart-beat": self.heartbeat}))

    def deliver(self, topic: str, body: str) -> None:
        channel = self.current
        sub_id = next(
            f.headers["id"] for f in channel.frames("SUBSCRIBE") if f.headers["destination"] == topic
        )
        channel.push(
            StompFrame(
                "MESSAGE",
                {"destination": topic, "subscription": sub_id, "message-id": "m-1"},
                body,
            )
        )


class RecordingSleep:
    """Stands in for asyncio.sleep in the reconnect loop."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ============================================================
# Fixtures
# ============================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_base_url="http://test/api",
        ws_url="ws://test/ws",
        redis_url="",
        candidate_page_size=3,
        reconnect_base_delay=1.0,
        reconnect_max_delay=3.0,
        reconnect_max_attempts=4,
    )


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def bus() -> SignalBus:
    return SignalBus()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(persist=False)


@pytest.fixture
async def gateway(store: CredentialStore, bus: SignalBus, settings: Settings, backend: FakeBackend):
    gateway = RequestGateway(store, bus, settings, transport=ASGITransport(app=backend.app))
    yield gateway
    await gateway.close()


@pytest.fixture
def api(gateway: RequestGateway) -> SportMatchApi:
    return SportMatchApi(gateway)


@pytest.fixture
async def signed_in(gateway: RequestGateway, backend: FakeBackend) -> AuthResponse:
    auth = AuthResponse.model_validate(backend.issue_pair())
    await gateway.install_session(auth)
    return auth


@pytest.fixture
def stomp_server() -> FakeStompServer:
    return FakeStompServer()
