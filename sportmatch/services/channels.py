"""Byte channels under the STOMP session: WebSocket or SockJS XHR polling.

Negotiation follows SockJS:
1. GET {base}/info -> {"websocket": bool, ...}
2. websocket allowed -> ws(s)://.../{server}/{session}/websocket
3. otherwise, or if the WebSocket handshake fails -> XHR polling on
   {base}/{server}/{session}/xhr and .../xhr_send

SockJS framing from the server: "o" open, "h" heartbeat, "a[...]" messages,
"c[code,reason]" close. Client payloads are JSON arrays of strings.

A base URL with a ws:// or wss:// scheme skips SockJS entirely and speaks
raw STOMP over the WebSocket.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Protocol
from urllib.parse import urlparse, urlunparse
import uuid

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from sportmatch.errors import ChannelClosed

logger = logging.getLogger("sportmatch")


class Channel(Protocol):
    async def send(self, data: str) -> None: ...

    async def recv(self) -> list[str]:
        """Next batch of payloads. An empty list is a heartbeat (link alive)."""
        ...

    async def close(self) -> None: ...


def decode_sockjs_frame(frame: str) -> list[str]:
    """Decode one SockJS frame into its payloads.

    Raises:
        ChannelClosed: On a close frame.
    """
    frame = frame.strip()
    if not frame or frame in ("o", "h"):
        return []
    kind, rest = frame[0], frame[1:]
    if kind == "a":
        messages = json.loads(rest)
        if not isinstance(messages, list):
            raise ChannelClosed(reason="Malformed SockJS message frame")
        return [str(m) for m in messages]
    if kind == "c":
        try:
            code, reason = json.loads(rest)
        except (ValueError, TypeError):
            code, reason = None, rest
        raise ChannelClosed(code, str(reason))
    raise ChannelClosed(reason=f"Unknown SockJS frame {frame[:20]!r}")


def _closed(e: ConnectionClosed) -> ChannelClosed:
    frame = e.rcvd or e.sent
    if frame is None:
        return ChannelClosed(reason="connection lost")
    return ChannelClosed(frame.code, frame.reason)


class WebSocketChannel:
    def __init__(self, connection: ClientConnection, sockjs: bool):
        self._ws = connection
        self._sockjs = sockjs

    @classmethod
    async def open(cls, url: str, sockjs: bool, open_timeout: float = 10.0) -> WebSocketChannel:
        # STOMP carries its own heart-beats; websockets' ping would be redundant.
        connection = await connect(url, open_timeout=open_timeout, ping_interval=None)
        return cls(connection, sockjs)

    async def send(self, data: str) -> None:
        payload = json.dumps([data]) if self._sockjs else data
        try:
            await self._ws.send(payload)
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def recv(self) -> list[str]:
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as e:
            raise _closed(e) from e
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        if not self._sockjs:
            return [raw]
        return decode_sockjs_frame(raw)

    async def close(self) -> None:
        await self._ws.close()


class XhrPollingChannel:
    def __init__(self, client: httpx.AsyncClient, session_url: str):
        self._client = client
        self._url = session_url

    @classmethod
    async def open(
        cls,
        session_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> XhrPollingChannel:
        # Long polls are held open by the server for up to ~25s.
        client = httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=60.0), transport=transport)
        channel = cls(client, session_url)
        try:
            first = await channel._poll()
        except BaseException:
            await client.aclose()
            raise
        if first.strip() != "o":
            await client.aclose()
            raise ChannelClosed(reason=f"Unexpected SockJS open frame {first[:20]!r}")
        return channel

    async def _poll(self) -> str:
        try:
            response = await self._client.post(f"{self._url}/xhr")
        except httpx.TransportError as e:
            raise ChannelClosed(reason=str(e) or type(e).__name__) from e
        if response.status_code >= 400:
            raise ChannelClosed(response.status_code, "SockJS poll rejected")
        return response.text

    async def send(self, data: str) -> None:
        try:
            response = await self._client.post(
                f"{self._url}/xhr_send",
                content=json.dumps([data]),
                headers={"Content-Type": "text/plain;charset=UTF-8"},
            )
        except httpx.TransportError as e:
            raise ChannelClosed(reason=str(e) or type(e).__name__) from e
        if response.status_code >= 400:
            raise ChannelClosed(response.status_code, "SockJS send rejected")

    async def recv(self) -> list[str]:
        body = await self._poll()
        messages: list[str] = []
        for line in body.splitlines():
            messages.extend(decode_sockjs_frame(line))
        return messages

    async def close(self) -> None:
        await self._client.aclose()


def _with_scheme(url: str, scheme: str) -> str:
    return urlunparse(urlparse(url)._replace(scheme=scheme))


async def _sockjs_info(
    base_url: str, timeout: float, transport: httpx.AsyncBaseTransport | None = None
) -> dict:
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.get(f"{base_url}/info")
            resp.raise_for_status()
            data = resp.json()
            return data if isinstance(data, dict) else {}
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"SockJS info request failed ({e}), assuming websocket support")
        return {"websocket": True}


async def open_channel(
    base_url: str,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Channel:
    """Negotiate and open a channel to the realtime endpoint."""
    base_url = base_url.rstrip("/")
    scheme = urlparse(base_url).scheme.lower()
    if scheme in ("ws", "wss"):
        return await WebSocketChannel.open(base_url, sockjs=False, open_timeout=timeout)

    info = await _sockjs_info(base_url, timeout, transport)
    server_id = f"{random.randint(0, 999):03d}"  # nosec B311
    session_id = uuid.uuid4().hex
    session_url = f"{base_url}/{server_id}/{session_id}"

    if info.get("websocket", True):
        ws_url = _with_scheme(f"{session_url}/websocket", "wss" if scheme == "https" else "ws")
        try:
            return await WebSocketChannel.open(ws_url, sockjs=True, open_timeout=timeout)
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as e:
            logger.warning(f"WebSocket transport failed ({e}), falling back to XHR polling")

    logger.info("Realtime channel using XHR polling")
    return await XhrPollingChannel.open(session_url, timeout=timeout, transport=transport)
