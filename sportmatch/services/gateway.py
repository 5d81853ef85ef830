"""Request gateway: authenticated, renewal-aware calls to the SportMatch API.

Invariants:
- Every request without an explicit Authorization header gets the current
  access token.
- At most one refresh-token exchange is in flight at a time (single flight).
  Refresh tokens are single-use, so a second concurrent exchange would
  invalidate the first.
- A request is retried at most once after a renewal (RetryPolicy). A second
  401 is terminal.
- A failed renewal or a terminal 401 clears the credential store and emits
  SessionEnded once per credential epoch, however many requests failed.
- Network and server errors are never retried here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
import logging
from typing import Any

import httpx

from sportmatch.errors import NetworkError, ServerError, Unauthorized, ValidationError
from sportmatch.schemas.auth import AuthResponse
from sportmatch.services.signals import CredentialRotated, SessionEnded, SignalBus
from sportmatch.settings import Settings, get_settings
from sportmatch.stores.credentials import Credential, CredentialStore, mask_token

logger = logging.getLogger("sportmatch")

REFRESH_PATH = "/auth/refresh"


@dataclass(frozen=True)
class RetryPolicy:
    """How many renew-and-retry rounds a single call may still use."""

    auth_retries: int = 1

    @property
    def exhausted(self) -> bool:
        return self.auth_retries <= 0

    def consume(self) -> RetryPolicy:
        return replace(self, auth_retries=self.auth_retries - 1)


NO_RETRY = RetryPolicy(auth_retries=0)


@dataclass(frozen=True)
class ApiRequest:
    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    is_refresh: bool = False

    def has_auth_header(self) -> bool:
        return any(k.lower() == "authorization" for k in self.headers)

    def with_token(self, token: str) -> ApiRequest:
        headers = {k: v for k, v in self.headers.items() if k.lower() != "authorization"}
        headers["Authorization"] = f"Bearer {token}"
        return replace(self, headers=headers)


class RequestGateway:
    """Executes API calls and owns the credential store's write side."""

    def __init__(
        self,
        store: CredentialStore,
        bus: SignalBus,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.bus = bus
        self._writer = store.claim_writer()
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self._renewal: asyncio.Future[str] | None = None
        self.renewal_count = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.settings.api_base_url,
                timeout=self.settings.request_timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------

    async def issue(self, request: ApiRequest, policy: RetryPolicy | None = None) -> httpx.Response:
        """Send a request, renewing the credential once on 401.

        Raises:
            Unauthorized: Credential rejected and renewal failed or was used up.
            NetworkError: Transport-level failure.
            ServerError: HTTP 5xx.
            ValidationError: Any other HTTP 4xx.
        """
        policy = policy or RetryPolicy()
        if not request.is_refresh:
            # Never send a token that is being replaced right now.
            await self._await_pending_renewal()
        sent_epoch = self.store.epoch
        if not request.has_auth_header():
            token = self.store.access_token
            if token:
                request = request.with_token(token)

        response = await self._send(request)
        if response.status_code != 401:
            return self._check(response)

        if request.is_refresh:
            raise Unauthorized("Refresh token rejected")

        if not self.store.is_authenticated and self.store.epoch == sent_epoch:
            # Anonymous call (e.g. bad login): nothing to renew.
            raise Unauthorized(f"{request.method} {request.path} rejected")

        if policy.exhausted:
            logger.warning(f"401 after retry on {request.method} {request.path}, ending session")
            await self._end_session("unauthorized", epoch=sent_epoch)
            raise Unauthorized(f"{request.method} {request.path} rejected after renewal")

        token = await self._renew_for(sent_epoch)
        return await self.issue(request.with_token(token), policy.consume())

    async def renew(self) -> str:
        """Renew the credential now, joining any renewal already in flight."""
        return await self._renew_for(self.store.epoch)

    async def install_session(self, auth: AuthResponse) -> None:
        """Login/register write path."""
        await self._writer.install(
            Credential(access_token=auth.token, refresh_token=auth.refresh_token),
            auth.user,
        )
        logger.info(f"Session installed for user={auth.user.id if auth.user else None}")

    async def end_session(self, reason: str) -> None:
        """Logout write path. Clears the store and signals once."""
        await self._end_session(reason, epoch=self.store.epoch)

    # ------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------

    def _pending_renewal(self) -> asyncio.Future[str] | None:
        if self._renewal is not None and not self._renewal.done():
            return self._renewal
        return None

    async def _await_pending_renewal(self) -> None:
        pending = self._pending_renewal()
        if pending is None:
            return
        try:
            await asyncio.shield(pending)
        except Unauthorized:
            # The session is gone; the request goes out bare and fails on its own.
            return

    async def _renew_for(self, sent_epoch: int) -> str:
        pending = self._pending_renewal()
        if pending is not None:
            return await asyncio.shield(pending)

        # Someone else already renewed (or ended) since this request was sent.
        if self.store.epoch != sent_epoch:
            token = self.store.access_token
            if token:
                return token
            raise Unauthorized("Session ended")

        renewal = asyncio.ensure_future(self._exchange_refresh_token(sent_epoch))
        renewal.add_done_callback(self._on_renewal_done)
        self._renewal = renewal
        return await asyncio.shield(renewal)

    def _on_renewal_done(self, renewal: asyncio.Future[str]) -> None:
        if self._renewal is renewal:
            self._renewal = None
        if not renewal.cancelled():
            # Mark retrieved; every caller already sees it through shield().
            renewal.exception()

    async def _exchange_refresh_token(self, epoch: int) -> str:
        refresh_token = self.store.refresh_token
        if not refresh_token:
            await self._end_session("no_refresh_token", epoch=epoch)
            raise Unauthorized("No refresh token")

        self.renewal_count += 1
        logger.info(f"Renewing credential (refresh={mask_token(refresh_token)})")
        request = ApiRequest(
            "POST",
            REFRESH_PATH,
            headers={"Authorization": f"Bearer {refresh_token}"},
            is_refresh=True,
        )
        try:
            response = await self.issue(request, NO_RETRY)
            auth = AuthResponse.model_validate(response.json())
        except Exception as e:
            logger.warning(f"Credential renewal failed: {e}")
            await self._end_session("renewal_failed", epoch=epoch)
            if isinstance(e, Unauthorized):
                raise
            raise Unauthorized("Credential renewal failed") from e

        new_epoch = await self._writer.install(
            Credential(access_token=auth.token, refresh_token=auth.refresh_token),
            auth.user,
        )
        self.bus.emit(CredentialRotated(epoch=new_epoch))
        return auth.token

    async def _end_session(self, reason: str, *, epoch: int) -> None:
        # One teardown per episode: clearing bumps the epoch, so every other
        # failure from the same episode sees a mismatch and stops here.
        if epoch != self.store.epoch or not self.store.is_authenticated:
            return
        await self._writer.clear()
        logger.info(f"Session ended ({reason})")
        self.bus.emit(SessionEnded(reason=reason))

    # ------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------

    async def _send(self, request: ApiRequest) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.request(
                request.method,
                request.path,
                params=request.params,
                json=request.json,
                headers=request.headers,
            )
        except httpx.TransportError as e:
            logger.warning(f"Network error on {request.method} {request.path}: {e}")
            raise NetworkError(str(e) or type(e).__name__) from e

    def _check(self, response: httpx.Response) -> httpx.Response:
        status = response.status_code
        if status < 400:
            return response
        if status >= 500:
            logger.error(f"API error: {status} - {response.text[:200]}")
            raise ServerError(status, response.text[:200])
        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        raise ValidationError(status, payload)
