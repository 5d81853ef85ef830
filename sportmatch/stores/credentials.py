"""Credential store: the single source of truth for "is a session active".

Invariants:
- The access/refresh pair is replaced as a whole (never one field alone).
- Exactly one CredentialWriter exists per store; everything else reads.
- `epoch` changes on every install and every clear, so callers can tell
  whether the credential they used is still the current one.

Persistence to Redis is best-effort: when Redis is not initialised the store
keeps working in memory.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable

from sportmatch.schemas.users import User
from sportmatch.settings import Settings, get_settings
from sportmatch.stores.redis import (
    DEFAULT_SESSION_SLOT,
    delete_persisted_session,
    get_persisted_session,
    set_persisted_session,
)

logger = logging.getLogger("sportmatch")

CredentialListener = Callable[["Credential | None", "Credential | None"], None]


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str

    def __repr__(self) -> str:
        return f"Credential(access_token={mask_token(self.access_token)!r}, refresh_token=***)"


def mask_token(token: str | None) -> str:
    """Mask a token for logs, e.g. eyJhbGci... -> eyJhbG***"""
    if not token:
        return "<none>"
    return token[:6] + "***" if len(token) > 6 else "***"


class CredentialStore:
    """Holds the current credential pair and the authenticated user."""

    def __init__(
        self,
        slot: str = DEFAULT_SESSION_SLOT,
        persist: bool = True,
        settings: Settings | None = None,
    ):
        self._credential: Credential | None = None
        self._user: User | None = None
        self._epoch = 0
        self._writer: CredentialWriter | None = None
        self._listeners: list[CredentialListener] = []
        self._slot = slot
        self._persist = persist
        self._ttl = (settings or get_settings()).session_ttl

    # ------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def access_token(self) -> str | None:
        return self._credential.access_token if self._credential else None

    @property
    def refresh_token(self) -> str | None:
        return self._credential.refresh_token if self._credential else None

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._credential is not None

    @property
    def epoch(self) -> int:
        return self._epoch

    def auth_header(self) -> str | None:
        """Authorization header value for the current access token."""
        token = self.access_token
        return f"Bearer {token}" if token else None

    def add_listener(self, listener: CredentialListener) -> Callable[[], None]:
        """Register a callback invoked with (old, new) after each change."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------

    def claim_writer(self) -> CredentialWriter:
        """Hand out the single writer. A second claim is a wiring bug."""
        if self._writer is not None:
            raise RuntimeError("CredentialStore already has a writer")
        self._writer = CredentialWriter(self)
        return self._writer

    async def restore(self) -> bool:
        """Load a persisted session, if any. Returns True when one was restored."""
        if not self._persist:
            return False
        try:
            payload = await get_persisted_session(self._slot)
        except RuntimeError:
            return False
        except Exception as e:
            logger.warning(f"Session restore failed: {e}")
            return False
        if not payload:
            return False

        try:
            credential = Credential(
                access_token=str(payload["access_token"]),
                refresh_token=str(payload["refresh_token"]),
            )
            user_raw = payload.get("user")
            user = User.model_validate(user_raw) if user_raw else None
        except (KeyError, TypeError, ValueError):
            logger.warning("Persisted session is malformed, ignoring it")
            return False

        self._swap(credential, user)
        logger.info(f"Session restored for user={user.id if user else None}")
        return True

    def _swap(self, credential: Credential | None, user: User | None) -> None:
        old = self._credential
        self._credential = credential
        self._user = user if credential is not None else None
        self._epoch += 1
        for listener in list(self._listeners):
            try:
                listener(old, credential)
            except Exception:
                logger.exception("Credential listener failed")

    async def _save(self) -> None:
        if not self._persist:
            return
        try:
            if self._credential is None:
                await delete_persisted_session(self._slot)
                return
            payload: dict[str, Any] = {
                "access_token": self._credential.access_token,
                "refresh_token": self._credential.refresh_token,
                "user": self._user.model_dump(mode="json") if self._user else None,
            }
            await set_persisted_session(self._slot, payload, self._ttl)
        except RuntimeError:
            # Redis not initialised: memory-only session.
            return
        except Exception as e:
            logger.warning(f"Session persistence failed: {e}")


class CredentialWriter:
    """Write capability for a CredentialStore."""

    def __init__(self, store: CredentialStore):
        self._store = store

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def install(self, credential: Credential, user: User | None = None) -> int:
        """Atomically install a new pair. Keeps the known user when none is given.

        Returns:
            The new credential epoch.
        """
        store = self._store
        store._swap(credential, user if user is not None else store.user)
        await store._save()
        return store.epoch

    async def clear(self) -> int:
        """Drop the session. Returns the new credential epoch."""
        store = self._store
        store._swap(None, None)
        await store._save()
        return store.epoch
