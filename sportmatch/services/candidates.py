"""Candidate cache: paginated "people to like/pass" per (user, sport).

Flow for a decision:
1. Reject if a decision for the same (key, candidate) is still in flight
2. Remove the candidate locally, before the network call
3. Send like/dislike through the API
4. Success: nothing to undo, return the outcome
5. Failure: mark the whole entry stale and re-raise; load() must run again

Rules:
- No duplicate ids inside an entry. An id removed by a decision stays out of
  later pages until the next load().
- Two load_more() calls for the same key share one fetch.
- A fetch that completes after its key was reloaded or discarded is dropped
  and its waiters get an empty list.
- Every mutation of an entry happens under that key's lock.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging

from sportmatch.errors import AlreadyProcessing, EntryNotLoaded, StaleEntry
from sportmatch.schemas import CandidateFilters, MatchStatus, User
from sportmatch.services.api import SportMatchApi
from sportmatch.services.signals import CandidateRemoved, MatchFound, SignalBus
from sportmatch.settings import Settings, get_settings

logger = logging.getLogger("sportmatch")


class DecisionKind(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


class DecisionOutcome(str, Enum):
    LIKE_STORED = "LIKE_STORED"
    MATCH_CREATED = "MATCH_CREATED"
    TEAM_MATCH_PENDING = "TEAM_MATCH_PENDING"
    DISLIKE_STORED = "DISLIKE_STORED"


@dataclass(frozen=True)
class CandidateKey:
    user_id: int
    context_id: int  # sport id


@dataclass
class CandidateCacheEntry:
    filters: CandidateFilters
    candidates: dict[int, User] = field(default_factory=dict)
    page_cursor: int = 0
    has_more: bool = True
    loading: bool = False
    stale: bool = False
    generation: int = 0
    removed_ids: set[int] = field(default_factory=set)


@dataclass(frozen=True)
class PendingDecision:
    key: CandidateKey
    candidate_id: int
    kind: DecisionKind


class MatchCandidateCache:
    def __init__(self, api: SportMatchApi, bus: SignalBus, settings: Settings | None = None):
        self.api = api
        self.bus = bus
        self.settings = settings or get_settings()
        self.page_size = self.settings.candidate_page_size
        self._entries: dict[CandidateKey, CandidateCacheEntry] = {}
        self._locks: dict[CandidateKey, asyncio.Lock] = {}
        self._fetches: dict[CandidateKey, asyncio.Task[list[User]]] = {}
        self._pending: dict[tuple[CandidateKey, int], PendingDecision] = {}
        self._generations: dict[CandidateKey, int] = {}

    def _lock_for(self, key: CandidateKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _next_generation(self, key: CandidateKey) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        return generation

    # ------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------

    def get(self, key: CandidateKey) -> CandidateCacheEntry | None:
        return self._entries.get(key)

    def candidates(self, key: CandidateKey) -> list[User]:
        entry = self._entries.get(key)
        return list(entry.candidates.values()) if entry else []

    def is_pending(self, key: CandidateKey, candidate_id: int) -> bool:
        return (key, candidate_id) in self._pending

    # ------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------

    async def load(self, key: CandidateKey, filters: CandidateFilters | None = None) -> list[User]:
        """Fetch the first page and replace the entry for `key`.

        Returns an empty list when a newer load() or discard() for the same
        key finished first.
        """
        filters = filters or CandidateFilters(max_distance_km=self.settings.default_max_distance_km)
        generation = self._next_generation(key)
        self._forget_fetch(key)

        page = await self.api.get_potential_matches(
            key.user_id, key.context_id, filters, page=0, size=self.page_size
        )
        if self._generations.get(key) != generation:
            logger.debug(f"Dropping superseded first page for {key}")
            return []

        entry = CandidateCacheEntry(filters=filters, generation=generation)
        for user in page:
            entry.candidates.setdefault(user.id, user)
        entry.page_cursor = 1
        entry.has_more = len(page) == self.page_size

        async with self._lock_for(key):
            self._entries[key] = entry
        logger.info(f"Loaded {len(entry.candidates)} candidates for {key}")
        return list(entry.candidates.values())

    async def load_more(self, key: CandidateKey) -> list[User]:
        """Append the next page. Concurrent calls share the same fetch.

        Returns:
            The candidates appended by this page. Empty when there is no more,
            or when the key was reloaded or discarded while the page was in flight.
        """
        entry = self._entries.get(key)
        if entry is None:
            raise EntryNotLoaded(key)
        if entry.stale:
            raise StaleEntry(key)

        fetch = self._fetches.get(key)
        if fetch is not None and not fetch.done():
            return await self._wait_fetch(fetch)
        if not entry.has_more:
            return []

        entry.loading = True
        fetch = asyncio.ensure_future(self._fetch_page(key, entry, entry.page_cursor))
        self._fetches[key] = fetch
        try:
            return await self._wait_fetch(fetch)
        finally:
            if self._fetches.get(key) is fetch and fetch.done():
                del self._fetches[key]

    async def _wait_fetch(self, fetch: asyncio.Future[list[User]]) -> list[User]:
        try:
            return await asyncio.shield(fetch)
        except asyncio.CancelledError:
            # The shared fetch was cancelled under us, not the caller.
            task = asyncio.current_task()
            if fetch.cancelled() and (task is None or task.cancelling() == 0):
                return []
            raise

    async def _fetch_page(
        self, key: CandidateKey, entry: CandidateCacheEntry, cursor: int
    ) -> list[User]:
        try:
            page = await self.api.get_potential_matches(
                key.user_id, key.context_id, entry.filters, page=cursor, size=self.page_size
            )
        finally:
            entry.loading = False

        async with self._lock_for(key):
            current = self._entries.get(key)
            if current is not entry or current.generation != entry.generation:
                logger.debug(f"Dropping late page {cursor} for {key}")
                return []
            added: list[User] = []
            for user in page:
                if user.id in current.candidates or user.id in current.removed_ids:
                    continue
                current.candidates[user.id] = user
                added.append(user)
            current.page_cursor = cursor + 1
            current.has_more = len(page) == self.page_size
        return added

    def _forget_fetch(self, key: CandidateKey) -> None:
        # The fetch keeps running for its waiters; the generation check drops its page.
        self._fetches.pop(key, None)

    def discard(self, key: CandidateKey) -> None:
        """Forget a browsing context. Late results for it are ignored."""
        self._next_generation(key)
        self._forget_fetch(key)
        self._entries.pop(key, None)

    def clear(self) -> None:
        for key in list(self._entries):
            self.discard(key)

    # ------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------

    async def record_decision(
        self, key: CandidateKey, candidate_id: int, kind: DecisionKind
    ) -> DecisionOutcome:
        """Like or pass on a candidate with an optimistic local removal.

        Raises:
            AlreadyProcessing: A decision for this candidate is in flight.
            EntryNotLoaded: `key` was never loaded (or was discarded).
            StaleEntry: A previous decision failed; reload first.
            ApiError: The API call failed; the entry is now stale.
        """
        if (key, candidate_id) in self._pending:
            raise AlreadyProcessing(key, candidate_id)
        entry = self._entries.get(key)
        if entry is None:
            raise EntryNotLoaded(key)
        if entry.stale:
            raise StaleEntry(key)

        self._pending[(key, candidate_id)] = PendingDecision(key, candidate_id, kind)
        try:
            async with self._lock_for(key):
                entry.candidates.pop(candidate_id, None)
                entry.removed_ids.add(candidate_id)
            self.bus.emit(CandidateRemoved(key=key, candidate_id=candidate_id))

            try:
                outcome = await self._send_decision(key, candidate_id, kind)
            except Exception:
                async with self._lock_for(key):
                    current = self._entries.get(key)
                    if current is not None and current.generation == entry.generation:
                        current.stale = True
                logger.warning(f"{kind.value} on {candidate_id} failed, {key} marked stale")
                raise
        finally:
            del self._pending[(key, candidate_id)]

        return outcome

    async def _send_decision(
        self, key: CandidateKey, candidate_id: int, kind: DecisionKind
    ) -> DecisionOutcome:
        if kind is DecisionKind.DISLIKE:
            await self.api.process_dislike(key.user_id, candidate_id, key.context_id)
            return DecisionOutcome.DISLIKE_STORED

        result = await self.api.process_like(key.user_id, candidate_id, key.context_id)
        outcome = DecisionOutcome(result.status.value)
        if result.status is MatchStatus.MATCH_CREATED:
            logger.info(f"Match created with {candidate_id} ({key})")
            self.bus.emit(
                MatchFound(payload=result.model_dump(mode="json", by_alias=True), source="decision")
            )
        return outcome
