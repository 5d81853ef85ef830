"""Typed publish/subscribe for the signals the core emits to its consumers.

Listeners are called in registration order. A failing listener is logged and
does not stop delivery to the others. Coroutine listeners are scheduled as
tasks on the running loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Callable, TypeVar

logger = logging.getLogger("sportmatch")


@dataclass(frozen=True)
class Signal:
    pass


@dataclass(frozen=True)
class SessionEnded(Signal):
    reason: str


@dataclass(frozen=True)
class CredentialRotated(Signal):
    epoch: int


@dataclass(frozen=True)
class CandidateRemoved(Signal):
    key: Any
    candidate_id: int


@dataclass(frozen=True)
class MatchFound(Signal):
    payload: dict[str, Any]
    source: str = "realtime"


@dataclass(frozen=True)
class MessageReceived(Signal):
    message: Any


@dataclass(frozen=True)
class TransportUnavailable(Signal):
    attempts: int


S = TypeVar("S", bound=Signal)


class SignalBus:
    def __init__(self) -> None:
        self._listeners: dict[type[Signal], list[Callable[[Any], Any]]] = {}
        self._tasks: set[asyncio.Task] = set()

    def connect(self, signal_type: type[S], listener: Callable[[S], Any]) -> Callable[[], None]:
        """Register a listener. Returns a callable that removes it."""
        self._listeners.setdefault(signal_type, []).append(listener)

        def _disconnect() -> None:
            listeners = self._listeners.get(signal_type, [])
            if listener in listeners:
                listeners.remove(listener)

        return _disconnect

    def emit(self, signal: Signal) -> None:
        for listener in list(self._listeners.get(type(signal), [])):
            try:
                result = listener(signal)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                logger.exception(f"Signal listener failed for {type(signal).__name__}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async signal listener failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
