"""Error taxonomy for the client core.

- ApiError family: raised by the request gateway.
- CacheError family: raised by the candidate cache guards.
- TransportError family: raised by the realtime transport.
"""

from typing import Any


class SportMatchError(RuntimeError):
    pass


# ============================================================
# Gateway errors
# ============================================================


class ApiError(SportMatchError):
    pass


class Unauthorized(ApiError):
    """Credential rejected and could not be renewed. Ends the session."""

    status = 401


class NetworkError(ApiError):
    """The API could not be reached. Transient; the caller decides on retries."""


class ServerError(ApiError):
    def __init__(self, status: int, message: str = ""):
        self.status = status
        super().__init__(message or f"Server error: HTTP {status}")


class ValidationError(ApiError):
    def __init__(self, status: int, payload: Any = None):
        self.status = status
        self.payload = payload
        super().__init__(f"Request rejected: HTTP {status}")


# ============================================================
# Candidate cache errors
# ============================================================


class CacheError(SportMatchError):
    pass


class AlreadyProcessing(CacheError):
    def __init__(self, key: Any, candidate_id: int):
        self.key = key
        self.candidate_id = candidate_id
        super().__init__(f"Decision for candidate {candidate_id} already in flight ({key})")


class StaleEntry(CacheError):
    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"Candidate entry {key} is stale; call load() first")


class EntryNotLoaded(CacheError):
    def __init__(self, key: Any):
        self.key = key
        super().__init__(f"Candidate entry {key} has not been loaded")


# ============================================================
# Realtime transport errors
# ============================================================


class TransportError(SportMatchError):
    pass


class NotConnected(TransportError):
    pass


class ChannelClosed(TransportError):
    def __init__(self, code: int | None = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"Channel closed ({code}): {reason}" if code else f"Channel closed: {reason}")


class TransportUnavailable(TransportError):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Realtime transport gave up after {attempts} reconnect attempts")


class StompProtocolError(TransportError):
    pass
