"""Pydantic schemas for API request/response payloads."""

from sportmatch.schemas.auth import AuthResponse, LoginRequest, RegisterRequest
from sportmatch.schemas.chat import (
    Conversation,
    ConversationPeer,
    Message,
    MessagePage,
    SendMessageRequest,
)
from sportmatch.schemas.matching import CandidateFilters, MatchResult, MatchStatus
from sportmatch.schemas.users import Sport, User, UserSportSelection

__all__ = [
    "AuthResponse",
    "LoginRequest",
    "RegisterRequest",
    "Conversation",
    "ConversationPeer",
    "Message",
    "MessagePage",
    "SendMessageRequest",
    "CandidateFilters",
    "MatchResult",
    "MatchStatus",
    "Sport",
    "User",
    "UserSportSelection",
]
