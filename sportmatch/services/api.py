"""Typed wrappers over the SportMatch REST endpoints.

Every call goes through the RequestGateway, so authentication, renewal and
error mapping are handled there. Responses are parsed into pydantic schemas.
"""

from typing import Any

from pydantic import TypeAdapter

from sportmatch.schemas import (
    AuthResponse,
    CandidateFilters,
    Conversation,
    LoginRequest,
    MatchResult,
    Message,
    MessagePage,
    RegisterRequest,
    SendMessageRequest,
    Sport,
    User,
    UserSportSelection,
)
from sportmatch.services.gateway import ApiRequest, RequestGateway

_sports = TypeAdapter(list[Sport])
_users = TypeAdapter(list[User])
_conversations = TypeAdapter(list[Conversation])


class SportMatchApi:
    """Client for the SportMatch REST API."""

    def __init__(self, gateway: RequestGateway):
        self.gateway = gateway

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self.gateway.issue(ApiRequest("GET", path, params=params))
        return response.json()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        response = await self.gateway.issue(ApiRequest(method, path, params=params, json=json))
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    # ============================================================
    # Auth
    # ============================================================

    async def login(self, request: LoginRequest) -> AuthResponse:
        data = await self._send("POST", "/auth/login", json=request.model_dump())
        return AuthResponse.model_validate(data)

    async def register(self, request: RegisterRequest) -> AuthResponse:
        data = await self._send(
            "POST", "/auth/register", json=request.model_dump(by_alias=True, exclude_none=True)
        )
        return AuthResponse.model_validate(data)

    async def logout(self) -> None:
        await self._send("POST", "/auth/logout")

    # ============================================================
    # Sports
    # ============================================================

    async def get_sports(self) -> list[Sport]:
        return _sports.validate_python(await self._get("/sports"))

    async def get_sport(self, sport_id: int) -> Sport:
        return Sport.model_validate(await self._get(f"/sports/{sport_id}"))

    async def get_individual_sports(self) -> list[Sport]:
        return _sports.validate_python(await self._get("/sports/individual"))

    async def get_team_sports(self) -> list[Sport]:
        return _sports.validate_python(await self._get("/sports/team"))

    # ============================================================
    # Users
    # ============================================================

    async def get_users(self) -> list[User]:
        return _users.validate_python(await self._get("/users"))

    async def get_user(self, user_id: int) -> User:
        return User.model_validate(await self._get(f"/users/{user_id}"))

    async def get_user_profile(self, user_id: int) -> User:
        return User.model_validate(await self._get(f"/users/{user_id}/profile"))

    async def update_user_location(self, user_id: int, latitude: float, longitude: float) -> User:
        data = await self._send(
            "PUT",
            f"/users/{user_id}/location",
            params={"latitude": latitude, "longitude": longitude},
        )
        return User.model_validate(data)

    async def update_user_max_distance(self, user_id: int, max_distance_km: int) -> User:
        data = await self._send(
            "PUT", f"/users/{user_id}/distance", params={"maxDistanceKm": max_distance_km}
        )
        return User.model_validate(data)

    async def save_user_sports(self, user_id: int, sports: list[UserSportSelection]) -> None:
        await self._send(
            "POST",
            f"/users/{user_id}/sports",
            json=[s.model_dump(by_alias=True) for s in sports],
        )

    # ============================================================
    # Matching
    # ============================================================

    async def get_potential_matches(
        self,
        user_id: int,
        sport_id: int,
        filters: CandidateFilters | None = None,
        page: int = 0,
        size: int = 10,
    ) -> list[User]:
        """Candidates for a user in one sport, in server relevance order."""
        params: dict[str, Any] = {"userId": user_id, "sportId": sport_id, "page": page, "size": size}
        params.update((filters or CandidateFilters()).to_params())
        return _users.validate_python(await self._get("/matching/potential-matches", params))

    async def process_like(self, user_id: int, target_user_id: int, sport_id: int) -> MatchResult:
        data = await self._send(
            "POST",
            "/matching/like",
            params={"userId": user_id, "targetUserId": target_user_id, "sportId": sport_id},
        )
        if isinstance(data, str):
            # Older servers answer with the bare status string.
            return MatchResult(target_user_id=target_user_id, status=data.strip().strip('"'))
        return MatchResult.model_validate(data)

    async def process_dislike(self, user_id: int, target_user_id: int, sport_id: int) -> None:
        await self._send(
            "POST",
            "/matching/dislike",
            params={"userId": user_id, "targetUserId": target_user_id, "sportId": sport_id},
        )

    # ============================================================
    # Chat
    # ============================================================

    async def get_conversations(self) -> list[Conversation]:
        return _conversations.validate_python(await self._get("/chat/conversations"))

    async def get_conversation_messages(
        self, conversation_id: int, page: int = 0, size: int = 20
    ) -> MessagePage:
        data = await self._get(
            f"/chat/conversations/{conversation_id}/messages", {"page": page, "size": size}
        )
        return MessagePage.model_validate(data)

    async def send_message(self, request: SendMessageRequest) -> Message:
        data = await self._send("POST", "/chat/messages", json=request.model_dump(by_alias=True))
        return Message.model_validate(data)

    async def get_or_create_conversation(
        self, other_user_id: int, match_id: int | None = None
    ) -> Conversation:
        params: dict[str, Any] = {"otherUserId": other_user_id}
        if match_id is not None:
            params["matchId"] = match_id
        data = await self._send("POST", "/chat/conversations", params=params)
        return Conversation.model_validate(data)

    async def mark_messages_as_read(self, conversation_id: int) -> None:
        await self._send("PUT", f"/chat/conversations/{conversation_id}/read")

    async def get_unread_message_count(self) -> int:
        return int(await self._get("/chat/unread-count"))
