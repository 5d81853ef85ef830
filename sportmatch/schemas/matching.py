"""Schemas for the /matching endpoints."""

from enum import Enum

from pydantic import BaseModel, Field


class MatchStatus(str, Enum):
    LIKE_STORED = "LIKE_STORED"
    MATCH_CREATED = "MATCH_CREATED"
    TEAM_MATCH_PENDING = "TEAM_MATCH_PENDING"


class MatchResult(BaseModel):
    """Answer of POST /matching/like."""

    is_match: bool = Field(alias="isMatch", default=False)
    target_user_id: int = Field(alias="targetUserId")
    message: str = ""
    match_id: int | None = Field(alias="matchId", default=None)
    status: MatchStatus = MatchStatus.LIKE_STORED

    model_config = {"populate_by_name": True}


class CandidateFilters(BaseModel):
    """Query filters for GET /matching/potential-matches."""

    latitude: float | None = None
    longitude: float | None = None
    max_distance_km: int = Field(alias="maxDistanceKm", default=10, ge=1)

    model_config = {"populate_by_name": True, "frozen": True}

    def to_params(self) -> dict[str, float | int]:
        params: dict[str, float | int] = {"maxDistanceKm": self.max_distance_km}
        if self.latitude is not None:
            params["latitude"] = self.latitude
        if self.longitude is not None:
            params["longitude"] = self.longitude
        return params
