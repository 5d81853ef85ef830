"""Schemas for users and sports."""

from pydantic import BaseModel, Field


class Sport(BaseModel):
    """A sport users can be matched on."""

    id: int
    name: str
    description: str = ""
    is_team_sport: bool = Field(alias="isTeamSport", default=False)
    min_players: int = Field(alias="minPlayers", default=1)
    max_players: int = Field(alias="maxPlayers", default=2)
    image_url: str | None = Field(alias="imageUrl", default=None)
    is_active: bool = Field(alias="isActive", default=True)

    model_config = {"populate_by_name": True}


class User(BaseModel):
    """A user profile; candidates in the matching flow are users too."""

    id: int
    email: str = ""
    first_name: str = Field(alias="firstName", default="")
    last_name: str = Field(alias="lastName", default="")
    profile_image: str | None = Field(alias="profileImage", default=None)
    phone_number: str | None = Field(alias="phoneNumber", default=None)
    latitude: float | None = None
    longitude: float | None = None
    max_distance_km: int = Field(alias="maxDistanceKm", default=10)
    is_active: bool = Field(alias="isActive", default=True)

    model_config = {"populate_by_name": True}


class UserSportSelection(BaseModel):
    """Payload item for POST /users/{id}/sports."""

    sport_id: int = Field(alias="sportId")
    skill_level: str = Field(alias="skillLevel", default="BEGINNER")

    model_config = {"populate_by_name": True}
