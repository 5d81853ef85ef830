"""Schemas for the /auth endpoints."""

from pydantic import BaseModel, Field

from sportmatch.schemas.users import User


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(alias="firstName")
    last_name: str = Field(alias="lastName")
    phone_number: str | None = Field(alias="phoneNumber", default=None)

    model_config = {"populate_by_name": True}


class AuthResponse(BaseModel):
    """Login, register and refresh all answer with a freshly rotated pair."""

    token: str
    refresh_token: str = Field(alias="refreshToken")
    user: User | None = None
    message: str = ""

    model_config = {"populate_by_name": True}
