"""Client settings via Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    app_name: str = "SportMatch Client"
    debug: bool = False

    # REST API
    api_base_url: str = Field(
        default="http://localhost:8080/api",
        validation_alias=AliasChoices("SPORTMATCH_API_URL", "API_URL"),
    )
    request_timeout: float = Field(default=10.0, gt=0)

    @field_validator("api_base_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, v: object) -> object:
        """httpx joins relative paths onto base_url, so keep it slash-free."""
        if isinstance(v, str):
            return v.strip().rstrip("/")
        return v

    # Realtime (SockJS + STOMP)
    ws_url: str = Field(
        default="http://localhost:8080/ws",
        validation_alias=AliasChoices("SPORTMATCH_WS_URL", "WS_URL"),
    )
    heartbeat_outgoing_ms: int = Field(default=4000, ge=0)
    heartbeat_incoming_ms: int = Field(default=4000, ge=0)
    heartbeat_grace: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier on the negotiated incoming heartbeat before the link is declared dead",
    )
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_max_attempts: int = Field(default=5, ge=0, le=100)

    # Candidate browsing
    candidate_page_size: int = Field(default=10, ge=1, le=100)
    default_max_distance_km: int = Field(default=10, ge=1)

    # Session persistence (Redis). Empty URL keeps the session in memory only.
    redis_url: str = Field(
        default="",
        validation_alias=AliasChoices("SPORTMATCH_REDIS_URL", "REDIS_URL"),
    )
    session_ttl: int = Field(default=30 * 24 * 3600, ge=60)

    # Behaviour of validate_session() when the profile check cannot reach the API
    on_validation_network_error: Literal["fail-open", "fail-closed"] = Field(
        default="fail-open",
        validation_alias=AliasChoices("ON_VALIDATION_NETWORK_ERROR"),
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
