from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Parley API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url_override: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the individual DB_* parts",
    )
    database_user: str = Field(default="parley", env="DB_USER")
    database_password: str = Field(default="parley", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=5432, env="DB_PORT")
    database_name: str = Field(default="parley", env="DB_NAME")

    identity_jwt_secret: str = Field(default="changeme", env="IDENTITY_JWT_SECRET")
    identity_jwt_algorithm: str = Field(default="HS256", env="IDENTITY_JWT_ALGORITHM")
    identity_issuer: str | None = Field(
        default=None,
        env="IDENTITY_ISSUER",
        description="Expected 'iss' claim of identity tokens; unchecked when empty",
    )
    identity_token_expire_minutes: int = Field(default=60, env="IDENTITY_TOKEN_EXPIRE_MINUTES")
    identity_webhook_secret: str = Field(default="changeme", env="IDENTITY_WEBHOOK_SECRET")

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")
    chat_search_max_results: int = Field(default=50, env="CHAT_SEARCH_MAX_RESULTS")
    status_message_max_length: int = Field(default=25, env="STATUS_MESSAGE_MAX_LENGTH")
    reaction_limit_per_user: int = Field(
        default=10,
        env="REACTION_LIMIT_PER_USER",
        description="Maximum distinct reactions a single user may hold on one message",
    )
    channel_limit: int = Field(default=10, env="CHANNEL_LIMIT", description="Maximum number of channels")
    default_channel_name: str = Field(default="general", env="DEFAULT_CHANNEL_NAME")

    rate_limit_window_seconds: int = Field(default=60, env="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(default=30, env="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_redis_url: str | None = Field(
        default=None,
        env="RATE_LIMIT_REDIS_URL",
        description="Shared counter store for multi-process deployments; in-memory when unset",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to fan change events out across nodes",
    )
    realtime_redis_prefix: str = Field(default="parley.changes", env="REALTIME_REDIS_PREFIX")
    websocket_receive_timeout_seconds: int = Field(default=30, env="WEBSOCKET_RECEIVE_TIMEOUT_SECONDS")
    websocket_ping_interval_seconds: int = Field(default=25, env="WEBSOCKET_PING_INTERVAL_SECONDS")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
