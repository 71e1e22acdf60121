"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

WEAK_SECRET_VALUES = {"changeme", "changeme-in-production", "secret", "password", "test"}


def check_secret_strength(name: str, value: str) -> str:
    """Fail closed if a signing secret is weak or placeholder quality."""
    if not value:
        raise ValueError(f"{name} must be set.")

    if len(value) < 32:
        raise ValueError(f"{name} must be at least 32 characters.")

    lowered = value.lower()
    if lowered in WEAK_SECRET_VALUES or "changeme" in lowered:
        raise ValueError(f"{name} must not be a placeholder value.")

    counts = Counter(value)
    entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
    estimated_entropy_bits = entropy_per_char * len(value)
    if estimated_entropy_bits < 100:
        raise ValueError(f"{name} entropy is too low; use a cryptographically random value.")

    return value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "GitVizLytics"
    debug: bool = False
    log_level: str = "INFO"

    # Session storage
    session_store: Literal["memory", "database"] = "database"
    database_url: str = "sqlite:///./data/vizlytics.db"

    # Tokens
    jwt_secret: str
    jwt_refresh_secret: str
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60
    refresh_token_expire_days: int = 7
    strict_session_check: bool = False
    refresh_rate_limit: int = 10

    # GitHub OAuth app
    github_client_id: str
    github_client_secret: str
    github_callback_url: str = "http://localhost:5000/api/auth/github/callback"
    github_oauth_scope: str = "read:user user:email repo"
    github_authorize_url: str = "https://github.com/login/oauth/authorize"
    github_token_url: str = "https://github.com/login/oauth/access_token"
    github_api_url: str = "https://api.github.com"
    github_timeout_seconds: float = 10.0

    # Browser client
    client_url: str = "http://localhost:3000"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]
    cookie_secure: bool = True
    cookie_samesite: Literal["lax", "strict", "none"] = "lax"
    # Comma or space separated CIDRs; X-Forwarded-For is ignored unless the peer is in one
    trusted_proxies: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, value: str) -> str:
        return check_secret_strength("JWT_SECRET", value)

    @field_validator("jwt_refresh_secret")
    @classmethod
    def validate_jwt_refresh_secret(cls, value: str) -> str:
        return check_secret_strength("JWT_REFRESH_SECRET", value)

    @field_validator("client_url")
    @classmethod
    def strip_client_url(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_independent_secrets(self) -> "Settings":
        """Access and refresh tokens must not share a signing key."""
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
