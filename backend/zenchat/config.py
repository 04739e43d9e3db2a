"""Application configuration."""
from collections import Counter
from functools import lru_cache
import math

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    app_name: str = "ZenChat"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Database
    database_url: str = "sqlite:///./data/zenchat.db"
    datastore_timeout_seconds: float = 5.0

    # Auth
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    bcrypt_rounds: int = 10
    access_cookie_name: str = "accessToken"
    refresh_cookie_name: str = "refreshToken"
    cookie_samesite: str = "lax"
    cookie_secure: bool | None = None

    # Rate limiting
    rate_limit_window_ms: int = 60_000
    rate_limit_max_requests: int = 200

    # Realtime
    session_outbox_size: int = 1000

    # Avatars
    avatar_pool_size: int = 23
    avatar_base_url: str = "https://imageserver-1-466g.onrender.com/static/avatars"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str) -> str:
        """Fail closed if SECRET_KEY is weak or placeholder quality."""
        if not value:
            raise ValueError("SECRET_KEY must be set.")

        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        weak_values = {"changeme", "changeme-in-production", "secret", "password", "test"}
        lowered = value.lower()
        if lowered in weak_values or "changeme" in lowered:
            raise ValueError("SECRET_KEY must not be a placeholder value.")

        counts = Counter(value)
        entropy_per_char = -sum((count / len(value)) * math.log2(count / len(value)) for count in counts.values())
        estimated_entropy_bits = entropy_per_char * len(value)
        if estimated_entropy_bits < 100:
            raise ValueError("SECRET_KEY entropy is too low; use a cryptographically random value.")

        return value

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, value: str) -> str:
        lowered = value.lower()
        if lowered not in {"development", "production", "test"}:
            raise ValueError("ENVIRONMENT must be development, production or test.")
        return lowered

    @model_validator(mode="after")
    def default_cookie_secure(self) -> "Settings":
        """Cookies are secure in production unless explicitly configured."""
        if self.cookie_secure is None:
            self.cookie_secure = self.environment == "production"
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def expose_error_details(self) -> bool:
        """Full error detail only in a non-production diagnostic mode."""
        return self.debug and not self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
