from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Durable store for identities and messages
    DATABASE_URL: str = "sqlite:///./data/messenger.db"

    LOG_LEVEL: str = "INFO"

    # Verification challenges
    CODE_TTL_SECONDS: int = 300
    CODE_SWEEP_INTERVAL_SECONDS: float = 60.0

    # Upper bound on a single live push to a recipient connection
    PUSH_TIMEOUT_SECONDS: float = 5.0

    # Demo identities created when the directory starts empty
    SEED_PHONE_NUMBERS: list[str] = ["+375000", "+375001"]

    CORS_ORIGINS: list[str] = ["*"]

    # Bind address for `python -m messenger`
    HOST: str = "0.0.0.0"
    PORT: int = 3000


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
