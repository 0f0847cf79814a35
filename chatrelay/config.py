from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process configuration, read from the environment with ``.env`` as fallback.

    DATABASE_URL and LOG_LEVEL have no defaults; the process refuses to start
    without them.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # SQLAlchemy URL of the message store
    DATABASE_URL: str

    LOG_LEVEL: str

    # HMAC key for provider deliveries; empty makes /health/ready fail
    WEBHOOK_SECRET: str = ""

    # Allowed browser origin for the chat client
    CLIENT_URL: str = "http://localhost:3000"

    # Demo-only: fake provider receipts for local sends (delivered, then read)
    SIMULATE_STATUS_UPDATES: bool = False
    SIMULATED_DELIVERED_DELAY: float = 1.0
    SIMULATED_READ_DELAY: float = 3.0

    # Default page size for thread history
    THREAD_PAGE_SIZE: int = 50

    # Outbound frames buffered per live viewer before dropping
    VIEWER_QUEUE_SIZE: int = 256


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
