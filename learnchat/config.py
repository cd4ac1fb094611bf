from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Database
    database_url: str
    database_echo: bool = False
    database_create_tables: bool = False  # create the schema on startup (dev and tests); production runs Alembic

    # Security (tokens are issued by the identity service; we only verify them)
    secret_key: str
    algorithm: str = "HS256"

    # Redis
    redis_url: str = ""  # Optional Redis URL for pub/sub and rate limits (local: redis://localhost:6379)
    pubsub_backend: str = "memory"  # "memory" for single instance, "redis" for horizontal scaling
    rate_limit_backend: str = "memory"

    # Messaging limits
    message_rate_limit: int = 30  # sends per window per user
    message_rate_window_seconds: int = 60
    store_timeout_seconds: float = 10.0
    publish_timeout_seconds: float = 2.0
    ws_queue_size: int = 100

    log_level: str = "INFO"

    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:4200",
    ]

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
