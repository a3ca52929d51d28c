"""Configuration settings for the workforce scheduler."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    db_host: str = "localhost"
    db_port: int = 15432
    db_name: str = "workforce"
    db_user: str = "agent"
    db_password: str = "agent"
    database_enabled: bool = False

    # Redis
    redis_url: str = "redis://localhost:16379/0"
    redis_events_enabled: bool = False

    # Scheduler
    tick_interval_seconds: float = 5.0
    max_concurrent: int = 5
    max_retries: int = 3
    retry_penalty: int = 20
    finished_task_retention: int = 1000

    # Timeouts (seconds)
    execution_timeout: float = 300.0  # 5 minutes
    persistence_timeout: float = 5.0

    # In-memory store and write mirror, records per collection
    memory_store_limit: int = 10000

    # Router
    routing_history_size: int = 1000

    # Pattern detection
    pattern_lookback: int = 20
    pattern_min_tasks: int = 5
    pattern_min_confidence: float = 0.6

    # Reviews
    trend_window: int = 10
    amendment_evaluation_window: int = 5
    review_poll_seconds: float = 60.0
    recommendation_expiry_days: int = 7

    @property
    def database_url(self) -> str:
        """SQLAlchemy database URL."""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    @property
    def async_database_url(self) -> str:
        """Async SQLAlchemy database URL."""
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    class Config:
        env_prefix = "WORKFORCE_"
        env_file = ".env"


# Global settings instance
settings = Settings()
