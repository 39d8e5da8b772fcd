from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Process configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "OBSERVATORY_",
        "extra": "ignore",
    }

    # Declarative target list (YAML or JSON); unset = no targets
    targets_file: str | None = None

    # SQLite database
    database: str = "monitoring.db"

    # API
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    # Retention
    observation_retention_days: float = 30
    observation_retention_check_interval: float = 60  # seconds between sweeps

    # Live event bus backlog per subscriber
    bus_capacity: int = 1024

    # Append attempts before a controller gives up on the store
    persist_attempts: int = 3

    # Logging
    log_level: str = "INFO"


settings = Settings()
