from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Assessment Sync"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Durable local queue (survives restarts; scoped per installation)
    QUEUE_DATABASE_URL: str = "sqlite:///./assessment_queue.db"

    # Remote assessment-storage / metrics service
    REMOTE_API_URL: Optional[str] = None  # Unset = permanently offline, everything is queued
    REMOTE_API_KEY: Optional[str] = None
    SUBMIT_TIMEOUT: float = 8.0
    PROBE_TIMEOUT: float = 4.0

    # Retry policy (linear backoff: RETRY_BASE_DELAY * attempt number)
    SUBMIT_MAX_ATTEMPTS: int = 3
    PROBE_MAX_ATTEMPTS: int = 1
    RETRY_BASE_DELAY: float = 1.0

    # Queued records reaching this many failed attempts are flagged for attention
    SYNC_ATTEMPT_CEILING: int = 10

    # Connectivity monitoring
    CONNECTION_CHECK_INTERVAL: float = 30.0  # 0 disables periodic probing
    DEGRADED_AFTER_FAILURES: int = 3

    class Config:
        env_file = ".env"


settings = Settings()
