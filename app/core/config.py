from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Parts Inquiry Ingest"

    # Database (ingestion ledger)
    DATABASE_URL: str = "sqlite:///./ingest.db"

    # Ingestion scheduler
    INGEST_ENABLED: bool = True
    INGEST_CHECK_INTERVAL_MINUTES: int = Field(default=2, ge=1)  # Polling fallback interval
    INGEST_BATCH_SIZE: int = Field(default=10, ge=1)
    INGEST_RETRY_FAILED: bool = True
    INGEST_RETRY_INTERVAL_HOURS: int = Field(default=1, ge=1)
    INGEST_USE_IDLE: bool = True  # Real-time push notifications when the source supports them
    INGEST_CYCLE_TIMEOUT_SECONDS: Optional[float] = None  # No deadline unless set
    INGEST_SOURCE_FACTORY: str = ""  # "package.module:callable" returning a NotificationSource
    INGEST_PROCESSOR_FACTORY: str = ""  # "package.module:callable" returning an ItemProcessor

    # Circuit breakers
    TRANSPORT_BREAKER_THRESHOLD: int = Field(default=5, ge=1)
    TRANSPORT_BREAKER_RESET_SECONDS: float = 60.0
    STORE_BREAKER_THRESHOLD: int = Field(default=3, ge=1)
    STORE_BREAKER_RESET_SECONDS: float = 30.0
    BREAKER_HALF_OPEN_SUCCESSES: int = Field(default=3, ge=1)

    # Memory watchdog (MB of resident memory)
    MEMORY_WARNING_MB: int = 1024
    MEMORY_CRITICAL_MB: int = 1536
    MEMORY_MAX_MB: int = 2048

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None  # Defaults to JSON when APP_ENV=production

    # Log throttling
    LOG_THROTTLE_WINDOW_SECONDS: float = 60.0
    LOG_THROTTLE_MAX_PER_WINDOW: int = 3

    # Backoff for transport connects
    BACKOFF_BASE_SECONDS: float = 1.0
    BACKOFF_MAX_SECONDS: float = 30.0
    BACKOFF_MAX_RETRIES: int = 3

    # Concurrency limit for item processing
    PROCESSING_MAX_CONCURRENT: int = 10
    PROCESSING_QUEUE_SIZE: int = 100

    JOB_LOCK_TTL_SECONDS: float = 3600.0

    # Optional status sink
    STATUS_WEBHOOK_URL: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @model_validator(mode="after")
    def check_memory_thresholds(self) -> "Settings":
        if not (self.MEMORY_WARNING_MB < self.MEMORY_CRITICAL_MB < self.MEMORY_MAX_MB):
            raise ValueError("memory thresholds must satisfy warning < critical < max")
        return self


settings = Settings()
