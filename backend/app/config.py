import socket

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database (TimescaleDB / PostgreSQL). Empty means "not configured":
    # resolved lazily so that importing the app never needs a database.
    DATABASE_URL: str = ""
    DB_POOL_SIZE: int = Field(5, gt=0)
    DB_POOL_TIMEOUT: float = Field(10.0, gt=0)

    # Redis (upstream event stream + work queues)
    REDIS_URL: str = "redis://localhost:6379/0"

    # App
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Ingestion
    EVENT_STREAM: str = "telemetry:events"
    INGEST_CONSUMER_GROUP: str = "ingest"
    CONSUMER_NAME: str = Field(default_factory=socket.gethostname)
    INGEST_BATCH_SIZE: int = Field(100, gt=0)

    # Work queues. Each consumer stage owns one queue.
    QUEUE_DB_WRITE: str = "telemetry-db-write"
    QUEUE_ALERTS: str = "telemetry-alerts"
    QUEUE_BLOB_BATCH: str = "telemetry-blob-batch"
    # Each dispatched message produces 3 queue sends
    QUEUE_ENQUEUE_CONCURRENCY: int = Field(32, gt=0)
    QUEUE_VISIBILITY_TIMEOUT_MS: int = Field(30000, gt=0)
    QUEUE_MAX_DEQUEUE_COUNT: int = Field(5, gt=0)
    STREAM_BLOCK_MS: int = Field(5000, gt=0)

    # Cold storage archive
    ARCHIVE_DIR: str = "./archive"
    ARCHIVE_BATCH_SIZE: int = Field(32, gt=0)
    ARCHIVE_UPLOAD_CONCURRENCY: int = Field(8, gt=0)
    COLD_PREFIX: str = "telemetry"
    COLD_GZIP: bool = False
    # Opt-in: skip records already archived (Redis set per blob)
    ARCHIVE_DEDUP: bool = False
    ARCHIVE_DEDUP_TTL: int = Field(7 * 24 * 3600, gt=0)  # seconds

    # Alerts
    ALERT_HYSTERESIS_MINUTES: float = Field(10.0, gt=0)

    # Aggregates maintenance
    AGGREGATES_ENABLED: bool = True
    AGGREGATES_REFRESH_INTERVAL: int = Field(300, gt=0)  # seconds (5 min)
    TIMESCALE_RETENTION_DAYS: int = Field(30, gt=0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @model_validator(mode="after")
    def _queues_distinct(self) -> "Settings":
        names = [self.QUEUE_DB_WRITE, self.QUEUE_ALERTS, self.QUEUE_BLOB_BATCH]
        if len(set(names)) != len(names):
            raise ValueError(f"work queue names must be distinct: {names}")
        if self.EVENT_STREAM in names:
            raise ValueError("EVENT_STREAM must not reuse a work queue name")
        return self


settings = Settings()
