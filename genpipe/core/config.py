"""
Application Configuration
Loads settings from environment variables.
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App
    APP_NAME: str = "GenPipe API"
    DEBUG: bool = False
    API_BASE_URL: str = "http://localhost:8000"  # Base URL for file serving

    # Job store: "memory" (single process) or "sql" (durable table)
    JOB_STORE_BACKEND: str = "memory"

    # Database - SQLite for local dev, PostgreSQL for production
    DATABASE_URL: str = "sqlite:///./genpipe.db"

    # Progress events: "memory" (in-process queues) or "redis" (pub/sub)
    EVENT_BACKEND: str = "memory"
    EVENT_QUEUE_SIZE: int = 100  # Max buffered snapshots per subscriber

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # Queue
    WORKER_COUNT: int = 1
    QUEUE_MAX_SIZE: int = 100  # 0 = unbounded

    # Generation provider: "simulated" or "replicate"
    PROVIDER_BACKEND: str = "simulated"
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_BASE_URL: str = "https://api.replicate.com/v1"
    IMAGE_MODEL: str = "black-forest-labs/flux-schnell"
    VIDEO_MODEL: str = "google/veo-3.1-fast"
    THREE_D_MODEL: str = "firtoz/trellis"
    CAD_MODEL: str = "firtoz/trellis"
    UPSCALE_MODEL: str = "nightmareai/real-esrgan"
    VIDEO_UPSCALE_MODEL: str = "lucataco/real-esrgan-video"
    PROVIDER_TIMEOUT_SECONDS: float = 600.0
    PROVIDER_POLL_INTERVAL: float = 2.0
    PROVIDER_MAX_RETRIES: int = 2
    PROVIDER_RETRY_DELAY: float = 2.0  # base delay, doubled per attempt
    SIMULATED_LATENCY_SECONDS: float = 1.0

    # Stitching: "simulated" or "ffmpeg"
    STITCH_BACKEND: str = "simulated"
    STITCH_TIMEOUT_SECONDS: float = 300.0
    FFMPEG_BINARY: str = "ffmpeg"

    # Progress reporting
    PROGRESS_TICK_INTERVAL: float = 0.5
    UPSCALE_STAGE_SECONDS: float = 3.0
    ENCODE_STAGE_SECONDS: float = 2.0
    DEFAULT_STEPS: int = 20

    # Pipeline
    PIPELINE_VERSION: str = "1.0.0"
    ARTIFACT_TTL_SECONDS: int = 604800  # 7 days
    EXPIRY_SWEEP_SECONDS: float = 3600.0  # 0 disables the expired-artifact sweep

    # Local storage fallback
    LOCAL_STORAGE_PATH: str = "./outputs"

    # Google Cloud Storage
    USE_GCS: bool = False
    GCS_BUCKET_OUTPUTS: str = "genpipe-outputs"
    GCP_PROJECT_ID: str = ""

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator('REPLICATE_API_TOKEN', mode='before')
    @classmethod
    def strip_api_keys(cls, v):
        """Strip whitespace and newlines from API keys loaded from secrets."""
        if isinstance(v, str):
            return v.strip()
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
