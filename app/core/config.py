import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator, model_validator

load_dotenv()

MB = 1024 * 1024


class Settings(BaseModel):
    """Service settings loaded from environment: chunk size, strategy thresholds, upload/job timeouts, rate limit and log level.
    Why available: Single source of configuration so the store, registry, strategy policy and API share the same limits."""
    chunk_size_bytes: int = int(os.getenv("CHUNK_SIZE_BYTES", str(1 * MB)))
    sync_max_bytes: int = int(os.getenv("SYNC_MAX_BYTES", str(5 * MB)))
    background_max_bytes: int = int(os.getenv("BACKGROUND_MAX_BYTES", str(50 * MB)))
    upload_timeout_seconds: float = float(os.getenv("UPLOAD_TIMEOUT_SECONDS", "3600"))  # 1 hour
    job_eviction_delay_seconds: float = float(os.getenv("JOB_EVICTION_DELAY_SECONDS", "60"))
    job_retention_seconds: float = float(os.getenv("JOB_RETENTION_SECONDS", "3600"))
    job_max_processing_seconds: float = float(os.getenv("JOB_MAX_PROCESSING_SECONDS", "900"))  # host ceiling for background work
    sweep_interval_seconds: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", "30"))
    receive_phase_weight: float = float(os.getenv("RECEIVE_PHASE_WEIGHT", "50"))
    max_chunk_request_kb: int = int(os.getenv("MAX_CHUNK_REQUEST_KB", "6144"))
    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "600"))
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    api_base: str = os.getenv("API_BASE", "http://localhost:8000")

    @field_validator(
        "chunk_size_bytes",
        "upload_timeout_seconds",
        "job_max_processing_seconds",
        "sweep_interval_seconds",
        "max_chunk_request_kb",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Sizes, timeouts and limits must be positive. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("receive_phase_weight")
    @classmethod
    def must_be_percentage(cls, v):
        if not 0 <= v <= 100:
            raise ValueError("must be within [0, 100]")
        return v

    @model_validator(mode="after")
    def thresholds_ordered(self):
        if self.sync_max_bytes < 0 or self.sync_max_bytes > self.background_max_bytes:
            raise ValueError("need 0 <= SYNC_MAX_BYTES <= BACKGROUND_MAX_BYTES")
        return self


settings = Settings()
