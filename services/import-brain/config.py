"""Environment-based configuration for the import brain (extraction and import pipeline)."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Import brain settings, loaded from environment variables."""

    # Server
    PORT: int = 8092
    LOG_LEVEL: str = "INFO"

    # Inference service connection (empty = AI extraction disabled, local dev default)
    INFERENCE_BASE_URL: str = ""
    INFERENCE_API_KEY: str = ""
    INFERENCE_MODEL: str = "google/gemini-2.0-flash-exp:free"
    VISION_MODEL: str = "google/gemini-2.0-flash-exp:free"
    INFERENCE_TEMPERATURE: float = 0.1
    INFERENCE_MAX_TOKENS: int = 1500

    # Inference timeouts and retry
    INFERENCE_TIMEOUT_SECONDS: int = 60
    INFERENCE_CONNECT_TIMEOUT: int = 10
    RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_BACKOFF: float = 2.0
    RETRY_MAX_DELAY: float = 30.0
    RETRY_OVERALL_TIMEOUT: float = 180.0

    # Per-actor quota and response cache
    RATE_LIMIT_PER_MINUTE: int = 20
    CACHE_TTL_HOURS: int = 24
    CACHE_CLEANUP_INTERVAL_SECONDS: float = 3600.0
    MAX_REQUEST_CHARS: int = 20000

    # Task processing
    WORKER_POOL_SIZE: int = 4  # sized against the rate limit, not CPU count
    TASK_TIMEOUT_SECONDS: float = 300.0

    # Ingestion limits
    CSV_MAX_RECORD_BYTES: int = 1_000_000
    MAX_ATTACHMENT_BYTES: int = 10 * 1024 * 1024
    IMAGE_MAX_EDGE: int = 1600

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
