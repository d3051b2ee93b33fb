from typing import Dict

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    # App
    APP_NAME: str = "KB Indexer"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    LOG_PATH: str = "logs/"
    API_PREFIX: str = "/api"

    # Job/Task store: "memory" for single-process runs and tests, "redis" for deployments
    JOB_STORE_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Celery
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # Content fetcher
    FETCHER_USER_AGENT: str = "Mozilla/5.0 (compatible; KBIndexerBot/0.1; +knowledge-base indexing)"
    FETCHER_REQUEST_TIMEOUT: float = 15.0
    FETCHER_MAX_CONTENT_CHARS: int = 50000
    FETCHER_BLOCK_PRIVATE_URLS: bool = True

    # Site discovery, used when a job is created with link following
    CRAWL_MAX_DEPTH: int = 2
    CRAWL_MAX_PAGES: int = 50
    CRAWL_SAME_DOMAIN_ONLY: bool = True
    CRAWL_DELAY_SECONDS: float = 0.1

    # Chunker (characters)
    CHUNK_MAX_SIZE: int = 800
    CHUNK_MIN_SIZE: int = 200
    CHUNK_OVERLAP: int = 100

    # Embeddings
    EMBEDDING_PROVIDER: str = "local"
    LOCAL_EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"
    OPENAI_API_KEY: str = ""
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSION: int = 384

    # Worker loop
    WORKER_POLL_INTERVAL_SECONDS: float = 3.0
    WORKER_BATCH_SIZE: int = 5
    MAX_RETRY_COUNT: int = 3
    RETRY_BACKOFF_SECONDS: float = 1.0
    RETRY_CLIENT_ERRORS: bool = True # When False, HTTP 4xx fetch errors fail the task without retrying
    RUN_EMBEDDED_WORKER: bool = False
    JOB_LEASE_TTL_MS: int = 600000

    # Watchdog for stuck jobs
    WATCHDOG_INTERVAL_SECONDS: int = 300
    WATCHDOG_THRESHOLD_SECONDS: int = 1800

    # Tenant tiers
    TIER_KNOWLEDGE_BASE_LIMITS_MB: Dict[str, float] = {
        "free": 5.0,
        "starter": 50.0,
        "pro": 500.0,
        "enterprise": 5000.0,
    }

    class Config:
        case_sensitive = True

# Instantiate settings
settings = Settings()
