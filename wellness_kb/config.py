"""Environment-driven settings for the knowledge base service.

One Settings object (pydantic-settings, read from .env or the process env) covers:
- API keys and model names
- Data stores (PostgreSQL, Redis) and the retrieval-config cache
- Ingestion parameters (chunking, per-chunk fan-out, upload limits)
- Knowledge-base retrieval defaults applied when no admin config is stored
- Optional observability (Langfuse)

Outside a container a missing OPENAI_API_KEY is logged as a warning at import time.
"""
import logging
import os

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Knowledge-base settings; field names double as environment variable names."""
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key")

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-ada-002"  # 1536 dims
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    EMBEDDING_MAX_RETRIES: int = 2
    MAX_OUTPUT_TOKENS: int = 500

    # Data stores
    DATABASE_URL: str = "postgresql+psycopg2://kb_user:kb_pass@db:5432/kb_db"
    INIT_DB_ON_STARTUP: bool = True
    REDIS_URL: str = "redis://redis:6379/0"
    CONFIG_CACHE_ENABLED: bool = True
    CACHE_TTL_SECONDS: int = 60

    # Ingestion
    CHUNK_SIZE: int = 1500
    CHUNK_OVERLAP: int = 150
    MIN_CHUNK_LENGTH: int = 10
    INGEST_MAX_WORKERS: int = 4
    EMBED_BATCH_SIZE: int = 16
    MAX_UPLOAD_MB: int = 20

    # Retrieval defaults (used when the admin has not stored a config)
    KB_CONFIG_SETTING_KEY: str = "kb_retrieval_config"
    KB_SIMILARITY_THRESHOLD: float = 0.78  # cosine, 0-1
    KB_MAX_CHUNKS: int = 5
    KB_USE_TOP_CHUNKS: int = 3
    KB_DEBUG_MODE: bool = False

    # Usage analytics (admin toggle stored in system_settings, this is the fallback)
    KB_ANALYTICS_SETTING_KEY: str = "kb_analytics_enabled"
    KB_ANALYTICS_ENABLED: bool = False

    # Conversation collaborator
    BASE_SYSTEM_PROMPT: str = (
        "You are a helpful AI assistant. Your goal is to support users, provide helpful information, "
        "and guide them towards well-being resources. Do not offer medical advice."
    )

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    # Derived
    @property
    def EMBEDDING_DIM(self) -> int:
        """Vector width of OPENAI_EMBEDDING_MODEL; sizes the pgvector column."""
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-large" in model:
            return 3072
        if "text-embedding-3-small" in model or "ada-002" in model:
            return 1536
        return 1536

    @property
    def MAX_UPLOAD_BYTES(self) -> int:
        return self.MAX_UPLOAD_MB * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()

if os.environ.get("RUNNING_IN_DOCKER", "0") == "0" and not settings.OPENAI_API_KEY:
    logger.warning("OPENAI_API_KEY not set. Set it in .env before running ingestion or retrieval.")
