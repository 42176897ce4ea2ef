from typing import List, Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """
    # App
    APP_NAME: str = "Site Ingest"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    LOG_PATH: str = "logs/"
    API_PREFIX: str = "/api"

    # Auth: the identity gateway in front of this service sets the user id header
    AUTH_USER_HEADER: str = "X-User-Id"

    # Billing
    DEFAULT_PLAN_TIER: str = "scale"
    IMPORT_ALLOWED_PLANS: List[str] = ["scale"]

    # Crawler
    CRAWLER_USER_AGENT: str = "Mozilla/5.0 (compatible; SiteIngestBot/0.1)"
    CRAWL_ROBOTS_AGENT: str = "siteingestbot"
    CRAWL_MAX_PAGES: int = 25 # Hard ceiling, independent of caller-supplied limits
    CRAWL_MAX_DEPTH: int = 3
    CRAWL_MAX_PAGE_SIZE: int = 1024 * 1024 # 1MB
    CRAWL_FETCH_TIMEOUT: float = 15.0
    CRAWL_OVERALL_TIMEOUT: float = 240.0
    CRAWL_THROTTLE_SECONDS: float = 0.5
    CRAWL_MAX_REDIRECTS: int = 5
    CRAWL_MIN_CONTENT_WORDS: int = 10

    # Quotas
    RAG_DOCUMENT_LIMIT: int = 50 # Max documents per user
    RAG_DAILY_UPLOAD_LIMIT: int = 10 # Max documents created per UTC day
    IMPORT_RATE_LIMIT: int = 3 # Max crawl jobs initiated per window
    IMPORT_RATE_WINDOW_SECONDS: int = 3600
    IMPORT_MAX_CONCURRENT_PER_USER: int = 1
    INGEST_STALE_AFTER_SECONDS: int = 300 # A 'processing' document older than this is abandoned

    # Chunking (sizes in estimated tokens)
    RAG_CHUNK_SIZE: int = 500
    RAG_CHUNK_OVERLAP: int = 75

    # Embeddings
    EMBEDDING_PROVIDER: str = "openai"
    EMBEDDING_BATCH_SIZE: int = 100
    EMBEDDING_MAX_CONCURRENCY: int = 1

    # OpenAI-compatible endpoint (OpenRouter works through OPENAI_BASE_URL)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: Optional[str] = None
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"

    # Gemini
    GEMINI_API_KEY: str = ""
    GEMINI_EMBEDDING_MODEL: str = "models/embedding-001"

    # Local SentenceTransformer
    LOCAL_EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"

    # Storage
    DOCUMENT_STORE_BACKEND: str = "memory" # "memory" or "sql"
    DATABASE_URL: str = "sqlite:///./site_ingest.db"

    # Rate limiting backend
    RATE_LIMIT_BACKEND: str = "memory" # "memory" or "redis"
    REDIS_URL: str = "redis://localhost:6379/0"

    class Config:
        case_sensitive = True

# Instantiate settings
settings = Settings()
