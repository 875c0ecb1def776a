from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # durable (L2) cache store
    DATABASE_URL: str = "sqlite:///./letterfacts.db"

    # llm
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    LLM_MODEL: str = "openai/gpt-4.1-mini"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_TEMPERATURE: float = 0.2

    # news search (Google Custom Search)
    GOOGLE_SEARCH_API_KEY: str | None = None
    GOOGLE_SEARCH_ENGINE_ID: str | None = None
    GOOGLE_SEARCH_NUM_RESULTS: int = 8

    # url analysis cache
    CACHE_L1_TTL_SECONDS: int = 24 * 60 * 60
    CACHE_L2_TTL_SECONDS: int = 7 * 24 * 60 * 60
    CACHE_SWEEP_INTERVAL_SECONDS: int = 10 * 60
    CACHE_L1_MAX_ENTRIES: int = 1000

    # page fetching
    FETCH_TIMEOUT_SECONDS: float = 10.0
    FETCH_MAX_BYTES: int = 5 * 1024 * 1024
    REQUEST_BUDGET_SECONDS: float = 60.0

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
