from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache

class Settings(BaseSettings):
    # MongoDB Settings
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "resumable_chat"

    # JWT Settings
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # CORS Settings
    CORS_ORIGINS: str = "*"

    # Resumable stream settings
    STREAM_TRANSPORT: str = "memory"  # "memory", "redis" or "disabled"
    REDIS_URL: Optional[str] = None
    STREAM_RETENTION_SECONDS: float = 60.0  # How long a closed stream stays subscribable
    STREAM_MAX_LIFETIME_SECONDS: float = 300.0  # Upper bound for a stream that never closes
    RESUME_FRESHNESS_SECONDS: float = 15.0  # Max age of a persisted message replayed on resume
    GENERATION_TIMEOUT_SECONDS: float = 60.0

    # Generation settings
    USE_TOOLS: bool = False
    ENABLE_STREAMING: bool = True

    # Language model provider (OpenAI-compatible API)
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_API_KEY: Optional[str] = None
    LLM_CHAT_MODEL: str = "gpt-4o-mini"
    LLM_REASONING_MODEL: str = "o3-mini"
    LLM_MAX_STEPS: int = 5
    MAX_COMPLETION_TOKENS: int = 2048

    # Entitlements
    GUEST_MAX_MESSAGES_PER_DAY: int = 20
    REGULAR_MAX_MESSAGES_PER_DAY: int = 100

    @property
    def CORS_ORIGINS_LIST(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def RESUMABLE_STREAMS_ENABLED(self) -> bool:
        """Redis mode without a URL degrades to no resumability"""
        if self.STREAM_TRANSPORT == "redis":
            return bool(self.REDIS_URL)
        return self.STREAM_TRANSPORT != "disabled"

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings():
    return Settings()

settings = get_settings()
