import json
from functools import lru_cache
from typing import Annotated, List, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DEV_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
]

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # app URLs allowed to call the API cross-origin
    VITE_APP_URL: Optional[str] = None
    NEXT_PUBLIC_APP_URL: Optional[str] = None
    DEV_ORIGINS: Annotated[List[str], NoDecode] = DEFAULT_DEV_ORIGINS

    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    MONGODB_URI: Optional[str] = None
    MONGODB_DB: str = "contentgate"

    RATE_LIMIT_STORE: Literal["auto", "supabase", "mongo", "memory"] = "auto"
    RATE_LIMIT_COLLECTION: str = "api_rate_limits"
    RATE_LIMIT_STORE_TIMEOUT: float = 3.0
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    GROK_API_KEY: Optional[str] = None
    GROK_API_URL: str = "https://api.x.ai/v1/chat/completions"
    GROK_RATE_LIMIT: int = 30
    PERPLEXITY_API_KEY: Optional[str] = None
    PERPLEXITY_API_URL: str = "https://api.perplexity.ai/chat/completions"
    PERPLEXITY_RATE_LIMIT: int = 20
    UPSTREAM_TIMEOUT: float = 60.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("DEV_ORIGINS", mode="before")
    @classmethod
    def _split_origins(cls, value):
        # env gives "http://a,http://b"; a JSON list is accepted too
        if not isinstance(value, str):
            return value
        value = value.strip()
        if value.startswith("["):
            return json.loads(value)
        parts = [part.strip() for part in value.split(",") if part.strip()]
        return parts or list(DEFAULT_DEV_ORIGINS)

    @property
    def allowed_origins(self) -> List[str]:
        """App URLs plus local dev origins, empty entries dropped, order kept."""
        candidates = [self.VITE_APP_URL, self.NEXT_PUBLIC_APP_URL, *self.DEV_ORIGINS]
        origins: List[str] = []
        for origin in candidates:
            origin = (origin or "").strip()
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    @property
    def supabase_configured(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY)

    @property
    def mongo_configured(self) -> bool:
        return bool(self.MONGODB_URI)

@lru_cache
def get_settings() -> "Settings":
    return Settings()

settings = get_settings()
