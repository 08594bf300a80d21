# config.py
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1/models/gemini-1.5-pro:generateContent"


class Settings(BaseSettings):
    """
    Settings loaded once from environment or .env and passed explicitly
    into the app, the proxy and the stores.
    """

    # --- Gemini
    gemini_api_key: Optional[str] = None
    gemini_api_url: str = GEMINI_API_URL
    request_timeout: float = 30.0
    upstream_retries: int = 1

    # --- Plant store (asyncpg or Supabase REST)
    database_url: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    lookup_timeout: float = 5.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    def secrets(self) -> list[str]:
        """Values that must never reach the logs."""
        return [s for s in (self.gemini_api_key, self.supabase_key) if s]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
