"""
Settings for the shuttle identity service.

All values come from the environment with the `SHUTTLE_` prefix, e.g.
`SHUTTLE_BACKEND=supabase`, `SHUTTLE_SUPABASE_URL=https://...`.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PROD_LIKE_ENVIRONMENTS = frozenset({"prod", "production", "stage", "staging"})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="SHUTTLE_", extra="ignore")

    environment: str = "dev"
    backend: Literal["memory", "supabase"] = "memory"

    # Supabase: the anon key backs per-browser auth clients, the service role
    # key backs the server-side document store.
    supabase_url: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_timeout: int = 30

    # Unset keeps local stores in memory (lost on restart).
    local_store_dir: Optional[Path] = None

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    cookie_name: str = "shuttle_client"
    cookie_max_age: int = 60 * 60 * 24 * 30
    # Live resolvers kept in memory; the least recently used is closed first.
    max_resolvers: int = Field(default=10000, ge=1)
    log_level: str = "INFO"

    @field_validator("environment")
    @classmethod
    def _normalize_env(cls, value: str) -> str:
        return (value or "dev").strip().lower()

    @property
    def is_prod_like(self) -> bool:
        return self.environment in PROD_LIKE_ENVIRONMENTS


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
