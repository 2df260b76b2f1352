from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Ignore unrelated env keys so local/dev .env can include optional integrations.
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "Guide Metrics Backend"
    environment: str = "development"
    api_prefix: str = "/api/v1"
    cors_allow_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    supabase_url: str = Field(..., alias="SUPABASE_URL")
    supabase_service_role_key: Optional[str] = Field(
        default=None, alias="SUPABASE_SERVICE_ROLE_KEY"
    )
    supabase_anon_key: Optional[str] = Field(default=None, alias="SUPABASE_ANON_KEY")
    supabase_timeout_seconds: float = Field(default=30.0, alias="SUPABASE_TIMEOUT_SECONDS")

    metrics_timeout_seconds: float = Field(default=20.0, gt=0, alias="METRICS_TIMEOUT_SECONDS")
    metrics_peer_limit: int = Field(default=50, ge=1, alias="METRICS_PEER_LIMIT")
    # guide_performance_metrics is optional per deployment; resolved once here instead of checked per call.
    metrics_snapshot_store_enabled: bool = Field(
        default=False, alias="METRICS_SNAPSHOT_STORE_ENABLED"
    )
    metrics_super_scope_roles: str = Field(default="super_admin", alias="METRICS_SUPER_SCOPE_ROLES")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_cors_origins() -> list[str]:
    settings = get_settings()
    return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]


def get_super_scope_roles() -> frozenset[str]:
    settings = get_settings()
    return frozenset(
        role.strip() for role in settings.metrics_super_scope_roles.split(",") if role.strip()
    )
