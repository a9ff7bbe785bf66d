from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """FastAPI settings and shared environment variables"""

    api_prefix: str = "/api"
    app_name: str = "Agent CRM Backend"
    log_level: str = "INFO"

    # Supabase (CRM tables)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    contacts_table: str = "contacts"
    deals_table: str = "deals"
    interactions_table: str = "interactions"
    store_timeout_seconds: float = Field(default=10.0, gt=0)

    # Duplicate detection weights / thresholds
    dedup_contact_email_weight: float = 0.5
    dedup_contact_phone_weight: float = 0.3
    dedup_contact_full_name_weight: float = 0.2
    dedup_contact_partial_name_weight: float = 0.1
    dedup_deal_name_weight: float = 0.6
    dedup_deal_open_overlap_weight: float = 0.3
    dedup_merge_threshold: float = 0.7
    dedup_possible_threshold: float = 0.4
    dedup_skip_threshold: float = 1.0

    # Insightly
    insightly_api_key: Optional[str] = None
    insightly_pod: str = "na1"
    insightly_api_version: str = "v3.1"
    insightly_timeout_seconds: float = 30.0

    model_config = SettingsConfigDict(
        env_prefix="",  # no prefix - SUPABASE_*, INSIGHTLY_*, DEDUP_* used directly
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
    )

    @field_validator("insightly_pod", mode="before")
    @classmethod
    def normalize_pod(cls, value):
        if isinstance(value, str):
            return value.strip().lower() or "na1"
        if value is None:
            return "na1"
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
