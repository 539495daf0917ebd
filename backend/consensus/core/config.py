from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    env: str = Field(default="dev", validation_alias="ENV")
    database_url: str = Field(default="sqlite:///./dev.db", validation_alias="DATABASE_URL")
    cors_origins_raw: Optional[str] = Field(
        default=None,
        validation_alias="CORS_ORIGINS",
    )
    admin_key: str = Field(default="changeme-admin", validation_alias="ADMIN_KEY")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Engine tuning
    default_cell_size: int = Field(default=5, ge=2, validation_alias="DEFAULT_CELL_SIZE")
    vote_budget: int = Field(default=10, ge=1, validation_alias="VOTE_BUDGET")
    grace_period_seconds: float = Field(default=10.0, ge=0, validation_alias="GRACE_PERIOD_SECONDS")
    max_transaction_retries: int = Field(default=5, ge=1, validation_alias="MAX_TRANSACTION_RETRIES")
    progress_cache_ttl_seconds: float = Field(default=5.0, ge=0, validation_alias="PROGRESS_CACHE_TTL_SECONDS")
    progress_cache_max_entries: int = Field(default=1024, ge=1, validation_alias="PROGRESS_CACHE_MAX_ENTRIES")

    # Identity resolvers
    embed_token_secret: str = Field(default="changeme-embed", validation_alias="EMBED_TOKEN_SECRET")
    embed_token_ttl_minutes: int = Field(default=15, ge=1, validation_alias="EMBED_TOKEN_TTL_MINUTES")
    plugin_hmac_secret: str = Field(default="changeme-plugin", validation_alias="PLUGIN_HMAC_SECRET")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Optional[str]) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "INFO"
        return str(v).strip().upper()

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @staticmethod
    def parse_cors_origins(raw: Optional[str]) -> List[str]:
        if not raw:
            # Default to local frontend for dev
            return ["http://localhost:5173"]
        return [origin.strip() for origin in raw.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    base = Settings()
    cors_list = Settings.parse_cors_origins(base.cors_origins_raw)
    base = base.model_copy(update={"cors_origins": cors_list})
    return base
