from __future__ import annotations

from functools import cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from domain.quotation import BIGGEST_WINDOW, BUFFER_TTL, DIADATA_SOURCE

DEFAULT_CACHE_KEY_PREFIX = "dia_assetquotation_USD_"


class AppSettings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 5.0
    database_url: str = "sqlite:///asset_quotations.db"
    cache_key_prefix: str = DEFAULT_CACHE_KEY_PREFIX
    cache_ttl_seconds: int = int((BIGGEST_WINDOW + BUFFER_TTL).total_seconds())
    latest_lookback_hours: int = 24 * 7
    quotation_source: str = DIADATA_SOURCE
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="QUOTATIONS_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@cache
def config() -> AppSettings:
    return AppSettings()
