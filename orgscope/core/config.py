from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Orgscope"
    app_env: str = "local"
    app_debug: bool = True
    database_url: str = "sqlite+pysqlite:///./orgscope.db"
    redis_url: str = "redis://redis:6379/0"
    cache_backend: str = "memory"
    cache_ttl_short_seconds: int = 300
    cache_ttl_medium_seconds: int = 900
    cache_ttl_long_seconds: int = 1800
    cache_ttl_long_stores_seconds: int = 3600
    cache_popularity_medium_threshold: int = 5
    cache_popularity_long_threshold: int = 20
    cache_popularity_ttl_seconds: int = 86400
    context_ttl_seconds: int = 3600
    metrics_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
