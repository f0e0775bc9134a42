import os
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    db_name = os.environ.get("DB_NAME", os.environ.get("DB", "locateme"))
    return (
        f"postgresql+psycopg://{os.environ.get('DB_USER', 'postgres')}:{os.environ.get('DB_PASS', 'postgres')}"
        f"@{os.environ.get('DB_HOST', 'localhost')}:{os.environ.get('DB_PORT', '5432')}/{db_name}"
    )


class Settings(BaseSettings):
    app_name: str = "LocateMe API"
    debug: bool = False

    database_url: str = _default_database_url()
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 2.0

    # Sidebar cache freshness policy
    cache_key_prefix: str = "locateme:sidebar"
    cache_staleness_threshold_seconds: int = 300  # staleness ceiling (is_stale verdict)
    cache_max_age_seconds: int = 120  # operational target, triggers refresh on read
    cache_refresh_interval_seconds: int = 30
    cache_health_check_interval_seconds: int = 120
    cache_stats_interval_seconds: int = 300
    cache_initial_refresh_delay_seconds: float = 5.0
    enable_cache_auto_refresh: bool = True
    use_device_cache: bool = True

    # Position store connection pool
    db_pool_min_size: int = 5
    db_pool_max_size: int = 20
    db_pool_timeout_seconds: int = 5
    db_statement_timeout_ms: int = 10_000
    db_query_timeout_ms: int = 8_000

    # Payload bounds
    max_staff_rows: int = 1000
    max_batch_rows: int = 100
    route_default_hours: int = 24
    route_max_hours: int = 720
    route_default_limit: int = 100
    route_max_limit: int = 1000

    jwt_secret: str = "change_this_secret"
    jwt_alg: str = "HS256"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("debug", mode="before")
    @classmethod
    def _coerce_debug(cls, value):
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in {"1", "true", "yes", "on"}:
                return True
            if normalized in {"0", "false", "no", "off"}:
                return False
            # Treat common logging level strings as non-debug defaults instead of erroring.
            if normalized in {"warn", "warning", "info", "error", "critical"}:
                return False
        return value

    @field_validator("db_pool_max_size")
    @classmethod
    def _pool_bounds(cls, value, info):
        minimum = info.data.get("db_pool_min_size", 0)
        if value < minimum:
            raise ValueError("db_pool_max_size must be >= db_pool_min_size")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
