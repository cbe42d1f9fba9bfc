from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Cross-Sell API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./crosssell.db"
    create_schema_on_startup: bool = True
    redis_url: str = "redis://redis:6379/0"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    import_fallback_user_id: int = 1
    import_fallback_opportunity_id: int = 1
    opportunity_default_due_days: int = 30
    task_default_due_days: int = 7
    task_escalation_hours: int = 24
    notification_retention_days: int = 30
    notification_page_size: int = 20
    overdue_scan_interval_seconds: int = 3600

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
