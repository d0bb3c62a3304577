from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Opportunity Automation API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./opportunity_automation.db"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    min_opportunity_amount: Decimal = Decimal("5000")
    protected_account_industry: str = "Banking"
    default_opportunity_type: str = "New Customer"
    follow_up_task_subject: str = "Call Primary Contact"
    follow_up_task_due_in_days: int = 3
    ceo_contact_title: str = "CEO"
    vp_sales_contact_title: str = "VP Sales"
    block_closed_opportunity_deletion: bool = False
    notification_backend: str = "outbox"
    metrics_enabled: bool = False
    otel_enabled: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
