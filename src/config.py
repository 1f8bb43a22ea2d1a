from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # Environment
    environment: str = "development"  # "development" or "production"

    # Database
    database_url: str = "sqlite+aiosqlite:///./data/feedback.db"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False

    # CORS (comma-separated origins, empty means localhost only)
    cors_origins: str = ""

    # Admin / cron callers
    admin_api_key: str = ""
    cron_secret: str = ""

    # Mail (SendGrid)
    sendgrid_api_key: str = ""
    sendgrid_api_base: str = "https://api.sendgrid.com"
    mail_from_email: str = "noreply@studykey.com"
    mail_from_name: str = "Study Key"
    mail_send_timeout: int = 10  # seconds

    # Content fallbacks
    default_review_url: str = "https://www.amazon.com/review/create-review"
    default_product_url: str = "https://www.amazon.com"

    # Scheduler
    scheduler_enabled: bool = True
    pass_cron_hour: int = 9  # UTC
    max_emails_per_run: int = 10
    delay_between_emails_ms: int = 100
    pass_budget_ms: int = 8000
    catch_up_overdue: bool = False

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
