from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, read from the environment (or a local .env file)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    database_url: str = "postgresql://postgres:postgres@db:5432/driving_school"
    app_env: str = "development"

    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    flutterwave_base_url: str = "https://api.flutterwave.com/v3"
    flutterwave_secret_key: str = ""
    flutterwave_secret_hash: str = ""
    payment_provider_timeout: float = Field(default=15.0, gt=0)
    payment_reference_prefix: str = "MDS"

    app_url: str = "http://localhost:8000"
    frontend_url: str = ""
    cors_origin: str = "*"
    student_email_domain: str = "marvel-driving.com"

    rabbitmq_url: str = ""

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}

    @property
    def payment_callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/payments/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()
