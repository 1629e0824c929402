from pydantic_settings import BaseSettings, NoDecode
from pydantic import field_validator
from typing import Annotated, Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Firebase (authentication + analytics sink)
    firebase_project_id: str
    firebase_credentials_path: str

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    currency: str = "mxn"

    # Billing rules
    plan_change_cooldown_days: int = 30
    grace_period_days: int = 7
    max_payment_attempts: int = 4
    featured_duration_days: int = 30
    trial_duration_days: int = 14
    trial_plan_id: str = "agente_trial"
    idempotency_window_seconds: int = 3600
    subscription_view_ttl_minutes: int = 1440

    # Admin
    admin_emails: Annotated[List[str], NoDecode] = []

    # API
    api_v1_str: str = "/api/v1"

    # Environment
    environment: str = "development"
    debug: bool = True

    # CORS
    cors_origins: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    @field_validator('cors_origins', 'admin_emails', mode='before')
    @classmethod
    def parse_comma_separated(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse list settings from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()
