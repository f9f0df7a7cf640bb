from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/campaign_engine"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Email (Brevo)
    BREVO_API_KEY: str | None = None
    EMAIL_FROM_ADDRESS: str = "campaigns@example.com"
    EMAIL_FROM_NAME: str = "Campaigns"

    # Twilio (SMS + WhatsApp)
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_PHONE_NUMBER: str | None = None
    TWILIO_WHATSAPP_NUMBER: str | None = None

    # Use in-memory senders instead of real providers
    USE_MOCK_SENDERS: bool = False

    # Campaign execution
    CAMPAIGN_DEFAULT_BATCH_SIZE: int = 50
    CAMPAIGN_DEFAULT_RATE_LIMIT_PER_MINUTE: int = 100
    CAMPAIGN_MAX_RETRIES: int = 3
    PROGRESS_WRITE_ATTEMPTS: int = 3

    # Scheduled campaign poller
    SCHEDULER_ENABLED: bool = True
    SCHEDULED_POLL_INTERVAL_SECONDS: int = 60

    # Tracking
    TRACKING_BASE_URL: str = "http://localhost:5001/api/v2/tracking"
    DELIVERY_STATUS_CACHE_TTL_SECONDS: int = 3600

    # Redis (shared delivery status cache); unset runs without the cache
    REDIS_URL: str | None = None

    # Subscriber reputation
    REPUTATION_SUPPRESSION_THRESHOLD: int = 40

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def sqlalchemy_echo(self) -> bool:
        """SQL echo only outside production; statements can carry recipient data."""
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
