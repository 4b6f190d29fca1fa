from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    
    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./bookings.db",
        alias="DATABASE_URL"
    )
    
    # Security
    secret_key: str = Field(default="dev-secret-key-at-least-32-characters-long-for-development", alias="SECRET_KEY")
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    
    # Bearer key used by cron/timer jobs that trigger retry batches
    internal_api_key: str = Field(default="", alias="INTERNAL_API_KEY")
    
    # CORS - admin dashboard URLs (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS"
    )
    
    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    
    # ==============================================
    # Webhook retry policy
    # ==============================================
    webhook_max_attempts: int = Field(default=5, alias="WEBHOOK_MAX_ATTEMPTS")
    webhook_retry_base_seconds: int = Field(default=60, alias="WEBHOOK_RETRY_BASE_SECONDS")
    webhook_retry_max_delay_seconds: int = Field(default=3600, alias="WEBHOOK_RETRY_MAX_DELAY_SECONDS")
    # Records left in "processing" longer than this are returned to "pending"
    webhook_processing_timeout_seconds: int = Field(default=600, alias="WEBHOOK_PROCESSING_TIMEOUT_SECONDS")
    retry_batch_limit: int = Field(default=10, alias="RETRY_BATCH_LIMIT")
    
    # Saga intents younger than this are left alone by the reconciliation sweep
    reconcile_grace_seconds: int = Field(default=120, alias="RECONCILE_GRACE_SECONDS")
    
    # Worker capture batch: authorized payments of signed bookings starting
    # within this many days (and of active bookings) are captured
    capture_lead_days: int = Field(default=1, alias="CAPTURE_LEAD_DAYS")
    capture_batch_limit: int = Field(default=20, alias="CAPTURE_BATCH_LIMIT")
    
    # ==============================================
    # External adapters (server-side only)
    # ==============================================
    adapter_timeout_seconds: int = Field(default=20, alias="ADAPTER_TIMEOUT_SECONDS")
    
    # PayPal
    paypal_mode: str = Field(default="sandbox", alias="PAYPAL_MODE")
    paypal_client_id: str = Field(default="", alias="PAYPAL_CLIENT_ID")
    paypal_client_secret: str = Field(default="", alias="PAYPAL_CLIENT_SECRET")
    paypal_webhook_id: str = Field(default="", alias="PAYPAL_WEBHOOK_ID")
    
    # DocuSeal
    docuseal_api_url: str = Field(default="https://api.docuseal.com", alias="DOCUSEAL_API_URL")
    docuseal_api_key: str = Field(default="", alias="DOCUSEAL_API_KEY")
    docuseal_template_id: str = Field(default="", alias="DOCUSEAL_TEMPLATE_ID")
    docuseal_webhook_secret: str = Field(default="", alias="DOCUSEAL_WEBHOOK_SECRET")
    
    # Resend (transactional email)
    resend_api_url: str = Field(default="https://api.resend.com", alias="RESEND_API_URL")
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    email_from: str = Field(default="Bookings <bookings@example.com>", alias="EMAIL_FROM")
    email_rate_limit_per_minute: int = Field(default=30, alias="EMAIL_RATE_LIMIT_PER_MINUTE")
    
    # slowapi storage; use redis:// in multi-instance deployments
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    
    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        """Validate SECRET_KEY is strong enough"""
        if not v:
            raise ValueError("SECRET_KEY is required and cannot be empty")
        if len(v) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters long")
        return v
    
    @field_validator('webhook_max_attempts')
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1 or v > 10:
            raise ValueError("WEBHOOK_MAX_ATTEMPTS must be between 1 and 10")
        return v
    
    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
    
    @property
    def paypal_api_base(self) -> str:
        if self.paypal_mode.lower() == "sandbox":
            return "https://api-m.sandbox.paypal.com"
        return "https://api-m.paypal.com"
    
    @property
    def sqlalchemy_database_url(self) -> str:
        """Hosted Postgres hands out postgres:// URLs, SQLAlchemy needs postgresql://"""
        if self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql://", 1)
        return self.database_url
    
    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        
        return origins or ["http://localhost:3000"]
    
    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
