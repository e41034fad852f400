from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "checkout"
    POSTGRES_USER: str = "eci"
    POSTGRES_PASSWORD: str = "eci"
    # Full SQLAlchemy URL; overrides the POSTGRES_* parts when set
    DATABASE_URL: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"

    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_CALLBACK_URL: Optional[str] = None
    PAYSTACK_VERIFY_SIGNATURE: bool = False
    GATEWAY_TIMEOUT_SECONDS: float = 15.0
    CURRENCY: str = "NGN"

    PRODUCTS_SERVICE_URL: str = "http://products:8000"
    CART_SERVICE_URL: str = "http://cart:8000"
    ADDRESS_SERVICE_URL: str = "http://addresses:8000"
    HTTP_TIMEOUT_SECONDS: float = 5.0

    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_BASE_URL: str = "https://api.sendgrid.com"
    EMAIL_FROM: str = "orders@example.com"
    REDIS_URL: Optional[str] = None
    ADMIN_NOTIFICATION_CHANNEL: str = "admin-notifications"

    DELIVERY_ESTIMATE_DAYS: int = 7
    ONLINE_CANCELLATION_DAYS: int = 1
    DELIVERY_CANCELLATION_DAYS: int = 2
    VERIFY_MAX_RETRIES: int = 3
    VERIFY_INITIAL_DELAY_SECONDS: float = 2.0
    RECONCILE_INTERVAL_SECONDS: int = 1800
    RECONCILE_MIN_AGE_MINUTES: int = 30

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

@lru_cache
def get_settings() -> Settings:
    return Settings()
