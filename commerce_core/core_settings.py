from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional

class Settings(BaseSettings):
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "eci"
    POSTGRES_USER: str = "eci"
    POSTGRES_PASSWORD: str = "eci"
    # Full URL wins over the POSTGRES_* parts (sqlite in tests)
    DATABASE_URL: Optional[str] = None

    SERVICE_NAME: str = "commerce-core"
    SERVICE_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    RUN_MIGRATIONS: bool = True

    PAYMENT_PROVIDER: str = "mock"
    PAYMENT_WEBHOOK_SECRET: str = "whsec_change-me"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_MAX_ATTEMPTS: int = 3

    CART_TTL_DAYS: int = 30
    DEFAULT_CURRENCY: str = "USD"
    ORDER_NUMBER_PREFIX: str = "ORD"
    ORDER_NUMBER_ATTEMPTS: int = 3

    PRODUCTS_SERVICE_URL: Optional[str] = None
    CATALOG_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"

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
