"""Mock Merchant Configuration"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment"""

    # Application
    app_name: str = "Mock Merchant"
    debug: bool = True
    host: str = "0.0.0.0"
    port: int = 8001

    # Bearer tokens for the cart sync endpoint
    jwt_secret: str = "mock-merchant-dev-secret-change-me-32b"
    jwt_algorithm: str = "HS256"
    jwt_issuer: str = "mock-merchant"
    access_token_expire_minutes: int = 60

    class Config:
        env_prefix = "MERCHANT_"
        env_file = "../config/.env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
