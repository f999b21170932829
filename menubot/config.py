from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # WhatsApp Cloud API - messages endpoint and bearer token are required
    WHATSAPP_URL: str
    WHATSAPP_TOKEN: str

    # Message templates endpoint, fetched once at startup
    WHATSAPP_BUSINESS_URL: str = ""

    # App secret for X-Hub-Signature-256 verification (disabled when empty)
    WHATSAPP_APP_SECRET: str = ""

    # Locale sent with every template message
    TEMPLATE_LANGUAGE: str = "es_AR"

    HTTP_TIMEOUT_SECONDS: float = 10.0

    PORT: int = 9876


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
