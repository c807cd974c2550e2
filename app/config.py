from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_LANGUAGE_NAMES: Dict[str, str] = {
    "es": "Spanish",
    "fr": "French",
    "so": "Somali",
    "hmn": "Hmong",
    "vi": "Vietnamese",
    "ar": "Arabic",
    "zh": "Chinese",
    "ko": "Korean",
}


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

    # Logging Configuration - required
    LOG_LEVEL: str

    # Carrier (Twilio) - required. The auth token also signs inbound webhooks.
    TWILIO_ACCOUNT_SID: str
    TWILIO_AUTH_TOKEN: str
    TWILIO_PHONE_NUMBER: str
    CARRIER_TIMEOUT_SECONDS: float = 15.0

    # Public URL the carrier calls, when the service runs behind a proxy
    PUBLIC_BASE_URL: Optional[str] = None

    # Translation model - API key required
    OPENAI_API_KEY: str
    TRANSLATION_MODEL: str = "gpt-4o-mini"
    TRANSLATION_MAX_TOKENS: int = 1024
    TRANSLATION_TIMEOUT_SECONDS: float = 30.0

    # ISO-639-1 code -> language name used in translation prompts.
    # Override with a JSON object, e.g. LANGUAGE_NAMES='{"pt": "Portuguese"}'
    LANGUAGE_NAMES: Dict[str, str] = DEFAULT_LANGUAGE_NAMES

    # Outbound delivery retry policy
    SEND_MAX_ATTEMPTS: int = Field(3, ge=1)
    SEND_BACKOFF_BASE_SECONDS: float = Field(1.0, ge=0)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
