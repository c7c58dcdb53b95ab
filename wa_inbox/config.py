from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

from wa_inbox.gateway import GatewayConfig


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

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Shared secret the gateway sends back in X-Webhook-Secret
    WEBHOOK_SECRET: str = ""

    # Evolution API gateway
    GATEWAY_BASE_URL: str
    GATEWAY_API_KEY: str
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Public URL of this service, used to build the webhook callback
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            base_url=self.GATEWAY_BASE_URL,
            api_key=self.GATEWAY_API_KEY,
            timeout_seconds=self.GATEWAY_TIMEOUT_SECONDS,
        )

    @property
    def webhook_callback_url(self) -> str:
        return f"{self.PUBLIC_BASE_URL.rstrip('/')}/webhook"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
