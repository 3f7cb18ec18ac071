from typing import List, Union
from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "WA Bridge"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Database
    DATABASE_URL: str

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    OAUTH_STATE_EXPIRE_MINUTES: int = 15

    # CORS
    BACKEND_CORS_ORIGINS: List[Union[str, AnyHttpUrl]] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Messaging gateway (Evolution API)
    EVOLUTION_API_URL: str = ""
    EVOLUTION_API_KEY: str = ""
    EVOLUTION_INTEGRATION: str = "WHATSAPP-BAILEYS"
    GATEWAY_WEBHOOK_URL: str = ""  # registered on instance create when set
    GATEWAY_WEBHOOK_TOKEN: str = ""  # shared secret expected on inbound webhooks
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    # Retry policy for gateway and CRM calls
    GATEWAY_RETRY_ATTEMPTS: int = 3
    GATEWAY_RETRY_BASE_DELAY_SECONDS: float = 0.5
    GATEWAY_RETRY_MAX_DELAY_SECONDS: float = 2.0

    # GoHighLevel OAuth
    GHL_CLIENT_ID: str = ""
    GHL_CLIENT_SECRET: str = ""
    GHL_BASE_URL: str = "https://services.leadconnectorhq.com"
    GHL_AUTHORIZE_URL: str = "https://marketplace.gohighlevel.com/oauth/chooselocation"
    GHL_API_VERSION: str = "2021-07-28"
    GHL_REDIRECT_URI: str = "http://localhost:8000/api/v1/crm/oauth/callback"
    GHL_SCOPES: str = "locations.readonly oauth.readonly oauth.write"
    TOKEN_REFRESH_SKEW_SECONDS: int = 60

    # Gateway status poller
    POLLER_ENABLED: bool = True
    POLLER_INTERVAL_SECONDS: int = 30

    # Monitoring
    SLOW_REQUEST_THRESHOLD_MS: float = 1000.0  # Log requests slower than this (milliseconds)
    ENABLE_STRUCTURED_LOGGING: bool = True  # Use JSON structured logging
    ENABLE_PROMETHEUS_METRICS: bool = True

    @property
    def gateway_configured(self) -> bool:
        """Check if the messaging gateway credentials are present."""
        return bool(self.EVOLUTION_API_URL and self.EVOLUTION_API_KEY)

    @property
    def crm_oauth_configured(self) -> bool:
        """Check if the GoHighLevel OAuth client is configured."""
        return bool(self.GHL_CLIENT_ID and self.GHL_CLIENT_SECRET)


settings = Settings()
