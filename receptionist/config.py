from __future__ import annotations

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_KEY: str
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_SCOPES: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_ADMIN_API_VERSION: str = "2024-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0
    SHOPIFY_SESSION_TOKEN_LEEWAY_SECONDS: int = 10
    SHOPIFY_ADMIN_QUERY_MAX_AGE_SECONDS: int = 900

    VAPI_PRIVATE_KEY: str
    VAPI_BASE_URL: AnyHttpUrl = "https://api.vapi.ai"
    VAPI_REQUEST_TIMEOUT_SECONDS: float = 20.0
    VAPI_SIGNATURE_HEADER: str = "X-Vapi-Signature"
    VAPI_PHONE_PROVIDER: str = "twilio"
    VAPI_AUTO_CREATE_ASSISTANT: bool = True
    VAPI_DEFAULT_MODEL: str = "gpt-4o"
    VAPI_DEFAULT_TEMPERATURE: float = 0.7
    VAPI_DEFAULT_VOICE_PROVIDER: str = "openai"
    VAPI_DEFAULT_VOICE_ID: str = "echo"
    VAPI_DEFAULT_FIRST_MESSAGE: str = "Hi! Thanks for calling. How can I help you today?"
    VAPI_DEFAULT_END_CALL_MESSAGE: str = "Thanks for calling! Have a great day!"

    DATABASE_URL: str = "sqlite:///./receptionist.db"
    DB_CONNECT_RETRY_ATTEMPTS: int = 3
    DB_CONNECT_RETRY_BACKOFF_SECONDS: float = 2.0

    API_RATE_LIMIT: str = "100 per 15 minutes"
    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("DB_CONNECT_RETRY_ATTEMPTS")
    @classmethod
    def validate_retry_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("DB_CONNECT_RETRY_ATTEMPTS must be >= 1")
        return value

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    @property
    def vapi_base_url(self) -> str:
        return str(self.VAPI_BASE_URL).rstrip("/")

    @property
    def admin_scopes_csv(self) -> str:
        return self.SHOPIFY_APP_SCOPES

    @property
    def vapi_server_url(self) -> str:
        return f"{self.app_base_url}/api/vapi/functions"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
