# /telepharma/config/settings.py

import sys
import re
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/telepharma"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_tls: bool = False

    # Redis (order history cache, inbound de-duplication)
    redis_url: str = "redis://localhost:6379"

    # WhatsApp Cloud API
    whatsapp_access_token: str = ""
    whatsapp_phone_id: str = ""
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_api_base_url: str = "https://graph.facebook.com/v18.0"

    # Deployment
    environment: str = Field(default="production")
    api_version: str = "v1"
    service_name: str = "Telepharma WhatsApp Assistant"

    # Conversation policy
    back_token: str = "00"
    abort_token: str = "0"
    optional_sentinel: str = "N/A"
    session_timeout_minutes: int = 30
    stale_session_minutes: int = 60
    sweep_interval_minutes: int = 60
    max_transition_depth: int = 10
    max_quick_replies: int = 3
    max_quick_reply_length: int = 20
    min_birth_year: int = 1900

    # Order history cache
    recent_orders_limit: int = 5
    recent_orders_ttl_seconds: int = 300

    # Observability
    alerting_webhook_url: str | None = None

    # ---------------- Validators ---------------- #

    @field_validator("back_token", "abort_token")
    @classmethod
    def reserved_token_must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Reserved navigation tokens cannot be blank")
        return v.strip()

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v: str) -> str:
        if v and not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @model_validator(mode="after")
    def check_conversation_policy(self):
        if self.back_token == self.abort_token:
            raise ValueError("BACK_TOKEN and ABORT_TOKEN must differ")
        if self.session_timeout_minutes > self.stale_session_minutes:
            raise ValueError("SESSION_TIMEOUT_MINUTES cannot exceed STALE_SESSION_MINUTES")
        return self


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production":
            for var in ["whatsapp_access_token", "whatsapp_phone_id", "whatsapp_verify_token", "whatsapp_app_secret"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
