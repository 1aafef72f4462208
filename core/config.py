"""
Configuration management using Pydantic Settings
Handles environment variables and validation
"""
import os
from functools import lru_cache
from typing import Dict, Optional

from pydantic import ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    testing: bool = Field(default=False)

    # Application
    app_name: str = "BackerStore"
    app_version: str = "0.1.0"
    base_url: str = Field(default="http://localhost:3000")

    # Database
    database_url: str = Field(default="sqlite:///./backerstore.db")
    database_pool_size: int = Field(default=10)
    database_echo: bool = Field(default=False)

    # External APIs
    use_stubs: bool = Field(default=True, description="Use stub server for all external APIs")
    stub_base_url: str = Field(default="http://localhost:5010")

    # Stripe
    stripe_secret_key: Optional[SecretStr] = Field(default=None)
    stripe_publishable_key: Optional[str] = Field(default=None)
    stripe_webhook_secret: Optional[SecretStr] = Field(default=None)
    stripe_api_version: str = Field(default="2023-10-16")
    currency: str = Field(default="usd")
    gateway_timeout_seconds: float = Field(default=20.0, gt=0)

    # Email
    sendgrid_api_key: Optional[SecretStr] = Field(default=None)
    from_email: str = Field(default="orders@backerstore.local")
    from_name: str = Field(default="BackerStore")
    admin_email: Optional[str] = Field(default=None, description="Recipient of sweep summaries and dispute alerts")
    notification_timeout_seconds: float = Field(default=10.0, gt=0)

    # Rules
    rule_cache_ttl_seconds: int = Field(default=60, ge=0, description="Staleness bound of the process rule cache")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    # Monitoring
    prometheus_enabled: bool = Field(default=True)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v, info):
        if info.data.get("testing") and not v.startswith("sqlite"):
            # Force SQLite for testing
            return "sqlite:///./test.db"
        return v

    @field_validator("use_stubs")
    @classmethod
    def validate_use_stubs(cls, v, info):
        if os.getenv("CI") == "true":
            return True
        if info.data.get("environment") == "test":
            return True
        return v

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v):
        return v.lower()

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Validate production-specific settings after all fields are set"""
        if self.environment == "production" and self.use_stubs:
            raise ValueError("Production environment cannot run with USE_STUBS=true")

        if not self.use_stubs:
            if not self.stripe_secret_key:
                raise ValueError("Stripe secret key required when not using stubs")
            if not self.stripe_webhook_secret:
                raise ValueError("Stripe webhook secret required when not using stubs")

        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def api_base_urls(self) -> Dict[str, str]:
        """Get base URLs for external APIs"""
        if self.use_stubs:
            return {"stripe": self.stub_base_url, "sendgrid": self.stub_base_url}
        return {"stripe": "https://api.stripe.com", "sendgrid": "https://api.sendgrid.com"}

    def get_api_key(self, service: str) -> str:
        """Get API key for a service"""
        if self.use_stubs:
            return f"stub-{service}-key"

        keys = {
            "stripe": self.stripe_secret_key.get_secret_value() if self.stripe_secret_key else None,
            "sendgrid": self.sendgrid_api_key.get_secret_value() if self.sendgrid_api_key else None,
        }

        key = keys.get(service)
        if not key:
            raise ValueError(f"API key not configured for {service}")
        return key

    def get_webhook_secret(self) -> str:
        if self.use_stubs and not self.stripe_webhook_secret:
            return "whsec_stub"
        if not self.stripe_webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        return self.stripe_webhook_secret.get_secret_value()

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        sensitive_fields = [
            "stripe_secret_key",
            "stripe_webhook_secret",
            "sendgrid_api_key",
        ]

        for field in sensitive_fields:
            if field in data and data[field]:
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
