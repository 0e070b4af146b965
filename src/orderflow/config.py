"""Configuration surface for orderflow services."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode


class IntakeSettings(BaseModel):
    """External order-intake (back-office) service. Disabled when url is empty."""
    url: str = ""
    login: str = ""
    password: str = ""
    shop_id: str = ""


class StripeSettings(BaseModel):
    api_key: str = ""
    webhook_secret: str = ""
    api_base: str = "https://api.stripe.com/v1"
    # max age of a signed webhook delivery
    tolerance_seconds: int = 300


class PayPalSettings(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    webhook_id: str = ""
    api_base: str = "https://api-m.sandbox.paypal.com"


class OrderflowSettings(BaseSettings):
    """Main orderflow configuration."""

    # Environment
    environment: Literal["dev", "sandbox", "prod"] = "dev"

    # Public URL used to build provider return URLs
    public_base_url: str = "http://localhost:8000"

    allowed_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: [
        "http://localhost:3000",
    ])

    # Signs unverified-order tokens and verifies API bearer tokens
    jwt_secret: str = ""
    order_token_ttl_hours: int = 24

    # JSON price policy; built-in shop defaults when empty
    price_policy_file: str = ""

    intake: IntakeSettings = Field(default_factory=IntakeSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)

    # Subscription sweep
    subscription_tolerance_days: int = 1
    check_subscriptions_hour: int = 3
    enable_scheduler: bool = True

    # Cart orders untouched for this long are removed
    stale_cart_days: int = 30

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    class Config:
        env_prefix = "ORDERFLOW_"
        env_nested_delimiter = "__"
        env_file = ".env"
        extra = "ignore"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        """Parse comma-separated origins from env var."""
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str, info: ValidationInfo) -> str:
        env = info.data.get("environment", "dev")
        if env != "dev" and (not v or len(v) < 32):
            raise ValueError(
                "JWT secret must be at least 32 characters outside dev. "
                "Generate with: openssl rand -base64 32"
            )
        return v or "dev-only-jwt-secret-not-for-production"

    @property
    def is_production(self) -> bool:
        return self.environment == "prod"


@lru_cache
def load_settings(env_file: str | None = None) -> OrderflowSettings:
    """Load OrderflowSettings once per process to keep services consistent."""
    env_path = Path(env_file) if env_file else None
    return OrderflowSettings(_env_file=env_path)
