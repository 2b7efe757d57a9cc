"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway secrets live in one place,
e.g. ``STRIPE__SECRET_KEY`` or ``PAYPAL__CLIENT_ID``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 5.0
    read: float = 25.0
    write: float = 25.0
    # Upper bound for a single gateway operation
    total: float = 30.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    base_url: str = "https://api-m.sandbox.paypal.com"
    brand_name: Optional[str] = None


class CheckoutSettings(BaseModel):
    success_url: str = "http://localhost:3000/payments/success"
    cancel_url: str = "http://localhost:3000/payments/cancel"


class PaymentSettings(BaseSettings):
    default_currency: str = Field(default="BRL")
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    checkout: CheckoutSettings = Field(default_factory=CheckoutSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("default_currency")
    @classmethod
    def _upper_currency(cls, v: str) -> str:
        code = (v or "").upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError("default_currency must be ISO-4217 alpha-3")
        return code


payment_settings = PaymentSettings()
