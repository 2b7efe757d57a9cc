"""
Factory for the gateway registry.

Adapters are built once at application startup and shared by reference;
providers without credentials are skipped.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import GatewayRegistry
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings

from .paypal_client import PayPalClient
from .stripe_client import StripeClient


logger = get_logger(__name__)

CARD_GATEWAY_ALIAS = "card-gateway"
WALLET_GATEWAY_ALIAS = "wallet-gateway"


def build_gateway_registry(settings: Optional[PaymentSettings] = None) -> GatewayRegistry:
    settings = settings or payment_settings
    timeouts = settings.timeouts.model_dump()
    retry = {"max": settings.retry.max, "base": settings.retry.base_backoff}
    registry = GatewayRegistry()

    if settings.stripe.secret_key:
        registry.register(
            StripeClient(
                secret_key=settings.stripe.secret_key,
                webhook_secret=settings.stripe.webhook_secret,
                tolerance_seconds=settings.webhook.tolerance_seconds,
                timeouts=timeouts,
                retry=retry,
            ),
            CARD_GATEWAY_ALIAS,
        )
    else:
        logger.warning("payment_gateway_not_configured", provider="stripe")

    if settings.paypal.client_id and settings.paypal.client_secret:
        registry.register(
            PayPalClient(
                client_id=settings.paypal.client_id,
                client_secret=settings.paypal.client_secret,
                webhook_id=settings.paypal.webhook_id,
                base_url=settings.paypal.base_url,
                brand_name=settings.paypal.brand_name,
                timeouts=timeouts,
                retry=retry,
            ),
            WALLET_GATEWAY_ALIAS,
        )
    else:
        logger.warning("payment_gateway_not_configured", provider="paypal")

    logger.info("payment_gateways_ready", providers=[gateway.provider for gateway in registry])
    return registry


__all__ = [
    "build_gateway_registry",
    "CARD_GATEWAY_ALIAS",
    "WALLET_GATEWAY_ALIAS",
    "StripeClient",
    "PayPalClient",
]
