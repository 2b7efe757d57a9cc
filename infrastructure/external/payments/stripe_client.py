"""
Stripe PaymentIntents adapter (card gateway) using the official stripe-python SDK.

Notes on SDK usage:
- Calls go through a `stripe.StripeClient` instance created once at startup;
  no module-level `stripe.api_key` is set.
- The SDK is synchronous, so each call runs in a worker thread bounded by the
  configured total timeout.
- Idempotency keys are passed as request options.
- Webhook verification uses `stripe.WebhookSignature.verify_header`, which
  compares signatures in constant time.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Mapping, Optional, TypeVar

import stripe

from application.dtos.payments import (
    CanonicalEvent,
    GatewayIntent,
    GatewayRefund,
    GatewayStatus,
)
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
)
from infrastructure.external.payments.base import BasePaymentClient
from core.logging_config import get_logger


logger = get_logger(__name__)

T = TypeVar("T")

SIGNATURE_HEADER = "stripe-signature"

# Stripe event type -> canonical event type
EVENT_TYPE_MAP = {
    "payment_intent.succeeded": "succeeded",
    "checkout.session.completed": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
    "charge.refunded": "refunded",
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        return default
    return default if value is None else value


class StripeClient(BasePaymentClient):
    provider = "stripe"
    method = PaymentMethod.STRIPE
    two_phase = False

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        tolerance_seconds: int = 300,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        sdk_client: Optional[stripe.StripeClient] = None,
    ):
        super().__init__(timeouts=timeouts, retry=retry)
        if sdk_client is None:
            if not secret_key:
                raise RuntimeError("STRIPE__SECRET_KEY not configured")
            sdk_client = stripe.StripeClient(
                secret_key,
                max_network_retries=int(self._retry_cfg["max"]),
            )
        self._stripe = sdk_client
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _sdk(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a blocking SDK call in a thread under the total timeout, mapping SDK errors."""
        try:
            return await self._call(operation, lambda: asyncio.to_thread(fn))
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as exc:
            self._log("stripe_retryable_error", operation=operation, error=str(exc))
            raise PaymentRecoverableError(
                getattr(exc, "user_message", None) or str(exc),
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
                details={"http_status": getattr(exc, "http_status", None)},
            ) from exc
        except stripe.StripeError as exc:
            self._log("stripe_error", operation=operation, error=str(exc))
            raise PaymentProviderError(
                getattr(exc, "user_message", None) or str(exc),
                provider=self.provider,
                provider_code=getattr(exc, "code", None),
                details={"http_status": getattr(exc, "http_status", None)},
            ) from exc

    @staticmethod
    def _snapshot(pi: Any) -> dict[str, Any]:
        return {
            "id": _get(pi, "id"),
            "object": _get(pi, "object"),
            "status": _get(pi, "status"),
            "amount": _get(pi, "amount"),
            "currency": _get(pi, "currency"),
            "latest_charge": _get(pi, "latest_charge"),
        }

    def _status_from_intent(self, pi: Any) -> GatewayStatus:
        provider_status = _get(pi, "status")
        status = self._map_status(provider_status)
        last_error = _get(pi, "last_payment_error")
        # A declined attempt returns the intent to requires_payment_method and the
        # customer may retry it, so only canceled is terminal
        failure_reason = _get(last_error, "message") or _get(pi, "cancellation_reason")
        return GatewayStatus(
            status=status,
            failure_reason=failure_reason,
            raw=self._snapshot(pi),
        )

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
        *,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        params = {
            "amount": amount_minor,
            "currency": currency.lower(),
            # Stripe metadata values must be strings
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "automatic_payment_methods": {"enabled": True},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        pi = await self._sdk(
            "create_intent",
            lambda: self._stripe.v1.payment_intents.create(params=params, options=options),
        )
        self._log("stripe_intent_created", external_id=_get(pi, "id"), status=_get(pi, "status"))
        return GatewayIntent(
            external_id=str(_get(pi, "id")),
            status=self._map_status(_get(pi, "status")),
            client_secret=_get(pi, "client_secret"),
            raw=self._snapshot(pi),
        )

    async def retrieve_status(self, external_id: str) -> GatewayStatus:
        pi = await self._sdk(
            "retrieve_status",
            lambda: self._stripe.v1.payment_intents.retrieve(external_id),
        )
        return self._status_from_intent(pi)

    async def capture(self, external_id: str) -> GatewayStatus:
        # One-phase: funds settle on confirmation, so report the current status
        return await self.retrieve_status(external_id)

    async def cancel(self, external_id: str) -> None:
        await self._sdk(
            "cancel",
            lambda: self._stripe.v1.payment_intents.cancel(external_id),
        )
        self._log("stripe_intent_cancelled", external_id=external_id)

    async def refund(
        self,
        external_id: str,
        amount_minor: int,
        currency: str,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        params: dict[str, Any] = {
            "payment_intent": external_id,
            "amount": amount_minor,
            "metadata": {"reason": reason or ""},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        refund = await self._sdk(
            "refund",
            lambda: self._stripe.v1.refunds.create(params=params, options=options),
        )
        status = str(_get(refund, "status", ""))
        if status in {"failed", "canceled"}:
            raise PaymentProviderError(
                _get(refund, "failure_reason") or f"Refund {status}",
                provider=self.provider,
                provider_code=status,
            )
        self._log("stripe_refund_created", external_id=external_id, refund_id=_get(refund, "id"), status=status)
        return GatewayRefund(
            refund_id=str(_get(refund, "id")),
            status=status,
            raw={"id": _get(refund, "id"), "status": status, "amount": _get(refund, "amount")},
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        if not self._webhook_secret:
            logger.warning("stripe_webhook_secret_missing")
            return False
        header = None
        for key, value in (headers or {}).items():
            if str(key).lower() == SIGNATURE_HEADER:
                header = value
                break
        if not header:
            return False
        try:
            payload = raw_payload.decode("utf-8") if isinstance(raw_payload, (bytes, bytearray)) else str(raw_payload)
            return bool(
                stripe.WebhookSignature.verify_header(
                    payload, header, self._webhook_secret, self._tolerance
                )
            )
        except Exception as exc:  # malformed input must never raise
            logger.info("stripe_signature_rejected", error=type(exc).__name__)
            return False

    def parse_webhook_event(self, raw_payload: bytes) -> CanonicalEvent:
        try:
            event = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            return CanonicalEvent(type="unhandled")
        if not isinstance(event, dict):
            return CanonicalEvent(type="unhandled")

        event_type = str(event.get("type") or "")
        obj = _get(_get(event, "data", {}), "object", {}) or {}
        canonical = EVENT_TYPE_MAP.get(event_type, "unhandled")

        if _get(obj, "object") == "payment_intent":
            external_id = _get(obj, "id")
        else:
            # checkout.session / charge reference the intent
            external_id = _get(obj, "payment_intent")
        metadata = _get(obj, "metadata", {}) or {}
        failure_reason = _get(_get(obj, "last_payment_error"), "message")

        return CanonicalEvent(
            type=canonical,
            provider_event_type=event_type,
            event_id=event.get("id"),
            external_id=str(external_id) if external_id else None,
            payment_id=_get(metadata, "payment_id"),
            failure_reason=failure_reason,
            raw={"id": event.get("id"), "type": event_type, "object_id": _get(obj, "id")},
        )
