"""
PayPal Orders v2 adapter (wallet gateway) over httpx.

Flow: create an order (intent=CAPTURE) and hand the approval URL to the payer;
after approval the order is captured. PayPal is therefore a two-phase provider.
Webhooks are verified with the notifications verification API.
"""
from __future__ import annotations

import asyncio
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx

from application.dtos.payments import (
    CanonicalEvent,
    GatewayIntent,
    GatewayRefund,
    GatewayStatus,
)
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import PaymentProviderError
from infrastructure.external.payments.base import BasePaymentClient
from core.logging_config import get_logger


logger = get_logger(__name__)

# Currencies PayPal expresses without decimals
ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "HUF", "TWD"})

# Seconds subtracted from expires_in before refreshing the access token
TOKEN_EXPIRY_SKEW = 60

EVENT_TYPE_MAP = {
    "PAYMENT.CAPTURE.COMPLETED": "succeeded",
    "CHECKOUT.ORDER.COMPLETED": "succeeded",
    "CHECKOUT.ORDER.APPROVED": "approved",
    "PAYMENT.CAPTURE.DENIED": "failed",
    "PAYMENT.CAPTURE.DECLINED": "failed",
    "CHECKOUT.ORDER.VOIDED": "canceled",
    "PAYMENT.CAPTURE.REFUNDED": "refunded",
}

VERIFICATION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(amount_minor: int, currency: str) -> str:
    """Minor units -> PayPal decimal string (2990 BRL -> "29.90")."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount_minor)
    return str((Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01")))


def _first(items: Any) -> dict:
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


class PayPalClient(BasePaymentClient):
    provider = "paypal"
    method = PaymentMethod.PAYPAL
    two_phase = True

    def __init__(
        self,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        webhook_id: Optional[str] = None,
        base_url: str = "https://api-m.sandbox.paypal.com",
        brand_name: Optional[str] = None,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(timeouts=timeouts, retry=retry, transport=transport)
        if not client_id or not client_secret:
            raise RuntimeError("PAYPAL__CLIENT_ID / PAYPAL__CLIENT_SECRET not configured")
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_id = webhook_id
        self._base_url = base_url.rstrip("/")
        self._brand_name = brand_name
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            response = await self._retry(
                lambda: self.client.post(
                    f"{self._base_url}/v1/oauth2/token",
                    auth=(self._client_id, self._client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                )
            )
            self._raise_for_status("oauth_token", response)
            body = response.json()
            self._token = body["access_token"]
            expires_in = int(body.get("expires_in", 300))
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_SKEW, 0)
            return self._token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        request_id: Optional[str] = None,
    ) -> httpx.Response:
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        response = await self._retry(
            lambda: self.client.request(method, f"{self._base_url}{path}", json=json_body, headers=headers)
        )
        if response.status_code == 401:
            # Token revoked or expired early; fetch a new one once
            self._token = None
            token = await self._access_token()
            headers["Authorization"] = f"Bearer {token}"
            response = await self._retry(
                lambda: self.client.request(method, f"{self._base_url}{path}", json=json_body, headers=headers)
            )
        return response

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        request_id: Optional[str] = None,
    ) -> dict[str, Any]:
        async def run() -> dict[str, Any]:
            response = await self._send(method, path, json_body=json_body, request_id=request_id)
            self._raise_for_status(operation, response)
            return response.json() if response.content else {}

        return await self._call(operation, run)

    # ------------------------------------------------------------------
    # Status mapping
    # ------------------------------------------------------------------

    def _status_from_order(self, order: dict[str, Any]) -> GatewayStatus:
        order_status = order.get("status")
        status = self._map_status(order_status)
        failure_reason = None
        capture = _first(((_first(order.get("purchase_units")).get("payments") or {}).get("captures")))
        if order_status == "COMPLETED" and capture:
            # The order completes even when the capture itself is declined or pending
            status = self._map_status(capture.get("status"))
            details = capture.get("status_details") or {}
            failure_reason = details.get("reason")
        return GatewayStatus(
            status=status,
            failure_reason=failure_reason,
            raw={
                "id": order.get("id"),
                "status": order_status,
                "capture_id": capture.get("id"),
                "capture_status": capture.get("status"),
            },
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
        payment_id = str((metadata or {}).get("payment_id") or "")
        experience: dict[str, Any] = {"user_action": "PAY_NOW", "shipping_preference": "NO_SHIPPING"}
        if return_url:
            experience["return_url"] = return_url
        if cancel_url:
            experience["cancel_url"] = cancel_url
        if self._brand_name:
            experience["brand_name"] = self._brand_name
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": payment_id or "default",
                    "custom_id": payment_id,
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": format_amount(amount_minor, currency),
                    },
                }
            ],
            "payment_source": {"paypal": {"experience_context": experience}},
        }
        order = await self._request(
            "create_intent", "POST", "/v2/checkout/orders", json_body=body, request_id=idempotency_key
        )
        links = order.get("links") or []
        approval_url = next(
            (link.get("href") for link in links if link.get("rel") in {"approve", "payer-action"}),
            None,
        )
        self._log("paypal_order_created", external_id=order.get("id"), status=order.get("status"))
        return GatewayIntent(
            external_id=str(order["id"]),
            status=self._map_status(order.get("status")),
            approval_url=approval_url,
            raw={"id": order.get("id"), "status": order.get("status")},
        )

    async def retrieve_status(self, external_id: str) -> GatewayStatus:
        order = await self._request("retrieve_status", "GET", f"/v2/checkout/orders/{external_id}")
        return self._status_from_order(order)

    async def capture(self, external_id: str) -> GatewayStatus:
        current = await self.retrieve_status(external_id)
        if current.raw.get("status") == "COMPLETED":
            # Already captured (e.g. by a concurrent confirm); report the capture outcome
            return current
        if current.raw.get("status") != "APPROVED":
            return current
        order = await self._request(
            "capture",
            "POST",
            f"/v2/checkout/orders/{external_id}/capture",
            json_body={},
            request_id=f"capture-{external_id}",
        )
        result = self._status_from_order(order)
        self._log("paypal_order_captured", external_id=external_id, status=result.status)
        return result

    async def cancel(self, external_id: str) -> None:
        # Uncaptured CAPTURE-intent orders cannot be voided through the API; they expire
        self._log("paypal_cancel_noop", external_id=external_id)

    async def refund(
        self,
        external_id: str,
        amount_minor: int,
        currency: str,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        status = await self.retrieve_status(external_id)
        capture_id = status.raw.get("capture_id")
        if not capture_id:
            raise PaymentProviderError(
                "No capture found for order", provider=self.provider, provider_code="CAPTURE_NOT_FOUND"
            )
        body: dict[str, Any] = {
            "amount": {"currency_code": currency.upper(), "value": format_amount(amount_minor, currency)},
        }
        if reason:
            body["note_to_payer"] = reason[:255]
        refund = await self._request(
            "refund",
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json_body=body,
            request_id=idempotency_key,
        )
        refund_status = str(refund.get("status") or "")
        if refund_status in {"CANCELLED", "FAILED"}:
            raise PaymentProviderError(
                f"Refund {refund_status.lower()}", provider=self.provider, provider_code=refund_status
            )
        self._log("paypal_refund_created", external_id=external_id, refund_id=refund.get("id"), status=refund_status)
        return GatewayRefund(
            refund_id=str(refund.get("id")),
            status=refund_status.lower(),
            raw={"id": refund.get("id"), "status": refund_status, "capture_id": capture_id},
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        if not self._webhook_id:
            logger.warning("paypal_webhook_id_missing")
            return False
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        fields = {name: lowered.get(header) for name, header in VERIFICATION_HEADERS.items()}
        if not all(fields.values()):
            return False
        try:
            event = json.loads(raw_payload)
            body = {**fields, "webhook_id": self._webhook_id, "webhook_event": event}
            result = await self._request(
                "verify_webhook_signature", "POST", "/v1/notifications/verify-webhook-signature", json_body=body
            )
            return hmac.compare_digest(str(result.get("verification_status", "")), "SUCCESS")
        except Exception as exc:  # malformed input or verification outage must never raise
            logger.info("paypal_signature_rejected", error=type(exc).__name__)
            return False

    def parse_webhook_event(self, raw_payload: bytes) -> CanonicalEvent:
        try:
            event = json.loads(raw_payload)
        except (ValueError, UnicodeDecodeError):
            return CanonicalEvent(type="unhandled")
        if not isinstance(event, dict):
            return CanonicalEvent(type="unhandled")

        event_type = str(event.get("event_type") or "")
        resource = event.get("resource") or {}
        canonical = EVENT_TYPE_MAP.get(event_type, "unhandled")

        if event_type.startswith("CHECKOUT.ORDER."):
            external_id = resource.get("id")
            payment_id = _first(resource.get("purchase_units")).get("custom_id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            external_id = related.get("order_id")
            payment_id = resource.get("custom_id")
        failure_reason = (resource.get("status_details") or {}).get("reason")

        return CanonicalEvent(
            type=canonical,
            provider_event_type=event_type,
            event_id=event.get("id"),
            external_id=external_id,
            payment_id=payment_id or None,
            failure_reason=failure_reason,
            raw={"id": event.get("id"), "event_type": event_type, "resource_id": resource.get("id")},
        )


__all__ = ["PayPalClient", "format_amount"]
