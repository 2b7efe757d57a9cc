"""
Payment DTOs (Pydantic v2) used at application boundaries.

Two groups live here:
- gateway DTOs exchanged between the orchestrator and gateway adapters
- request/response DTOs exchanged with the HTTP layer
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from application.dtos.base import DTOBase
from domain.payment.entity import MAX_AMOUNT_MINOR, Payment, PaymentType, Refund


CanonicalStatus = Literal["succeeded", "failed", "pending", "requires_action", "canceled"]
CanonicalEventType = Literal["succeeded", "approved", "failed", "canceled", "refunded", "unhandled"]


def _validate_currency(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    u = v.upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    return u


# ---------------------------------------------------------------------------
# Gateway DTOs
# ---------------------------------------------------------------------------


class GatewayIntent(BaseModel):
    """Result of creating a gateway-side intent/order."""

    external_id: str
    status: CanonicalStatus
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayStatus(BaseModel):
    status: CanonicalStatus
    failure_reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class GatewayRefund(BaseModel):
    refund_id: str
    status: str
    raw: dict[str, Any] = Field(default_factory=dict)


class CanonicalEvent(BaseModel):
    """Provider-agnostic representation of a webhook event."""

    type: CanonicalEventType
    provider_event_type: Optional[str] = None
    event_id: Optional[str] = None
    external_id: Optional[str] = None
    payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class CreatePaymentRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    plan_id: Optional[str] = Field(None, max_length=64)
    amount: int = Field(..., gt=0, le=MAX_AMOUNT_MINOR, description="金额（最小货币单位）")
    currency: Optional[str] = None
    method: str = Field(..., description="stripe | paypal | card-gateway | wallet-gateway")
    type: PaymentType = PaymentType.ONE_TIME
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return _validate_currency(v)


class CreatePaymentIntentRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    plan_id: Optional[str] = Field(None, max_length=64)
    amount: Optional[int] = Field(None, gt=0, le=MAX_AMOUNT_MINOR)
    currency: Optional[str] = None
    method: str
    success_url: Optional[str] = Field(None, max_length=500)
    cancel_url: Optional[str] = Field(None, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: Optional[str]) -> Optional[str]:
        return _validate_currency(v)

    @model_validator(mode="after")
    def _plan_or_amount(self):
        if self.plan_id is None and self.amount is None:
            raise ValueError("either plan_id or amount is required")
        return self


class ConfirmPaymentRequest(BaseModel):
    """Optional client-side confirmation data (e.g. PayPal token / PayerID)."""

    model_config = ConfigDict(extra="allow")

    external_reference: Optional[str] = None


class RefundPaymentRequest(BaseModel):
    # Range is checked by the orchestrator so that non-positive amounts map to 400
    amount: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class PaymentDTO(DTOBase):
    id: str
    owner_id: str
    plan_id: Optional[str]
    amount: int
    currency: str
    method: str
    type: str
    status: str
    external_reference: Optional[str]
    refunded_amount: int
    failure_reason: Optional[str]
    metadata: dict[str, Any]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        return cls(
            id=payment.id,
            owner_id=payment.owner_id,
            plan_id=payment.plan_id,
            amount=payment.amount,
            currency=payment.currency,
            method=payment.method.value,
            type=payment.type.value,
            status=payment.status.value,
            external_reference=payment.external_reference,
            refunded_amount=payment.refunded_amount,
            failure_reason=payment.failure_reason,
            metadata=payment.metadata,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            confirmed_at=payment.confirmed_at,
            cancelled_at=payment.cancelled_at,
        )


class PaymentIntentDTO(DTOBase):
    payment: PaymentDTO
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None


class RefundDTO(DTOBase):
    id: str
    payment_id: str
    amount: int
    currency: str
    status: str
    reason: Optional[str]
    provider_refund_id: Optional[str]
    failure_reason: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_entity(cls, refund: Refund) -> "RefundDTO":
        return cls(
            id=refund.id,
            payment_id=refund.payment_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status.value,
            reason=refund.reason,
            provider_refund_id=refund.provider_refund_id,
            failure_reason=refund.failure_reason,
            created_at=refund.created_at,
        )


class WebhookReceipt(BaseModel):
    received: bool = True
    action: str
    event_type: str
    payment_id: Optional[str] = None
    result: Optional[str] = None
