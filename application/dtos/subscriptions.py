"""
Subscription DTOs (Pydantic v2).
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from application.dtos.base import DTOBase
from domain.subscription.entity import CancellationReason, UserSubscription


class CancelSubscriptionRequest(BaseModel):
    reason: CancellationReason = CancellationReason.USER_REQUESTED


class SubscriptionDTO(DTOBase):
    id: str
    owner_id: str
    plan_id: str
    status: str
    billing_cycle: str
    start_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    credits_granted: int
    credits_used: int
    credits_remaining: int
    auto_renew: bool
    price_paid: Optional[int]
    currency: str
    external_subscription_id: Optional[str]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]

    @classmethod
    def from_entity(cls, sub: UserSubscription) -> "SubscriptionDTO":
        return cls(
            id=sub.id,
            owner_id=sub.owner_id,
            plan_id=sub.plan_id,
            status=sub.status.value,
            billing_cycle=sub.billing_cycle.value,
            start_date=sub.start_date,
            current_period_start=sub.current_period_start,
            current_period_end=sub.current_period_end,
            credits_granted=sub.credits_granted,
            credits_used=sub.credits_used,
            credits_remaining=sub.credits_remaining,
            auto_renew=sub.auto_renew,
            price_paid=sub.price_paid,
            currency=sub.currency,
            external_subscription_id=sub.external_subscription_id,
            cancelled_at=sub.cancelled_at,
            cancellation_reason=sub.cancellation_reason,
        )
