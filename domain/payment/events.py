"""
Payment domain events.

Dataclass events record payment lifecycle facts. The application layer logs them
after the corresponding conditional update has been applied; the domain stays
free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    payment_id: str
    method: str
    external_reference: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return _EVENT_NAMES[type(self)]

    def to_log(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass
class PaymentCompleted(PaymentEvent):
    pass


@dataclass
class PaymentFailed(PaymentEvent):
    reason: Optional[str] = None


@dataclass
class PaymentRefunded(PaymentEvent):
    refund_id: str = ""
    amount: int = 0
    fully_refunded: bool = False


@dataclass
class PaymentCancelled(PaymentEvent):
    pass


@dataclass
class SubscriptionGranted(PaymentEvent):
    subscription_id: str = ""
    action: str = ""


_EVENT_NAMES = {
    PaymentCompleted: "payment_completed",
    PaymentFailed: "payment_failed",
    PaymentRefunded: "payment_refunded",
    PaymentCancelled: "payment_cancelled",
    SubscriptionGranted: "subscription_granted",
}
