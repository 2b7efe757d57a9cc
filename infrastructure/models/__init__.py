"""Infrastructure models package exports."""
from .base import Base, metadata
from .catalog import PlanModel, UserModel
from .payment import PaymentModel, RefundModel
from .subscription import SubscriptionGrantModel, UserSubscriptionModel

__all__ = [
    "Base",
    "metadata",
    "PlanModel",
    "UserModel",
    "PaymentModel",
    "RefundModel",
    "UserSubscriptionModel",
    "SubscriptionGrantModel",
]
