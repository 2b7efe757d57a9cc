"""
Subscription lifecycle manager: derives entitlements from completed
subscription payments and serves subscription reads.

Each grant is recorded in the subscription_grants ledger (keyed by payment id)
in the same transaction as the subscription write, so applying the same
payment twice, or again after a crash, never creates or extends twice.
Elapsed subscriptions are expired lazily whenever an owner's subscriptions
are read or written.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from application.ports.catalog import PlanCatalog
from core.logging_config import get_logger
from domain.common.outcome import Outcome
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus
from domain.payment.events import SubscriptionGranted
from domain.payment.exceptions import (
    SubscriptionConflictException,
    SubscriptionNotFoundException,
)
from domain.subscription.entity import (
    CancellationReason,
    GrantAction,
    Plan,
    SubscriptionGrant,
    SubscriptionStatus,
    UserSubscription,
)


logger = get_logger(__name__)

# Attempts for a grant that loses a race (version bump or unique index)
MAX_APPLY_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionLifecycleManager:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], plans: PlanCatalog) -> None:
        self._uow_factory = uow_factory
        self._plans = plans

    async def apply_payment(self, payment: Payment) -> Outcome[Optional[UserSubscription]]:
        """Create or extend the owner's subscription for a COMPLETED subscription payment."""
        if not payment.is_subscription:
            return Outcome.rejected(None, "Payment is not a subscription payment")
        if payment.status != PaymentStatus.COMPLETED:
            return Outcome.rejected(None, f"Payment is {payment.status.value}, not completed")

        plan = await self._plans.get_plan(payment.plan_id)  # type: ignore[arg-type]
        if plan is None:
            logger.error("subscription_plan_missing", payment_id=payment.id, plan_id=payment.plan_id)
            return Outcome.rejected(None, f"Plan {payment.plan_id} not found")

        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            try:
                return await self._apply_once(payment, plan)
            except SubscriptionConflictException:
                logger.info("subscription_apply_retry", payment_id=payment.id, attempt=attempt)
                if attempt == MAX_APPLY_ATTEMPTS:
                    raise
        raise SubscriptionConflictException()

    async def _apply_once(self, payment: Payment, plan: Plan) -> Outcome[Optional[UserSubscription]]:
        now = _utcnow()
        async with self._uow_factory() as uow:
            repo = uow.subscription_repository
            # First statement is a write so concurrent grants for the owner serialize
            await repo.expire_elapsed(payment.owner_id, now)

            grant = await repo.get_grant(payment.id)
            if grant is not None:
                existing = await repo.get_by_id(grant.subscription_id)
                return Outcome.already_applied(existing, "Subscription already granted for payment")

            active = await repo.get_active(payment.owner_id, plan.id)
            if active is not None:
                subscription = await repo.extend(
                    active.id,
                    expected_version=active.version,
                    current_period_end=active.next_period_end(plan.billing_cycle),
                    price_paid=payment.amount,
                )
                if subscription is None:
                    raise SubscriptionConflictException("Subscription was modified concurrently")
                action = GrantAction.EXTENDED
            else:
                subscription = await repo.create(
                    UserSubscription.start(
                        owner_id=payment.owner_id,
                        plan=plan,
                        price_paid=payment.amount,
                        currency=payment.currency,
                        now=now,
                    )
                )
                action = GrantAction.CREATED

            await repo.add_grant(
                SubscriptionGrant(
                    payment_id=payment.id,
                    subscription_id=subscription.id,
                    action=action,
                    created_at=now,
                )
            )

        event = SubscriptionGranted(
            payment_id=payment.id,
            method=payment.method.value,
            external_reference=payment.external_reference,
            subscription_id=subscription.id,
            action=action.value,
        )
        logger.info(event.name, **event.to_log())
        return Outcome.applied(subscription)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_user_subscriptions(self, owner_id: str) -> List[UserSubscription]:
        async with self._uow_factory() as uow:
            await uow.subscription_repository.expire_elapsed(owner_id, _utcnow())
            return await uow.subscription_repository.list_by_owner(owner_id)

    async def get_active_subscription(self, owner_id: str) -> Optional[UserSubscription]:
        """The owner's ACTIVE subscription with the latest period end, if any."""
        subscriptions = await self.list_user_subscriptions(owner_id)
        active = [s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]
        if not active:
            return None
        return max(active, key=lambda s: s.current_period_end)

    async def get_subscription(self, subscription_id: str) -> UserSubscription:
        async with self._uow_factory() as uow:
            subscription = await uow.subscription_repository.get_by_id(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundException(subscription_id)
            if subscription.is_elapsed(_utcnow()):
                await uow.subscription_repository.expire_elapsed(subscription.owner_id, _utcnow())
                subscription = await uow.subscription_repository.get_by_id(subscription_id)
        return subscription  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_subscription(
        self,
        subscription_id: str,
        reason: CancellationReason = CancellationReason.USER_REQUESTED,
    ) -> Outcome[UserSubscription]:
        subscription = await self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return Outcome.already_applied(subscription, "Subscription already cancelled")
        if not subscription.can_cancel():
            return Outcome.rejected(
                subscription, f"Cannot cancel subscription in status {subscription.status.value}"
            )

        async with self._uow_factory() as uow:
            cancelled = await uow.subscription_repository.cancel(
                subscription_id, reason=CancellationReason(reason).value, now=_utcnow()
            )
            if cancelled is None:
                current = await uow.subscription_repository.get_by_id(subscription_id)
        if cancelled is None:
            return Outcome.rejected(current or subscription, "Subscription was modified concurrently")
        return Outcome.applied(cancelled)
