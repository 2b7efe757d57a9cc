"""
订阅仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.exceptions import SubscriptionConflictException
from domain.subscription.entity import (
    EXPIRABLE_STATUSES,
    CANCELLABLE_STATUSES,
    GrantAction,
    SubscriptionGrant,
    SubscriptionStatus,
    UserSubscription,
)
from domain.subscription.repository import SubscriptionRepository
from infrastructure.models.subscription import SubscriptionGrantModel, UserSubscriptionModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemySubscriptionRepository(SubscriptionRepository):
    """订阅仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: UserSubscriptionModel) -> UserSubscription:
        return UserSubscription(
            id=model.id,
            owner_id=model.owner_id,
            plan_id=model.plan_id,
            status=SubscriptionStatus(model.status),
            billing_cycle=model.billing_cycle,
            start_date=model.start_date,
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            credits_granted=model.credits_granted,
            credits_used=model.credits_used,
            auto_renew=model.auto_renew,
            price_paid=model.price_paid,
            currency=model.currency,
            external_subscription_id=model.external_subscription_id,
            cancelled_at=model.cancelled_at,
            cancellation_reason=model.cancellation_reason,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: UserSubscription) -> UserSubscriptionModel:
        return UserSubscriptionModel(
            id=entity.id,
            owner_id=entity.owner_id,
            plan_id=entity.plan_id,
            status=entity.status.value,
            billing_cycle=entity.billing_cycle.value,
            start_date=entity.start_date,
            current_period_start=entity.current_period_start,
            current_period_end=entity.current_period_end,
            credits_granted=entity.credits_granted,
            credits_used=entity.credits_used,
            auto_renew=entity.auto_renew,
            price_paid=entity.price_paid,
            currency=entity.currency,
            external_subscription_id=entity.external_subscription_id,
            cancelled_at=entity.cancelled_at,
            cancellation_reason=entity.cancellation_reason,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def _flush_or_conflict(self, message: str) -> None:
        try:
            await self.session.flush()
        except IntegrityError as e:
            # 事务由 UnitOfWork 回滚，调用方在新事务中重试
            logger.warning("subscription_write_conflict", reason=message, error=str(e.orig))
            raise SubscriptionConflictException(message) from e

    async def create(self, subscription: UserSubscription) -> UserSubscription:
        db_sub = self._to_model(subscription)
        self.session.add(db_sub)
        await self._flush_or_conflict("Active subscription already exists for owner and plan")
        await self.session.refresh(db_sub)
        logger.info(
            "subscription_created",
            subscription_id=db_sub.id,
            owner_id=db_sub.owner_id,
            plan_id=db_sub.plan_id,
            current_period_end=db_sub.current_period_end.isoformat(),
        )
        return self._to_entity(db_sub)

    async def get_by_id(self, subscription_id: str) -> Optional[UserSubscription]:
        result = await self.session.execute(
            select(UserSubscriptionModel)
            .where(UserSubscriptionModel.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        db_sub = result.scalar_one_or_none()
        return self._to_entity(db_sub) if db_sub else None

    async def get_active(self, owner_id: str, plan_id: str) -> Optional[UserSubscription]:
        result = await self.session.execute(
            select(UserSubscriptionModel)
            .where(
                UserSubscriptionModel.owner_id == owner_id,
                UserSubscriptionModel.plan_id == plan_id,
                UserSubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
            )
            .execution_options(populate_existing=True)
        )
        db_sub = result.scalar_one_or_none()
        return self._to_entity(db_sub) if db_sub else None

    async def list_by_owner(self, owner_id: str) -> List[UserSubscription]:
        result = await self.session.execute(
            select(UserSubscriptionModel)
            .where(UserSubscriptionModel.owner_id == owner_id)
            .order_by(UserSubscriptionModel.created_at.desc(), UserSubscriptionModel.id)
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(s) for s in result.scalars().all()]

    async def extend(
        self,
        subscription_id: str,
        *,
        expected_version: int,
        current_period_end: datetime,
        price_paid: Optional[int] = None,
    ) -> Optional[UserSubscription]:
        values = {
            "current_period_end": current_period_end,
            "version": UserSubscriptionModel.version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        if price_paid is not None:
            values["price_paid"] = price_paid
        result = await self.session.execute(
            update(UserSubscriptionModel)
            .where(
                UserSubscriptionModel.id == subscription_id,
                UserSubscriptionModel.version == expected_version,
                UserSubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "subscription_extend_conflict",
                subscription_id=subscription_id,
                expected_version=expected_version,
            )
            return None
        logger.info(
            "subscription_extended",
            subscription_id=subscription_id,
            current_period_end=current_period_end.isoformat(),
        )
        return await self.get_by_id(subscription_id)

    async def expire_elapsed(self, owner_id: str, now: datetime) -> int:
        result = await self.session.execute(
            update(UserSubscriptionModel)
            .where(
                UserSubscriptionModel.owner_id == owner_id,
                UserSubscriptionModel.status.in_([s.value for s in EXPIRABLE_STATUSES]),
                UserSubscriptionModel.current_period_end <= now,
            )
            .values(
                status=SubscriptionStatus.EXPIRED.value,
                version=UserSubscriptionModel.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("subscriptions_expired", owner_id=owner_id, count=result.rowcount)
        return int(result.rowcount or 0)

    async def cancel(
        self, subscription_id: str, *, reason: Optional[str], now: datetime
    ) -> Optional[UserSubscription]:
        result = await self.session.execute(
            update(UserSubscriptionModel)
            .where(
                UserSubscriptionModel.id == subscription_id,
                UserSubscriptionModel.status.in_([s.value for s in CANCELLABLE_STATUSES]),
            )
            .values(
                status=SubscriptionStatus.CANCELLED.value,
                cancelled_at=now,
                cancellation_reason=reason,
                auto_renew=False,
                version=UserSubscriptionModel.version + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        logger.info("subscription_cancelled", subscription_id=subscription_id, reason=reason)
        return await self.get_by_id(subscription_id)

    async def get_grant(self, payment_id: str) -> Optional[SubscriptionGrant]:
        result = await self.session.execute(
            select(SubscriptionGrantModel).where(SubscriptionGrantModel.payment_id == payment_id)
        )
        db_grant = result.scalar_one_or_none()
        if db_grant is None:
            return None
        return SubscriptionGrant(
            payment_id=db_grant.payment_id,
            subscription_id=db_grant.subscription_id,
            action=GrantAction(db_grant.action),
            created_at=db_grant.created_at,
        )

    async def add_grant(self, grant: SubscriptionGrant) -> SubscriptionGrant:
        self.session.add(
            SubscriptionGrantModel(
                payment_id=grant.payment_id,
                subscription_id=grant.subscription_id,
                action=GrantAction(grant.action).value,
                created_at=grant.created_at or datetime.now(timezone.utc),
            )
        )
        await self._flush_or_conflict("Subscription already granted for payment")
        return grant
