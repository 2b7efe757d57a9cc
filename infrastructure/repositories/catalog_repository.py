"""
套餐目录与用户目录的只读实现

每次查询使用独立的短会话，不参与调用方的事务
"""
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.subscription.entity import BillingCycle, Plan
from infrastructure.database import AsyncSessionLocal
from infrastructure.models.catalog import PlanModel, UserModel


class SQLAlchemyPlanCatalog:
    """PlanCatalog 的SQLAlchemy实现"""

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def _to_entity(model: PlanModel) -> Plan:
        return Plan(
            id=model.id,
            name=model.name,
            slug=model.slug,
            monthly_price=int(model.monthly_price),
            annual_price=int(model.annual_price) if model.annual_price is not None else None,
            monthly_credits=model.monthly_credits,
            billing_cycle=BillingCycle(model.billing_cycle),
            currency=model.currency,
            is_active=model.is_active,
        )

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        async with self._session_factory() as session:
            result = await session.execute(select(PlanModel).where(PlanModel.id == plan_id))
            model = result.scalar_one_or_none()
            return self._to_entity(model) if model else None


class SQLAlchemyUserDirectory:
    """UserDirectory 的SQLAlchemy实现"""

    def __init__(self, session_factory: Callable[[], AsyncSession] = AsyncSessionLocal):
        self._session_factory = session_factory

    async def exists(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserModel.id).where(UserModel.id == user_id, UserModel.is_active.is_(True))
            )
            return result.scalar_one_or_none() is not None
