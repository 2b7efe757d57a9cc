"""
订阅仓储接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .entity import SubscriptionGrant, UserSubscription


class SubscriptionRepository(ABC):
    """订阅仓储抽象接口"""

    @abstractmethod
    async def create(self, subscription: UserSubscription) -> UserSubscription:
        """创建订阅；违反 (owner, plan) ACTIVE 唯一约束时抛出 SubscriptionConflictException"""
        pass

    @abstractmethod
    async def get_by_id(self, subscription_id: str) -> Optional[UserSubscription]:
        pass

    @abstractmethod
    async def get_active(self, owner_id: str, plan_id: str) -> Optional[UserSubscription]:
        """获取 (owner, plan) 当前的 ACTIVE 订阅"""
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> List[UserSubscription]:
        """获取用户全部订阅（按创建时间倒序）"""
        pass

    @abstractmethod
    async def extend(
        self,
        subscription_id: str,
        *,
        expected_version: int,
        current_period_end: datetime,
        price_paid: Optional[int] = None,
    ) -> Optional[UserSubscription]:
        """乐观锁续期：仅当 version 匹配且仍为 ACTIVE 时写入，否则返回 None"""
        pass

    @abstractmethod
    async def expire_elapsed(self, owner_id: str, now: datetime) -> int:
        """将周期已结束的订阅标记为 EXPIRED，返回受影响行数"""
        pass

    @abstractmethod
    async def cancel(
        self, subscription_id: str, *, reason: Optional[str], now: datetime
    ) -> Optional[UserSubscription]:
        """条件取消：仅可取消状态下生效，否则返回 None"""
        pass

    @abstractmethod
    async def get_grant(self, payment_id: str) -> Optional[SubscriptionGrant]:
        """获取支付对应的订阅授予记录"""
        pass

    @abstractmethod
    async def add_grant(self, grant: SubscriptionGrant) -> SubscriptionGrant:
        """写入授予记录；同一 payment_id 重复写入时抛出 SubscriptionConflictException"""
        pass
