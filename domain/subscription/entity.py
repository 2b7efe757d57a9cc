"""
订阅领域实体 - 用户订阅聚合根与套餐只读模型
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import DEFAULT_CURRENCY, _ensure_utc


class SubscriptionStatus(str, Enum):
    """订阅状态枚举"""
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    WEEKLY = "weekly"

    @property
    def interval(self) -> timedelta:
        """一个计费周期的时长"""
        return _CYCLE_INTERVALS[self]


_CYCLE_INTERVALS = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUAL: timedelta(days=365),
    BillingCycle.WEEKLY: timedelta(days=7),
}


class CancellationReason(str, Enum):
    USER_REQUESTED = "user_requested"
    PAYMENT_FAILED = "payment_failed"
    ADMIN_ACTION = "admin_action"
    SYSTEM_AUTOMATED = "system_automated"
    TRIAL_EXPIRED = "trial_expired"
    PLAN_DISCONTINUED = "plan_discontinued"
    FRAUD_DETECTED = "fraud_detected"
    OTHER = "other"


# 会随周期结束而过期的状态
EXPIRABLE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL})
CANCELLABLE_STATUSES = frozenset(
    {
        SubscriptionStatus.PENDING,
        SubscriptionStatus.TRIAL,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
    }
)


@dataclass(frozen=True)
class Plan:
    """套餐只读模型（由套餐目录提供）"""

    id: str
    name: str
    monthly_price: int
    monthly_credits: int
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    annual_price: Optional[int] = None
    currency: str = DEFAULT_CURRENCY
    slug: Optional[str] = None
    is_active: bool = True

    @property
    def price(self) -> int:
        """当前计费周期的价格（最小货币单位）"""
        if self.billing_cycle == BillingCycle.ANNUAL and self.annual_price:
            return self.annual_price
        return self.monthly_price


@dataclass
class UserSubscription:
    """
    用户订阅聚合根

    业务规则：
    1. 同一 (owner, plan) 同时最多一个 ACTIVE 订阅（数据库部分唯一索引保证）
    2. 只能由订阅生命周期管理器在支付 COMPLETED 后创建或续期
    3. 周期结束后在读取时惰性过期，不依赖后台任务
    4. version 用于乐观并发控制
    """

    id: str
    owner_id: str
    plan_id: str
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    start_date: datetime
    current_period_start: datetime
    current_period_end: datetime
    credits_granted: int = 0
    credits_used: int = 0
    auto_renew: bool = True
    price_paid: Optional[int] = None
    currency: str = DEFAULT_CURRENCY
    external_subscription_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = SubscriptionStatus(self.status)
        self.billing_cycle = BillingCycle(self.billing_cycle)
        self.start_date = _ensure_utc(self.start_date)
        self.current_period_start = _ensure_utc(self.current_period_start)
        self.current_period_end = _ensure_utc(self.current_period_end)
        self.cancelled_at = _ensure_utc(self.cancelled_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.current_period_end < self.current_period_start:
            raise DomainValidationException("订阅周期结束时间早于开始时间", field="current_period_end")

    @classmethod
    def start(
        cls,
        *,
        owner_id: str,
        plan: Plan,
        price_paid: Optional[int] = None,
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "UserSubscription":
        """根据套餐开通新订阅：从现在起一个计费周期，额度为套餐月度额度"""
        now = now or datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=plan.billing_cycle,
            start_date=now,
            current_period_start=now,
            current_period_end=now + plan.billing_cycle.interval,
            credits_granted=plan.monthly_credits,
            credits_used=0,
            auto_renew=True,
            price_paid=price_paid,
            currency=currency or plan.currency,
            created_at=now,
            updated_at=now,
        )

    @property
    def credits_remaining(self) -> int:
        return max(self.credits_granted - self.credits_used, 0)

    def is_elapsed(self, now: Optional[datetime] = None) -> bool:
        """周期已结束且仍处于可过期状态"""
        now = now or datetime.now(timezone.utc)
        return self.status in EXPIRABLE_STATUSES and self.current_period_end <= now

    def next_period_end(self, cycle: Optional[BillingCycle] = None) -> datetime:
        """续期一个计费周期后的结束时间（已用额度不变）"""
        return self.current_period_end + (cycle or self.billing_cycle).interval

    def can_cancel(self) -> bool:
        return self.status in CANCELLABLE_STATUSES


class GrantAction(str, Enum):
    CREATED = "created"
    EXTENDED = "extended"


@dataclass(frozen=True)
class SubscriptionGrant:
    """支付 -> 订阅的授予记录，每笔支付至多一条（payment_id 为主键）"""

    payment_id: str
    subscription_id: str
    action: GrantAction
    created_at: Optional[datetime] = None
