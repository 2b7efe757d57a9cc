"""
订阅数据库模型 - SQLAlchemy ORM模型
"""
from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, text
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserSubscriptionModel(Base):
    """
    用户订阅数据库模型

    (owner_id, plan_id) 在 status='active' 时唯一（部分唯一索引）
    """
    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True)
    owner_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    plan_id = Column(String(64), nullable=False, comment="套餐ID")

    status = Column(
        String(32),
        nullable=False,
        default="active",
        comment="订阅状态: pending/trial/active/cancelled/expired/suspended"
    )
    external_subscription_id = Column(String(200), nullable=True, comment="网关订阅ID")
    billing_cycle = Column(String(16), nullable=False, default="monthly", comment="计费周期: monthly/annual/weekly")

    start_date = Column(DateTime(timezone=True), nullable=False, comment="开始时间")
    current_period_start = Column(DateTime(timezone=True), nullable=False, comment="当前周期开始")
    current_period_end = Column(DateTime(timezone=True), nullable=False, comment="当前周期结束")

    credits_granted = Column(Integer, nullable=False, default=0, comment="发放额度")
    credits_used = Column(Integer, nullable=False, default=0, comment="已用额度")
    auto_renew = Column(Boolean, nullable=False, default=True, comment="是否自动续费")
    price_paid = Column(BigInteger, nullable=True, comment="最近一次支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="BRL", comment="货币代码")

    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")
    cancellation_reason = Column(Text, nullable=True, comment="取消原因")

    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=1, comment="版本号")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    __table_args__ = (
        Index(
            "uq_user_subscriptions_active_owner_plan",
            "owner_id",
            "plan_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_user_subscriptions_owner_status", "owner_id", "status"),
    )

    def __repr__(self):
        return (
            f"<UserSubscriptionModel(id='{self.id}', owner_id='{self.owner_id}', "
            f"plan_id='{self.plan_id}', status='{self.status}')>"
        )


class SubscriptionGrantModel(Base):
    """支付 -> 订阅授予台账，payment_id 唯一保证每笔支付只授予一次"""
    __tablename__ = "subscription_grants"

    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="RESTRICT"), primary_key=True)
    subscription_id = Column(
        String(36), ForeignKey("user_subscriptions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action = Column(String(16), nullable=False, comment="created/extended")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")

    def __repr__(self):
        return f"<SubscriptionGrantModel(payment_id='{self.payment_id}', action='{self.action}')>"
