"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    BigInteger, CheckConstraint, Column, DateTime, ForeignKey, Index, JSON, String, Text
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键（UUID 字符串）
    id = Column(String(36), primary_key=True)

    owner_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    plan_id = Column(String(64), nullable=True, index=True, comment="套餐ID")

    # 金额信息（整数最小货币单位）
    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="BRL", comment="货币代码 ISO-4217")
    refunded_amount = Column(BigInteger, nullable=False, default=0, comment="已退款金额（含处理中）")

    # 支付方式
    method = Column(String(32), nullable=False, comment="支付方式: stripe/paypal")
    type = Column(String(32), nullable=False, default="one_time", comment="支付类型: one_time/subscription")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/completed/failed/cancelled/refunded"
    )

    # 网关信息
    external_reference = Column(String(200), nullable=True, comment="网关侧ID（PaymentIntent/Order）")
    gateway_response = Column(JSON, nullable=True, comment="最近一次网关响应快照")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )
    confirmed_at = Column(DateTime(timezone=True), nullable=True, comment="支付完成时间")
    cancelled_at = Column(DateTime(timezone=True), nullable=True, comment="取消时间")

    refunds = relationship("RefundModel", back_populates="payment", lazy="select")

    __table_args__ = (
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payments_refunded_amount_range",
        ),
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        Index("ix_payments_owner_created", "owner_id", "created_at"),
        Index("ix_payments_method_external_ref", "method", "external_reference"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id='{self.id}', method='{self.method}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """
    退款数据库模型

    退款作为支付聚合的一部分，记录支付的退款明细；id 同时作为网关幂等键
    """
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True)

    payment_id = Column(
        String(36),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="关联的支付ID"
    )

    amount = Column(BigInteger, nullable=False, comment="退款金额（最小货币单位）")
    currency = Column(String(3), nullable=False, comment="货币代码")

    status = Column(
        String(32),
        nullable=False,
        default="pending",
        comment="退款状态: pending/succeeded/failed"
    )
    reason = Column(Text, nullable=True, comment="退款原因")
    provider_refund_id = Column(String(200), nullable=True, comment="渠道退款ID")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    payment = relationship("PaymentModel", back_populates="refunds")

    __table_args__ = (
        Index("ix_refunds_payment_status", "payment_id", "status"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', payment_id='{self.payment_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )
