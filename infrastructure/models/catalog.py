"""
套餐与用户只读模型

两张表由外部模块维护，本服务只读取价格/额度与用户存在性
"""
from sqlalchemy import BigInteger, Boolean, Column, DateTime, Integer, String
from datetime import datetime, timezone

from .base import Base


class PlanModel(Base):
    __tablename__ = "plans"

    id = Column(String(64), primary_key=True)
    name = Column(String(100), nullable=False, comment="套餐名称")
    slug = Column(String(100), nullable=True, unique=True, comment="套餐标识")
    monthly_price = Column(BigInteger, nullable=False, comment="月价格（最小货币单位）")
    annual_price = Column(BigInteger, nullable=True, comment="年价格（最小货币单位）")
    monthly_credits = Column(Integer, nullable=False, default=0, comment="每期额度")
    billing_cycle = Column(String(16), nullable=False, default="monthly", comment="计费周期")
    currency = Column(String(3), nullable=False, default="BRL", comment="货币代码")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否上架")
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    def __repr__(self):
        return f"<PlanModel(id='{self.id}', name='{self.name}', monthly_price={self.monthly_price})>"


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    email = Column(String(100), nullable=True, unique=True, comment="邮箱")
    is_active = Column(Boolean, nullable=False, default=True, comment="是否激活")
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    def __repr__(self):
        return f"<UserModel(id='{self.id}', email='{self.email}')>"
