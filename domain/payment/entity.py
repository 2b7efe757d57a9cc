"""
支付领域实体 - 支付聚合根
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


MAX_AMOUNT_MINOR = 1_000_000_000
DEFAULT_CURRENCY = "BRL"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"         # 待支付
    COMPLETED = "completed"     # 支付成功（部分退款仍保持该状态）
    FAILED = "failed"           # 支付失败
    CANCELLED = "cancelled"     # 已取消
    REFUNDED = "refunded"       # 已全额退款


class PaymentMethod(str, Enum):
    """支付方式，与网关注册表的 key 一一对应"""
    STRIPE = "stripe"   # card-gateway
    PAYPAL = "paypal"   # wallet-gateway


class PaymentType(str, Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# 状态机：允许的状态转换
ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区（SQLite 读出的时间不带时区）"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _normalize_currency(currency: str) -> str:
    code = (currency or "").upper()
    if len(code) != 3 or not code.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return code


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 金额为整数最小货币单位，范围 1..1_000_000_000
    2. 状态转换必须遵循状态机（见 ALLOWED_TRANSITIONS）
    3. 0 <= 已退款金额 <= 支付金额
    4. 调用网关确认/取消/退款前必须已有 external_reference
    5. 支付记录永不删除
    """

    id: str
    owner_id: str
    amount: int
    currency: str
    method: PaymentMethod
    type: PaymentType
    status: PaymentStatus = PaymentStatus.PENDING
    plan_id: Optional[str] = None

    external_reference: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    refunded_amount: int = 0
    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    # 时间戳
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        self.method = PaymentMethod(self.method)
        self.type = PaymentType(self.type)
        self.status = PaymentStatus(self.status)
        self.currency = _normalize_currency(self.currency)
        self._validate_amount()
        self._validate_refunded_amount()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.confirmed_at = _ensure_utc(self.confirmed_at)
        self.cancelled_at = _ensure_utc(self.cancelled_at)
        if self.metadata is None:
            self.metadata = {}

    @classmethod
    def new(
        cls,
        *,
        owner_id: str,
        amount: int,
        currency: str,
        method: PaymentMethod | str,
        type: PaymentType | str,
        plan_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> "Payment":
        """创建一笔新的 PENDING 支付（尚未持久化）"""
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            amount=amount,
            currency=currency,
            method=method,
            type=type,
            status=PaymentStatus.PENDING,
            plan_id=plan_id,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    def _validate_amount(self) -> None:
        """业务规则：金额必须为 1..MAX_AMOUNT_MINOR 的整数"""
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise DomainValidationException(f"支付金额必须为整数: {self.amount!r}", field="amount")
        if self.amount <= 0 or self.amount > MAX_AMOUNT_MINOR:
            raise DomainValidationException(f"支付金额超出范围: {self.amount}", field="amount")

    def _validate_refunded_amount(self) -> None:
        if self.refunded_amount < 0 or self.refunded_amount > self.amount:
            raise DomainValidationException(
                f"已退款金额 {self.refunded_amount} 超出支付金额 {self.amount}",
                field="refunded_amount",
            )

    @property
    def remaining_refundable(self) -> int:
        """剩余可退款金额"""
        return self.amount - self.refunded_amount

    @property
    def is_subscription(self) -> bool:
        return self.type == PaymentType.SUBSCRIPTION and self.plan_id is not None

    def can_transition_to(self, target: PaymentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def is_final_status(self) -> bool:
        """检查是否为终态"""
        return not ALLOWED_TRANSITIONS[self.status]


@dataclass
class Refund:
    """
    退款实体 - Payment 聚合的一部分

    退款 id 同时作为网关幂等键；同一笔支付可以多次部分退款。
    """

    id: str
    payment_id: str
    amount: int
    currency: str
    status: RefundStatus = RefundStatus.PENDING
    reason: Optional[str] = None
    provider_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise DomainValidationException(f"退款金额必须大于0: {self.amount}", field="amount")
        self.status = RefundStatus(self.status)
        self.currency = _normalize_currency(self.currency)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @classmethod
    def new(cls, *, payment_id: str, amount: int, currency: str, reason: Optional[str] = None) -> "Refund":
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            payment_id=payment_id,
            amount=amount,
            currency=currency,
            reason=reason,
            created_at=now,
            updated_at=now,
        )
