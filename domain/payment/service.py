"""
支付领域服务 - 纯业务规则（不做 IO）

职责：
1. 网关规范状态到支付状态的映射
2. 状态转换合法性判断
3. 退款金额校验
4. 领域事件收集
"""
from __future__ import annotations

from typing import List, Optional

from domain.common.exceptions import DomainValidationException
from domain.common.outcome import Outcome
from shared.codes.payment_codes import (
    CANONICAL_CANCELED,
    CANONICAL_FAILED,
    CANONICAL_SUCCEEDED,
)

from .entity import Payment, PaymentStatus
from .events import PaymentEvent


# 网关规范状态 -> 支付目标状态；pending / requires_action 不产生转换
GATEWAY_STATUS_TO_PAYMENT = {
    CANONICAL_SUCCEEDED: PaymentStatus.COMPLETED,
    CANONICAL_FAILED: PaymentStatus.FAILED,
    CANONICAL_CANCELED: PaymentStatus.FAILED,
}


class PaymentDomainService:
    """支付领域服务"""

    def __init__(self) -> None:
        self.events: List[PaymentEvent] = []  # 领域事件收集

    @staticmethod
    def target_status_for(gateway_status: str) -> Optional[PaymentStatus]:
        return GATEWAY_STATUS_TO_PAYMENT.get(gateway_status)

    @staticmethod
    def transition_rejection(payment: Payment, target: PaymentStatus) -> Optional[str]:
        """返回非法转换的原因；合法时返回 None"""
        if payment.can_transition_to(target):
            return None
        return f"Cannot transition payment from {payment.status.value} to {target.value}"

    @staticmethod
    def resolve_refund_amount(payment: Payment, requested: Optional[int]) -> Outcome[int]:
        """
        计算退款金额

        业务规则：
        1. 只有 COMPLETED 的支付才能退款（否则 Rejected）
        2. 未指定金额时默认退剩余全部
        3. 金额 <= 0 为参数错误
        4. 金额超过剩余可退金额为 Rejected
        """
        if requested is not None and requested <= 0:
            raise DomainValidationException(
                f"退款金额必须大于0: {requested}", field="amount"
            )
        if payment.status != PaymentStatus.COMPLETED:
            return Outcome.rejected(0, f"Cannot refund payment in status {payment.status.value}")
        remaining = payment.remaining_refundable
        amount = remaining if requested is None else requested
        if amount <= 0:
            return Outcome.rejected(0, "Payment has no refundable balance")
        if amount > remaining:
            return Outcome.rejected(
                0, f"Refund amount {amount} exceeds refundable balance {remaining}"
            )
        return Outcome.applied(amount)

    def record(self, event: PaymentEvent) -> None:
        self.events.append(event)

    def clear_events(self) -> List[PaymentEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events
