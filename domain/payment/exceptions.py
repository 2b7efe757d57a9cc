"""
支付相关业务异常。

网关错误分为两类：
- PaymentProviderError: 终态错误（拒付、4xx），支付可标记为 FAILED
- PaymentRecoverableError: 可重试错误（超时、网络、限流、5xx），支付保持 PENDING
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException, ConflictException, NotFoundException
from shared.codes.payment_codes import PaymentCode


class PaymentNotFoundException(NotFoundException):
    def __init__(self, payment_id: str):
        super().__init__("Payment", payment_id, code=PaymentCode.PAYMENT_NOT_FOUND)


class SubscriptionNotFoundException(NotFoundException):
    def __init__(self, subscription_id: str):
        super().__init__("Subscription", subscription_id, code=PaymentCode.SUBSCRIPTION_NOT_FOUND)


class PlanNotFoundException(NotFoundException):
    def __init__(self, plan_id: str):
        super().__init__("Plan", plan_id, code=PaymentCode.PLAN_NOT_FOUND)


class UnsupportedPaymentMethodException(NotFoundException):
    """注册表中没有对应的网关适配器"""

    def __init__(self, method: str):
        super().__init__("Payment gateway", method, code=PaymentCode.UNSUPPORTED_METHOD)


class SubscriptionConflictException(ConflictException):
    """并发写入订阅（版本冲突或唯一索引冲突）"""

    def __init__(self, message: str = "Concurrent subscription update"):
        super().__init__(message, code=PaymentCode.PAYMENT_CONFLICT)


class PaymentGatewayError(BusinessException):
    """网关错误基类"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: int,
        error_type: str,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )


class PaymentProviderError(PaymentGatewayError):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_ERROR,
            error_type="PaymentProviderError",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class PaymentRecoverableError(PaymentGatewayError):
    retryable = True

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            message,
            code=PaymentCode.PROVIDER_RECOVERABLE,
            error_type="PaymentRecoverableError",
            provider=provider,
            provider_code=provider_code,
            details=details,
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )
