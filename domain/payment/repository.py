"""
支付仓储接口 - 定义支付数据访问的抽象接口

所有状态变更都以条件更新（compare-and-set）表达：只有当记录仍处于期望状态时才写入，
返回 None/False 表示条件未命中（其他调用方已先行修改）。
"""
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Optional

from .entity import Payment, PaymentMethod, PaymentStatus, Refund


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        pass

    @abstractmethod
    async def get_by_external_reference(
        self, method: PaymentMethod, external_reference: str
    ) -> Optional[Payment]:
        """根据网关引用ID获取支付"""
        pass

    @abstractmethod
    async def list_by_owner(self, owner_id: str, skip: int = 0, limit: int = 20) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def count_by_owner(self, owner_id: str) -> int:
        """统计用户的支付数量"""
        pass

    @abstractmethod
    async def transition(
        self,
        payment_id: str,
        *,
        from_statuses: Iterable[PaymentStatus],
        to_status: Optional[PaymentStatus] = None,
        **changes: Any,
    ) -> Optional[Payment]:
        """
        条件状态转换：仅当当前状态属于 from_statuses 时写入 to_status 与 changes。

        to_status 为空时只更新字段（例如记录网关引用），状态保持不变。
        条件未命中返回 None。
        """
        pass

    @abstractmethod
    async def reserve_refund(self, payment_id: str, amount: int) -> bool:
        """预占退款金额：status=COMPLETED 且 refunded_amount + amount <= amount 时累加"""
        pass

    @abstractmethod
    async def release_refund(self, payment_id: str, amount: int) -> bool:
        """释放预占的退款金额（网关终态失败时）"""
        pass

    @abstractmethod
    async def mark_fully_refunded(self, payment_id: str) -> Optional[Payment]:
        """已全额退款且无处理中的退款时 COMPLETED -> REFUNDED"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        """根据ID获取退款"""
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: str) -> List[Refund]:
        """获取支付的退款列表"""
        pass

    @abstractmethod
    async def mark_succeeded(self, refund_id: str, provider_refund_id: Optional[str]) -> bool:
        """PENDING -> SUCCEEDED"""
        pass

    @abstractmethod
    async def mark_failed(self, refund_id: str, reason: Optional[str]) -> bool:
        """PENDING -> FAILED"""
        pass
