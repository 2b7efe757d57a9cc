"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态变更全部为条件 UPDATE（WHERE id = ? AND status IN (...)），通过 rowcount
判断是否命中，不做“先读后写”。
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    Refund,
    RefundStatus,
)
from domain.payment.repository import PaymentRepository, RefundRepository
from infrastructure.models.payment import PaymentModel, RefundModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _column_values(changes: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key, value in changes.items():
        if key == "metadata":
            key = "extra_metadata"
        values[key] = value.value if isinstance(value, Enum) else value
    return values


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            owner_id=model.owner_id,
            plan_id=model.plan_id,
            amount=int(model.amount),
            currency=model.currency,
            method=PaymentMethod(model.method),
            type=model.type,
            status=PaymentStatus(model.status),
            external_reference=model.external_reference,
            gateway_response=model.gateway_response,
            refunded_amount=int(model.refunded_amount or 0),
            failure_reason=model.failure_reason,
            metadata=model.extra_metadata or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
            confirmed_at=model.confirmed_at,
            cancelled_at=model.cancelled_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            owner_id=entity.owner_id,
            plan_id=entity.plan_id,
            amount=entity.amount,
            currency=entity.currency,
            method=entity.method.value,
            type=entity.type.value,
            status=entity.status.value,
            external_reference=entity.external_reference,
            gateway_response=entity.gateway_response,
            refunded_amount=entity.refunded_amount,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            confirmed_at=entity.confirmed_at,
            cancelled_at=entity.cancelled_at,
        )

    async def _reload(self, payment_id: str) -> Optional[Payment]:
        # 条件更新绕过了 identity map，需要强制刷新
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            owner_id=db_payment.owner_id,
            method=db_payment.method,
            amount=db_payment.amount,
            currency=db_payment.currency,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._reload(payment_id)

    async def get_by_external_reference(
        self, method: PaymentMethod, external_reference: str
    ) -> Optional[Payment]:
        """根据网关引用ID获取支付"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(
                PaymentModel.method == PaymentMethod(method).value,
                PaymentModel.external_reference == external_reference,
            )
            .order_by(PaymentModel.created_at.desc())
            .limit(1)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_by_owner(self, owner_id: str, skip: int = 0, limit: int = 20) -> List[Payment]:
        """获取用户的支付列表"""
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.owner_id == owner_id)
            .order_by(PaymentModel.created_at.desc(), PaymentModel.id)
            .offset(skip)
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_by_owner(self, owner_id: str) -> int:
        """统计用户的支付数量"""
        result = await self.session.execute(
            select(func.count(PaymentModel.id)).where(PaymentModel.owner_id == owner_id)
        )
        return int(result.scalar() or 0)

    async def transition(
        self,
        payment_id: str,
        *,
        from_statuses: Iterable[PaymentStatus],
        to_status: Optional[PaymentStatus] = None,
        **changes: Any,
    ) -> Optional[Payment]:
        """条件状态转换，未命中返回 None"""
        expected = [PaymentStatus(s).value for s in from_statuses]
        values = _column_values(changes)
        if to_status is not None:
            values["status"] = PaymentStatus(to_status).value
        values["updated_at"] = datetime.now(timezone.utc)

        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.status.in_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "payment_transition_skipped",
                payment_id=payment_id,
                expected=expected,
                target=values.get("status"),
            )
            return None

        logger.info(
            "payment_transitioned",
            payment_id=payment_id,
            from_statuses=expected,
            to_status=values.get("status"),
        )
        return await self._reload(payment_id)

    async def reserve_refund(self, payment_id: str, amount: int) -> bool:
        """预占退款金额"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.COMPLETED.value,
                PaymentModel.refunded_amount + amount <= PaymentModel.amount,
            )
            .values(
                refunded_amount=PaymentModel.refunded_amount + amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        reserved = result.rowcount == 1
        logger.info("refund_reserve", payment_id=payment_id, amount=amount, reserved=reserved)
        return reserved

    async def release_refund(self, payment_id: str, amount: int) -> bool:
        """释放预占的退款金额"""
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.COMPLETED.value,
                PaymentModel.refunded_amount >= amount,
            )
            .values(
                refunded_amount=PaymentModel.refunded_amount - amount,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        logger.info("refund_release", payment_id=payment_id, amount=amount, released=released)
        return released

    async def mark_fully_refunded(self, payment_id: str) -> Optional[Payment]:
        """COMPLETED -> REFUNDED：已全额退款且没有处理中的退款"""
        pending_refund = exists().where(
            RefundModel.payment_id == PaymentModel.id,
            RefundModel.status == RefundStatus.PENDING.value,
        )
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.status == PaymentStatus.COMPLETED.value,
                PaymentModel.refunded_amount == PaymentModel.amount,
                ~pending_refund,
            )
            .values(status=PaymentStatus.REFUNDED.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        logger.info("payment_fully_refunded", payment_id=payment_id)
        return await self._reload(payment_id)


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            payment_id=model.payment_id,
            amount=int(model.amount),
            currency=model.currency,
            status=RefundStatus(model.status),
            reason=model.reason,
            provider_refund_id=model.provider_refund_id,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, refund: Refund) -> Refund:
        """创建退款记录"""
        db_refund = RefundModel(
            id=refund.id,
            payment_id=refund.payment_id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status.value,
            reason=refund.reason,
            provider_refund_id=refund.provider_refund_id,
            failure_reason=refund.failure_reason,
            created_at=refund.created_at,
            updated_at=refund.updated_at,
        )
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)
        logger.info(
            "refund_created",
            refund_id=db_refund.id,
            payment_id=db_refund.payment_id,
            amount=db_refund.amount,
        )
        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.id == refund_id)
            .execution_options(populate_existing=True)
        )
        db_refund = result.scalar_one_or_none()
        return self._to_entity(db_refund) if db_refund else None

    async def list_by_payment(self, payment_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.payment_id == payment_id)
            .order_by(RefundModel.created_at, RefundModel.id)
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def _finish(self, refund_id: str, status: RefundStatus, **values: Any) -> bool:
        result = await self.session.execute(
            update(RefundModel)
            .where(RefundModel.id == refund_id, RefundModel.status == RefundStatus.PENDING.value)
            .values(status=status.value, updated_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_succeeded(self, refund_id: str, provider_refund_id: Optional[str]) -> bool:
        return await self._finish(
            refund_id, RefundStatus.SUCCEEDED, provider_refund_id=provider_refund_id
        )

    async def mark_failed(self, refund_id: str, reason: Optional[str]) -> bool:
        return await self._finish(refund_id, RefundStatus.FAILED, failure_reason=reason)
