"""
Payment orchestrator: application service coordinating the payment store,
gateway adapters and the subscription lifecycle.

Every state change is a conditional update on the persisted payment row; gateway
calls never run inside an open write transaction. State-changing use-cases
return an Outcome so callers can tell a no-op from a rejection.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from application.dtos.payments import (
    CreatePaymentIntentRequest,
    CreatePaymentRequest,
    GatewayStatus,
    PaymentIntentDTO,
    PaymentDTO,
)
from application.ports.catalog import PlanCatalog, UserDirectory
from application.ports.payment_gateway import GatewayRegistry, PaymentGateway
from application.services.subscription_service import SubscriptionLifecycleManager
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import DomainValidationException, UserNotFoundException
from domain.common.outcome import Outcome, TransitionResult
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentStatus, PaymentType, Refund, RefundStatus
from domain.payment.events import (
    PaymentCancelled,
    PaymentCompleted,
    PaymentEvent,
    PaymentFailed,
    PaymentRefunded,
)
from domain.payment.exceptions import (
    PaymentGatewayError,
    PaymentNotFoundException,
    PaymentRecoverableError,
    PlanNotFoundException,
)
from domain.payment.service import PaymentDomainService
from domain.subscription.entity import Plan
from shared.codes.payment_codes import CANONICAL_SUCCEEDED


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: GatewayRegistry,
        *,
        plans: PlanCatalog,
        users: UserDirectory,
        subscriptions: SubscriptionLifecycleManager,
        settings: Optional[PaymentSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._plans = plans
        self._users = users
        self._subscriptions = subscriptions
        self._settings = settings or payment_settings

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, payment_id: str) -> Payment:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def _ensure_owner(self, owner_id: str) -> None:
        if not await self._users.exists(owner_id):
            raise UserNotFoundException(owner_id)

    async def _load_plan(self, plan_id: str) -> Plan:
        plan = await self._plans.get_plan(plan_id)
        if plan is None or not plan.is_active:
            raise PlanNotFoundException(plan_id)
        return plan

    def _gateway_for(self, payment: Payment) -> PaymentGateway:
        return self._gateways.get(payment.method)

    @staticmethod
    def _publish(events: List[PaymentEvent]) -> None:
        for event in events:
            logger.info(event.name, **event.to_log())

    async def _transition(
        self,
        payment: Payment,
        target: PaymentStatus,
        domain_service: PaymentDomainService,
        **changes,
    ) -> Outcome[Payment]:
        """PENDING -> target under compare-and-set; a lost race reports the winner's state."""
        rejection = domain_service.transition_rejection(payment, target)
        if rejection:
            return Outcome.rejected(payment, rejection)
        async with self._uow_factory() as uow:
            updated = await uow.payment_repository.transition(
                payment.id,
                from_statuses=[PaymentStatus.PENDING],
                to_status=target,
                **changes,
            )
            if updated is None:
                current = await uow.payment_repository.get_by_id(payment.id)
        if updated is not None:
            return Outcome.applied(updated)
        if current is not None and current.status == target:
            return Outcome.already_applied(current, f"Payment already {target.value}")
        status = current.status.value if current else "unknown"
        return Outcome.rejected(current or payment, f"Cannot transition payment from {status} to {target.value}")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_payment(self, request: CreatePaymentRequest) -> Payment:
        """Persist a PENDING payment; no gateway call."""
        method = self._gateways.resolve(request.method)
        await self._ensure_owner(request.owner_id)
        plan = await self._load_plan(request.plan_id) if request.plan_id else None
        if request.type == PaymentType.SUBSCRIPTION and plan is None:
            raise DomainValidationException("Subscription payments require a plan", field="plan_id")

        payment = Payment.new(
            owner_id=request.owner_id,
            amount=request.amount,
            currency=request.currency or (plan.currency if plan else self._settings.default_currency),
            method=method,
            type=request.type,
            plan_id=request.plan_id,
            metadata=request.metadata,
        )
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)
        return payment

    async def create_payment_intent(self, request: CreatePaymentIntentRequest) -> PaymentIntentDTO:
        """Persist a PENDING payment, then open the gateway-side intent for it."""
        method = self._gateways.resolve(request.method)
        gateway = self._gateways.get(method)
        await self._ensure_owner(request.owner_id)
        plan = await self._load_plan(request.plan_id) if request.plan_id else None

        amount = request.amount if request.amount is not None else plan.price  # type: ignore[union-attr]
        payment = Payment.new(
            owner_id=request.owner_id,
            amount=amount,
            currency=request.currency or (plan.currency if plan else self._settings.default_currency),
            method=method,
            type=PaymentType.SUBSCRIPTION if plan else PaymentType.ONE_TIME,
            plan_id=plan.id if plan else None,
            metadata=request.metadata,
        )
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.create(payment)

        metadata = {"payment_id": payment.id, "owner_id": payment.owner_id}
        if payment.plan_id:
            metadata["plan_id"] = payment.plan_id
        try:
            intent = await gateway.create_intent(
                payment.amount,
                payment.currency,
                metadata,
                return_url=request.success_url or self._settings.checkout.success_url,
                cancel_url=request.cancel_url or self._settings.checkout.cancel_url,
                idempotency_key=f"intent-{payment.id}",
            )
        except PaymentGatewayError as exc:
            # No external reference exists, so there is nothing to resume later
            await self._fail(payment, exc.message)
            raise

        async with self._uow_factory() as uow:
            updated = await uow.payment_repository.transition(
                payment.id,
                from_statuses=[PaymentStatus.PENDING],
                external_reference=intent.external_id,
                gateway_response=intent.raw,
            )
            if updated is None:
                updated = await uow.payment_repository.get_by_id(payment.id)
        logger.info(
            "payment_intent_created",
            payment_id=payment.id,
            method=payment.method.value,
            external_reference=intent.external_id,
            gateway_status=intent.status,
        )
        return PaymentIntentDTO(
            payment=PaymentDTO.from_entity(updated or payment),
            client_secret=intent.client_secret,
            approval_url=intent.approval_url,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def confirm_payment(self, payment_id: str, external_data: Optional[dict] = None) -> Outcome[Payment]:
        """Reconcile a PENDING payment with the gateway; repeated calls are no-ops."""
        payment = await self._load(payment_id)

        if payment.status != PaymentStatus.PENDING:
            if payment.status == PaymentStatus.COMPLETED and payment.is_subscription:
                # Covers a crash between the payment write and the subscription write
                await self._subscriptions.apply_payment(payment)
            return Outcome.already_applied(payment, f"Payment already {payment.status.value}")

        if not payment.external_reference:
            return Outcome.rejected(payment, "Payment has no gateway reference to confirm")
        claimed = (external_data or {}).get("external_reference")
        if claimed and claimed != payment.external_reference:
            return Outcome.rejected(payment, "External reference does not match payment")

        gateway = self._gateway_for(payment)
        try:
            if gateway.two_phase:
                status = await gateway.capture(payment.external_reference)
            else:
                status = await gateway.retrieve_status(payment.external_reference)
        except PaymentRecoverableError:
            logger.warning("payment_confirm_deferred", payment_id=payment.id, method=payment.method.value)
            raise
        except PaymentGatewayError as exc:
            await self._fail(payment, exc.message)
            raise

        return await self._apply_gateway_status(payment, status)

    async def _apply_gateway_status(self, payment: Payment, status: GatewayStatus) -> Outcome[Payment]:
        target = PaymentDomainService.target_status_for(status.status)
        if target is None:
            logger.info("payment_still_pending", payment_id=payment.id, gateway_status=status.status)
            return Outcome.rejected(payment, "Payment is still pending at gateway")
        if target == PaymentStatus.FAILED:
            return await self._fail(
                payment,
                status.failure_reason or f"Gateway reported {status.status}",
                gateway_response=status.raw,
            )

        domain_service = PaymentDomainService()
        outcome = await self._transition(
            payment,
            PaymentStatus.COMPLETED,
            domain_service,
            confirmed_at=_utcnow(),
            gateway_response=status.raw,
        )
        if not outcome.is_applied:
            return outcome

        completed = outcome.value
        domain_service.record(
            PaymentCompleted(
                payment_id=completed.id,
                method=completed.method.value,
                external_reference=completed.external_reference,
            )
        )
        self._publish(domain_service.clear_events())
        if completed.is_subscription:
            await self._subscriptions.apply_payment(completed)
        return outcome

    async def _fail(self, payment: Payment, reason: str, **changes) -> Outcome[Payment]:
        domain_service = PaymentDomainService()
        outcome = await self._transition(
            payment, PaymentStatus.FAILED, domain_service, failure_reason=reason, **changes
        )
        if outcome.is_applied:
            domain_service.record(
                PaymentFailed(
                    payment_id=payment.id,
                    method=payment.method.value,
                    external_reference=payment.external_reference,
                    reason=reason,
                )
            )
            self._publish(domain_service.clear_events())
        return outcome

    async def fail_payment(self, payment_id: str, reason: str) -> Outcome[Payment]:
        """
        Handle a gateway failure notification.

        A failure notice is not final on every gateway (a declined card can be
        retried on the same intent), so the payment only moves to FAILED when the
        gateway itself reports a terminal status. A retry that already succeeded
        completes the payment instead.
        """
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.FAILED:
            return Outcome.already_applied(payment, "Payment already failed")
        if payment.status != PaymentStatus.PENDING or not payment.external_reference:
            return await self._fail(payment, reason)

        # Errors propagate; the gateway redelivers the notification later
        status = await self._gateway_for(payment).retrieve_status(payment.external_reference)
        if PaymentDomainService.target_status_for(status.status) == PaymentStatus.FAILED:
            return await self._fail(payment, status.failure_reason or reason, gateway_response=status.raw)
        if status.status == CANONICAL_SUCCEEDED:
            return await self._apply_gateway_status(payment, status)

        logger.info(
            "payment_failure_not_final",
            payment_id=payment.id,
            gateway_status=status.status,
            reason=status.failure_reason or reason,
        )
        return Outcome.rejected(payment, "Payment is still open at gateway")

    async def cancel_payment(self, payment_id: str, *, notify_gateway: bool = True) -> Outcome[Payment]:
        """PENDING -> CANCELLED, then a best-effort void of the gateway intent."""
        payment = await self._load(payment_id)
        domain_service = PaymentDomainService()
        outcome = await self._transition(
            payment, PaymentStatus.CANCELLED, domain_service, cancelled_at=_utcnow()
        )
        if not outcome.is_applied:
            # Cancelling twice is a conflict, not a no-op
            if outcome.result is TransitionResult.ALREADY_APPLIED:
                return Outcome.rejected(outcome.value, "Payment already cancelled")
            return outcome

        cancelled = outcome.value
        domain_service.record(
            PaymentCancelled(
                payment_id=cancelled.id,
                method=cancelled.method.value,
                external_reference=cancelled.external_reference,
            )
        )
        self._publish(domain_service.clear_events())

        if notify_gateway and cancelled.external_reference:
            try:
                await self._gateway_for(cancelled).cancel(cancelled.external_reference)
            except PaymentGatewayError as exc:
                logger.warning(
                    "gateway_cancel_failed",
                    payment_id=cancelled.id,
                    method=cancelled.method.value,
                    error=exc.message,
                )
        return outcome

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def create_refund(
        self, payment_id: str, amount: Optional[int] = None, reason: Optional[str] = None
    ) -> Outcome[Payment]:
        """
        Refund part or all of a COMPLETED payment.

        The amount is reserved on the payment row before the gateway call. A
        terminal gateway failure releases it; a retryable one keeps it, since the
        refund may have gone through. Refunds left pending by an earlier attempt
        are settled first; when that is all a retry achieves, it reports
        ALREADY_APPLIED instead of opening a new refund.
        """
        payment = await self._load(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            settled = await self.reconcile_refunds(payment.id)
            if settled.is_applied:
                return Outcome.already_applied(settled.value, "Pending refund settled")
            payment = settled.value

        decision = PaymentDomainService.resolve_refund_amount(payment, amount)
        if decision.is_rejected:
            return Outcome.rejected(payment, decision.reason or "Refund not allowed")
        if not payment.external_reference:
            return Outcome.rejected(payment, "Payment has no gateway reference to refund")

        refund_amount = decision.value
        refund = Refund.new(
            payment_id=payment.id, amount=refund_amount, currency=payment.currency, reason=reason
        )
        async with self._uow_factory() as uow:
            reserved = await uow.payment_repository.reserve_refund(payment.id, refund_amount)
            if reserved:
                await uow.refund_repository.create(refund)
            else:
                current = await uow.payment_repository.get_by_id(payment.id)
        if not reserved:
            return Outcome.rejected(
                current or payment, f"Refund amount {refund_amount} exceeds refundable balance"
            )

        return Outcome.applied(await self._submit_refund(payment, refund))

    async def _submit_refund(self, payment: Payment, refund: Refund) -> Payment:
        """Send a reserved refund to the gateway and settle it; the refund id is the idempotency key."""
        gateway = self._gateway_for(payment)
        try:
            result = await gateway.refund(
                payment.external_reference,
                refund.amount,
                payment.currency,
                refund.reason,
                idempotency_key=refund.id,
            )
        except PaymentRecoverableError:
            logger.warning(
                "refund_outcome_unknown",
                payment_id=payment.id,
                refund_id=refund.id,
                amount=refund.amount,
            )
            raise
        except PaymentGatewayError as exc:
            async with self._uow_factory() as uow:
                if await uow.refund_repository.mark_failed(refund.id, exc.message):
                    await uow.payment_repository.release_refund(payment.id, refund.amount)
            logger.warning("refund_failed", payment_id=payment.id, refund_id=refund.id, error=exc.message)
            raise

        async with self._uow_factory() as uow:
            settled = await uow.refund_repository.mark_succeeded(refund.id, result.refund_id)
            fully_refunded = await uow.payment_repository.mark_fully_refunded(payment.id)
            current = fully_refunded or await uow.payment_repository.get_by_id(payment.id)

        if settled:
            domain_service = PaymentDomainService()
            domain_service.record(
                PaymentRefunded(
                    payment_id=payment.id,
                    method=payment.method.value,
                    external_reference=payment.external_reference,
                    refund_id=refund.id,
                    amount=refund.amount,
                    fully_refunded=fully_refunded is not None,
                )
            )
            self._publish(domain_service.clear_events())
        return current or payment

    async def reconcile_refunds(self, payment_id: str) -> Outcome[Payment]:
        """
        Settle refunds whose gateway outcome is unknown.

        Each pending refund is re-sent with its original idempotency key, so the
        gateway returns the refund it already made rather than a second one.
        APPLIED when at least one refund was settled, ALREADY_APPLIED when none
        was pending.
        """
        payment = await self._load(payment_id)
        async with self._uow_factory(readonly=True) as uow:
            refunds = await uow.refund_repository.list_by_payment(payment.id)
        pending = [r for r in refunds if r.status == RefundStatus.PENDING]
        if not pending:
            return Outcome.already_applied(payment, "No pending refunds")

        current = payment
        for refund in pending:
            logger.info("refund_reconcile", payment_id=payment.id, refund_id=refund.id, amount=refund.amount)
            current = await self._submit_refund(payment, refund)
        return Outcome.applied(current)

    async def list_refunds(self, payment_id: str) -> List[Refund]:
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            return await uow.refund_repository.list_by_payment(payment_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: str) -> Payment:
        return await self._load(payment_id)

    async def list_user_payments(self, owner_id: str, limit: int = 20, offset: int = 0) -> Tuple[List[Payment], int]:
        async with self._uow_factory(readonly=True) as uow:
            items = await uow.payment_repository.list_by_owner(owner_id, skip=offset, limit=limit)
            total = await uow.payment_repository.count_by_owner(owner_id)
        return items, total
