"""
Webhook ingestor: verifies, parses and dispatches gateway notifications.

Redelivered events need no dedupe table here; the orchestrator's conditional
transitions turn repeats into no-ops.
"""
from __future__ import annotations

from typing import Callable, Mapping, Optional

from application.dtos.payments import CanonicalEvent, WebhookReceipt
from application.ports.payment_gateway import GatewayRegistry
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import Payment, PaymentMethod
from domain.payment.exceptions import PaymentSignatureError


logger = get_logger(__name__)


class WebhookIngestor:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: GatewayRegistry,
        payments: PaymentService,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._payments = payments

    async def _resolve_payment(self, method: PaymentMethod, event: CanonicalEvent) -> Optional[Payment]:
        """Look up by our payment id from event metadata, then by the gateway reference."""
        async with self._uow_factory(readonly=True) as uow:
            if event.payment_id:
                payment = await uow.payment_repository.get_by_id(event.payment_id)
                if payment is not None and payment.method == method:
                    return payment
            if event.external_id:
                return await uow.payment_repository.get_by_external_reference(method, event.external_id)
        return None

    async def ingest(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookReceipt:
        gateway = self._gateways.get(provider)
        if not await gateway.verify_webhook_signature(raw_body, headers):
            logger.warning("webhook_signature_invalid", provider=gateway.provider)
            raise PaymentSignatureError("Invalid webhook signature", provider=gateway.provider)

        event = gateway.parse_webhook_event(raw_body)
        log = logger.bind(
            provider=gateway.provider,
            event_type=event.provider_event_type,
            event_id=event.event_id,
        )
        if event.type == "unhandled":
            log.info("webhook_event_ignored")
            return WebhookReceipt(action="ignored", event_type=event.type)

        payment = await self._resolve_payment(gateway.method, event)
        if payment is None:
            # Acknowledge so the gateway stops retrying foreign or unknown payments
            log.info("webhook_payment_not_found", external_id=event.external_id)
            return WebhookReceipt(action="ignored", event_type=event.type)

        if event.type in {"succeeded", "approved"}:
            action = "confirm"
            outcome = await self._payments.confirm_payment(payment.id)
        elif event.type == "failed":
            action = "fail"
            outcome = await self._payments.fail_payment(
                payment.id, event.failure_reason or "Gateway reported payment failure"
            )
        elif event.type == "canceled":
            action = "cancel"
            outcome = await self._payments.cancel_payment(payment.id, notify_gateway=False)
        else:
            # Refunds start here; the notice settles any whose gateway call timed out
            action = "reconcile_refunds"
            outcome = await self._payments.reconcile_refunds(payment.id)

        log.info(
            "webhook_processed",
            payment_id=payment.id,
            action=action,
            result=outcome.result.value,
            reason=outcome.reason,
        )
        return WebhookReceipt(
            action=action,
            event_type=event.type,
            payment_id=payment.id,
            result=outcome.result.value,
        )
