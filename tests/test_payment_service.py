import asyncio

import pytest

from application.dtos.payments import CreatePaymentIntentRequest, CreatePaymentRequest
from domain.common.exceptions import ConflictException, DomainValidationException, UserNotFoundException
from domain.common.outcome import TransitionResult
from domain.payment.entity import PaymentStatus, PaymentType, RefundStatus
from domain.payment.exceptions import (
    PaymentNotFoundException,
    PaymentProviderError,
    PaymentRecoverableError,
    PlanNotFoundException,
    UnsupportedPaymentMethodException,
)


async def _intent(payment_service, **overrides):
    data = dict(owner_id="u1", plan_id="P1", method="card-gateway")
    data.update(overrides)
    return await payment_service.create_payment_intent(CreatePaymentIntentRequest(**data))


async def _completed(payment_service, **overrides):
    intent = await _intent(payment_service, **overrides)
    outcome = await payment_service.confirm_payment(intent.payment.id)
    assert outcome.is_applied
    return outcome.value


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_create_payment_persists_pending_without_gateway_call(self, payment_service, card_gateway):
        payment = await payment_service.create_payment(
            CreatePaymentRequest(owner_id="u1", amount=500, currency="usd", method="stripe")
        )
        assert payment.status == PaymentStatus.PENDING
        assert payment.currency == "USD"
        assert payment.external_reference is None
        assert card_gateway.calls == []

    @pytest.mark.asyncio
    async def test_subscription_payment_requires_plan(self, payment_service):
        with pytest.raises(DomainValidationException):
            await payment_service.create_payment(
                CreatePaymentRequest(owner_id="u1", amount=500, method="stripe", type=PaymentType.SUBSCRIPTION)
            )

    @pytest.mark.asyncio
    async def test_unknown_owner_plan_and_method(self, payment_service):
        with pytest.raises(UserNotFoundException):
            await _intent(payment_service, owner_id="ghost")
        with pytest.raises(PlanNotFoundException):
            await _intent(payment_service, plan_id="OLD")
        with pytest.raises(UnsupportedPaymentMethodException):
            await _intent(payment_service, method="pix")


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_intent_uses_plan_price_and_records_reference(self, payment_service, card_gateway):
        intent = await _intent(payment_service)

        assert intent.payment.amount == 2990
        assert intent.payment.currency == "BRL"
        assert intent.payment.type == "subscription"
        assert intent.payment.status == "pending"
        assert intent.payment.external_reference == "pi_123"
        assert intent.client_secret == "pi_123_secret"

        name, amount, currency, metadata, key = card_gateway.calls[0]
        assert (name, amount, currency) == ("create_intent", 2990, "BRL")
        assert metadata == {"payment_id": intent.payment.id, "owner_id": "u1", "plan_id": "P1"}
        assert key == f"intent-{intent.payment.id}"

    @pytest.mark.asyncio
    async def test_one_time_intent_with_amount(self, payment_service):
        intent = await _intent(payment_service, plan_id=None, amount=1500)
        assert intent.payment.type == "one_time"
        assert intent.payment.plan_id is None

    @pytest.mark.asyncio
    async def test_wallet_intent_returns_approval_url(self, payment_service):
        intent = await _intent(payment_service, method="wallet-gateway")
        assert intent.payment.method == "paypal"
        assert intent.approval_url.endswith("/pi_123")

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_payment_failed(self, payment_service, card_gateway):
        card_gateway.intent_error = PaymentProviderError("card declined", provider="stripe")
        with pytest.raises(PaymentProviderError):
            await _intent(payment_service)

        payments, total = await payment_service.list_user_payments("u1")
        assert total == 1
        assert payments[0].status == PaymentStatus.FAILED
        assert payments[0].failure_reason == "card declined"


class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirm_completes_and_grants_subscription(self, payment_service, subscriptions):
        payment = await _completed(payment_service)

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.confirmed_at is not None
        subs = await subscriptions.list_user_subscriptions("u1")
        assert len(subs) == 1
        assert subs[0].plan_id == "P1"
        assert subs[0].credits_granted == 1000

    @pytest.mark.asyncio
    async def test_concurrent_confirm_applies_once(self, payment_service, card_gateway, subscriptions):
        intent = await _intent(payment_service)
        card_gateway.delay = 0.05

        first, second = await asyncio.gather(
            payment_service.confirm_payment(intent.payment.id),
            payment_service.confirm_payment(intent.payment.id),
        )

        results = sorted([first.result, second.result], key=lambda r: r.value)
        assert results == [TransitionResult.ALREADY_APPLIED, TransitionResult.APPLIED]
        assert len(await subscriptions.list_user_subscriptions("u1")) == 1

    @pytest.mark.asyncio
    async def test_confirm_again_is_a_noop(self, payment_service, card_gateway, subscriptions):
        payment = await _completed(payment_service)
        calls = len(card_gateway.calls)

        outcome = await payment_service.confirm_payment(payment.id)

        assert outcome.result is TransitionResult.ALREADY_APPLIED
        assert len(card_gateway.calls) == calls
        assert len(await subscriptions.list_user_subscriptions("u1")) == 1

    @pytest.mark.asyncio
    async def test_pending_at_gateway_is_rejected(self, payment_service, card_gateway):
        intent = await _intent(payment_service)
        card_gateway.status = "requires_action"

        outcome = await payment_service.confirm_payment(intent.payment.id)

        assert outcome.is_rejected
        assert (await payment_service.get_payment(intent.payment.id)).status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_gateway_failure_status_marks_failed(self, payment_service, card_gateway):
        intent = await _intent(payment_service)
        card_gateway.status = "failed"
        card_gateway.failure_reason = "insufficient_funds"

        outcome = await payment_service.confirm_payment(intent.payment.id)

        assert outcome.is_applied
        assert outcome.value.status == PaymentStatus.FAILED
        assert outcome.value.failure_reason == "insufficient_funds"

    @pytest.mark.asyncio
    async def test_retryable_error_leaves_payment_pending(self, payment_service, card_gateway):
        intent = await _intent(payment_service)
        card_gateway.status_error = PaymentRecoverableError("timeout", provider="stripe")

        with pytest.raises(PaymentRecoverableError):
            await payment_service.confirm_payment(intent.payment.id)
        assert (await payment_service.get_payment(intent.payment.id)).status == PaymentStatus.PENDING

        card_gateway.status_error = None
        outcome = await payment_service.confirm_payment(intent.payment.id)
        assert outcome.is_applied

    @pytest.mark.asyncio
    async def test_terminal_error_marks_failed(self, payment_service, card_gateway):
        intent = await _intent(payment_service)
        card_gateway.status_error = PaymentProviderError("no such intent", provider="stripe")

        with pytest.raises(PaymentProviderError):
            await payment_service.confirm_payment(intent.payment.id)
        assert (await payment_service.get_payment(intent.payment.id)).status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_two_phase_gateway_captures(self, payment_service, wallet_gateway):
        intent = await _intent(payment_service, method="wallet-gateway")

        outcome = await payment_service.confirm_payment(intent.payment.id)

        assert outcome.is_applied
        assert wallet_gateway.count("capture") == 1
        assert wallet_gateway.count("retrieve_status") == 0

    @pytest.mark.asyncio
    async def test_mismatched_external_reference_is_rejected(self, payment_service):
        intent = await _intent(payment_service)
        outcome = await payment_service.confirm_payment(intent.payment.id, {"external_reference": "pi_other"})
        assert outcome.is_rejected

    @pytest.mark.asyncio
    async def test_payment_without_reference_cannot_confirm(self, payment_service):
        payment = await payment_service.create_payment(
            CreatePaymentRequest(owner_id="u1", amount=500, method="stripe")
        )
        outcome = await payment_service.confirm_payment(payment.id)
        assert outcome.is_rejected

    @pytest.mark.asyncio
    async def test_unknown_payment(self, payment_service):
        with pytest.raises(PaymentNotFoundException):
            await payment_service.confirm_payment("missing")


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending_voids_gateway_intent(self, payment_service, card_gateway):
        intent = await _intent(payment_service)

        outcome = await payment_service.cancel_payment(intent.payment.id)

        assert outcome.is_applied
        assert outcome.value.status == PaymentStatus.CANCELLED
        assert outcome.value.cancelled_at is not None
        assert card_gateway.count("cancel") == 1

    @pytest.mark.asyncio
    async def test_cancel_twice_is_rejected(self, payment_service):
        intent = await _intent(payment_service)
        await payment_service.cancel_payment(intent.payment.id)

        outcome = await payment_service.cancel_payment(intent.payment.id)

        assert outcome.is_rejected
        with pytest.raises(ConflictException):
            outcome.unwrap()

    @pytest.mark.asyncio
    async def test_cancel_completed_is_rejected(self, payment_service):
        payment = await _completed(payment_service)
        outcome = await payment_service.cancel_payment(payment.id)
        assert outcome.is_rejected
        assert (await payment_service.get_payment(payment.id)).status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_gateway_cancel_failure_keeps_local_cancel(self, payment_service, card_gateway):
        intent = await _intent(payment_service)
        card_gateway.cancel_error = PaymentRecoverableError("timeout", provider="stripe")

        outcome = await payment_service.cancel_payment(intent.payment.id)

        assert outcome.is_applied
        assert (await payment_service.get_payment(intent.payment.id)).status == PaymentStatus.CANCELLED


class TestRefund:
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(self, payment_service, card_gateway):
        payment = await _completed(payment_service)

        partial = await payment_service.create_refund(payment.id, 1000)
        assert partial.is_applied
        assert partial.value.status == PaymentStatus.COMPLETED
        assert partial.value.refunded_amount == 1000

        full = await payment_service.create_refund(payment.id)
        assert full.is_applied
        assert full.value.status == PaymentStatus.REFUNDED
        assert full.value.refunded_amount == 2990

        again = await payment_service.create_refund(payment.id, 1)
        assert again.is_rejected
        with pytest.raises(ConflictException):
            again.unwrap()

        refunds = await payment_service.list_refunds(payment.id)
        assert [r.amount for r in refunds] == [1000, 1990]
        assert all(r.status == RefundStatus.SUCCEEDED for r in refunds)
        keys = [call[3] for call in card_gateway.calls if call[0] == "refund"]
        assert keys == [r.id for r in refunds]

    @pytest.mark.asyncio
    async def test_over_refund_is_rejected_without_change(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        await payment_service.create_refund(payment.id, 1000)

        outcome = await payment_service.create_refund(payment.id, 2000)

        assert outcome.is_rejected
        assert (await payment_service.get_payment(payment.id)).refunded_amount == 1000
        assert card_gateway.count("refund") == 1

    @pytest.mark.asyncio
    async def test_non_positive_refund_is_invalid(self, payment_service):
        payment = await _completed(payment_service)
        with pytest.raises(DomainValidationException):
            await payment_service.create_refund(payment.id, 0)

    @pytest.mark.asyncio
    async def test_refund_requires_completed_payment(self, payment_service):
        intent = await _intent(payment_service)
        outcome = await payment_service.create_refund(intent.payment.id, 100)
        assert outcome.is_rejected

    @pytest.mark.asyncio
    async def test_terminal_refund_failure_releases_reservation(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        card_gateway.refund_error = PaymentProviderError("charge disputed", provider="stripe")

        with pytest.raises(PaymentProviderError):
            await payment_service.create_refund(payment.id, 1000)

        stored = await payment_service.get_payment(payment.id)
        assert stored.refunded_amount == 0
        refunds = await payment_service.list_refunds(payment.id)
        assert refunds[0].status == RefundStatus.FAILED
        assert refunds[0].failure_reason == "charge disputed"

    @pytest.mark.asyncio
    async def test_retryable_refund_failure_keeps_reservation(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        card_gateway.refund_error = PaymentRecoverableError("timeout", provider="stripe")

        with pytest.raises(PaymentRecoverableError):
            await payment_service.create_refund(payment.id)

        stored = await payment_service.get_payment(payment.id)
        assert stored.refunded_amount == 2990
        assert stored.status == PaymentStatus.COMPLETED
        refunds = await payment_service.list_refunds(payment.id)
        assert refunds[0].status == RefundStatus.PENDING

    @pytest.mark.asyncio
    async def test_retry_after_timeout_settles_pending_refund(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        card_gateway.refund_error = PaymentRecoverableError("timeout", provider="stripe")
        with pytest.raises(PaymentRecoverableError):
            await payment_service.create_refund(payment.id)
        card_gateway.refund_error = None

        retried = await payment_service.create_refund(payment.id)

        assert retried.result is TransitionResult.ALREADY_APPLIED
        assert retried.value.status == PaymentStatus.REFUNDED
        refunds = await payment_service.list_refunds(payment.id)
        assert len(refunds) == 1
        assert refunds[0].status == RefundStatus.SUCCEEDED
        assert refunds[0].provider_refund_id == "re_2"
        keys = [call[3] for call in card_gateway.calls if call[0] == "refund"]
        assert keys == [refunds[0].id, refunds[0].id]

    @pytest.mark.asyncio
    async def test_settled_partial_refund_leaves_balance_refundable(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        card_gateway.refund_error = PaymentRecoverableError("timeout", provider="stripe")
        with pytest.raises(PaymentRecoverableError):
            await payment_service.create_refund(payment.id, 1000)
        card_gateway.refund_error = None

        settled = await payment_service.reconcile_refunds(payment.id)
        nothing_pending = await payment_service.reconcile_refunds(payment.id)
        rest = await payment_service.create_refund(payment.id)

        assert settled.is_applied
        assert settled.value.status == PaymentStatus.COMPLETED
        assert nothing_pending.result is TransitionResult.ALREADY_APPLIED
        assert rest.is_applied
        assert rest.value.status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_reconcile_releases_refund_the_gateway_rejects(self, payment_service, card_gateway):
        payment = await _completed(payment_service)
        card_gateway.refund_error = PaymentRecoverableError("timeout", provider="stripe")
        with pytest.raises(PaymentRecoverableError):
            await payment_service.create_refund(payment.id)
        card_gateway.refund_error = PaymentProviderError("charge disputed", provider="stripe")

        with pytest.raises(PaymentProviderError):
            await payment_service.reconcile_refunds(payment.id)

        stored = await payment_service.get_payment(payment.id)
        assert stored.status == PaymentStatus.COMPLETED
        assert stored.refunded_amount == 0
        refunds = await payment_service.list_refunds(payment.id)
        assert refunds[0].status == RefundStatus.FAILED



@pytest.mark.asyncio
async def test_list_user_payments_pages(payment_service):
    for amount in (100, 200, 300):
        await payment_service.create_payment(CreatePaymentRequest(owner_id="u1", amount=amount, method="stripe"))

    items, total = await payment_service.list_user_payments("u1", limit=2, offset=0)
    assert total == 3
    assert len(items) == 2
    other, other_total = await payment_service.list_user_payments("u2")
    assert other == [] and other_total == 0
