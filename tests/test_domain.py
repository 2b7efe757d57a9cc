from datetime import datetime, timedelta, timezone

import pytest

from domain.common.exceptions import ConflictException, DomainValidationException
from domain.common.outcome import Outcome, TransitionResult
from domain.payment.entity import Payment, PaymentMethod, PaymentStatus, PaymentType
from domain.payment.service import PaymentDomainService
from domain.subscription.entity import (
    BillingCycle,
    Plan,
    SubscriptionStatus,
    UserSubscription,
)


def _payment(**overrides) -> Payment:
    data = dict(owner_id="u1", amount=2990, currency="brl", method="stripe", type="one_time")
    data.update(overrides)
    return Payment.new(**data)


def test_new_payment_is_pending_and_normalized():
    payment = _payment()
    assert payment.status == PaymentStatus.PENDING
    assert payment.method == PaymentMethod.STRIPE
    assert payment.type == PaymentType.ONE_TIME
    assert payment.currency == "BRL"
    assert payment.refunded_amount == 0
    assert payment.created_at.tzinfo is not None


@pytest.mark.parametrize("amount", [0, -1, 1_000_000_001])
def test_payment_rejects_amount_out_of_range(amount):
    with pytest.raises(DomainValidationException) as exc:
        _payment(amount=amount)
    assert exc.value.field == "amount"


def test_payment_rejects_non_integer_amount():
    with pytest.raises(DomainValidationException):
        _payment(amount=29.9)


def test_payment_rejects_bad_currency():
    with pytest.raises(DomainValidationException) as exc:
        _payment(currency="R$")
    assert exc.value.field == "currency"


def test_refunded_amount_cannot_exceed_amount():
    payment = _payment()
    with pytest.raises(DomainValidationException):
        Payment(**{**payment.__dict__, "refunded_amount": 3000})


def test_state_machine():
    payment = _payment()
    assert payment.can_transition_to(PaymentStatus.COMPLETED)
    assert payment.can_transition_to(PaymentStatus.CANCELLED)
    assert not payment.can_transition_to(PaymentStatus.REFUNDED)

    payment.status = PaymentStatus.COMPLETED
    assert payment.can_transition_to(PaymentStatus.REFUNDED)
    assert not payment.can_transition_to(PaymentStatus.CANCELLED)

    payment.status = PaymentStatus.REFUNDED
    assert payment.is_final_status()


def test_is_subscription_requires_plan():
    assert _payment(type="subscription", plan_id="P1").is_subscription
    assert not _payment(type="subscription").is_subscription
    assert not _payment(plan_id="P1").is_subscription


def test_gateway_status_mapping():
    assert PaymentDomainService.target_status_for("succeeded") == PaymentStatus.COMPLETED
    assert PaymentDomainService.target_status_for("failed") == PaymentStatus.FAILED
    assert PaymentDomainService.target_status_for("canceled") == PaymentStatus.FAILED
    assert PaymentDomainService.target_status_for("pending") is None
    assert PaymentDomainService.target_status_for("requires_action") is None


class TestRefundAmount:
    def _completed(self, refunded: int = 0) -> Payment:
        payment = _payment()
        payment.status = PaymentStatus.COMPLETED
        payment.refunded_amount = refunded
        return payment

    def test_defaults_to_remaining_balance(self):
        outcome = PaymentDomainService.resolve_refund_amount(self._completed(1000), None)
        assert outcome.is_applied
        assert outcome.value == 1990

    def test_exact_remaining_is_allowed(self):
        assert PaymentDomainService.resolve_refund_amount(self._completed(1000), 1990).value == 1990

    def test_over_refund_is_rejected(self):
        outcome = PaymentDomainService.resolve_refund_amount(self._completed(1000), 1991)
        assert outcome.is_rejected

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount_is_a_validation_error(self, amount):
        with pytest.raises(DomainValidationException):
            PaymentDomainService.resolve_refund_amount(self._completed(), amount)

    def test_only_completed_payments_refund(self):
        outcome = PaymentDomainService.resolve_refund_amount(_payment(), 100)
        assert outcome.is_rejected
        assert "pending" in outcome.reason


def test_outcome_unwrap():
    assert Outcome.applied(1).unwrap() == 1
    assert Outcome.already_applied(2).unwrap() == 2
    rejected = Outcome.rejected(3, "nope")
    assert rejected.result is TransitionResult.REJECTED
    with pytest.raises(ConflictException) as exc:
        rejected.unwrap()
    assert exc.value.message == "nope"


@pytest.mark.parametrize(
    "cycle,days",
    [(BillingCycle.MONTHLY, 30), (BillingCycle.ANNUAL, 365), (BillingCycle.WEEKLY, 7)],
)
def test_billing_cycle_interval(cycle, days):
    assert cycle.interval == timedelta(days=days)


def test_plan_price_follows_billing_cycle():
    monthly = Plan(id="P1", name="Pro", monthly_price=2990, monthly_credits=1000)
    annual = Plan(
        id="P2",
        name="Biz",
        monthly_price=9990,
        annual_price=99900,
        monthly_credits=5000,
        billing_cycle=BillingCycle.ANNUAL,
    )
    assert monthly.price == 2990
    assert annual.price == 99900


def test_subscription_start_and_extension():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    plan = Plan(id="P1", name="Pro", monthly_price=2990, monthly_credits=1000)
    sub = UserSubscription.start(owner_id="u1", plan=plan, price_paid=2990, now=now)

    assert sub.status == SubscriptionStatus.ACTIVE
    assert sub.credits_granted == 1000
    assert sub.credits_used == 0
    assert sub.auto_renew is True
    assert sub.current_period_end == now + timedelta(days=30)
    assert sub.next_period_end() == now + timedelta(days=60)
    assert not sub.is_elapsed(now)
    assert sub.is_elapsed(now + timedelta(days=30))
    assert sub.can_cancel()
