import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from domain.payment.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.external.payments.stripe_client import StripeClient


WEBHOOK_SECRET = "whsec_test"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


class FakeStripe:
    """Stands in for stripe.StripeClient; records params and replays canned objects."""

    def __init__(self):
        self.intent = {
            "id": "pi_123",
            "object": "payment_intent",
            "status": "requires_payment_method",
            "amount": 2990,
            "currency": "brl",
            "client_secret": "pi_123_secret_abc",
        }
        self.refund_object = {"id": "re_1", "status": "succeeded", "amount": 1000}
        self.error = None
        self.calls = []
        self.v1 = SimpleNamespace(
            payment_intents=SimpleNamespace(
                create=self._record("create", lambda: self.intent),
                retrieve=self._record("retrieve", lambda: self.intent),
                cancel=self._record("cancel", lambda: {**self.intent, "status": "canceled"}),
            ),
            refunds=SimpleNamespace(create=self._record("refund", lambda: self.refund_object)),
        )

    def _record(self, name, result):
        def call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            if self.error is not None:
                raise self.error
            return result()

        return call


@pytest.fixture
def sdk():
    return FakeStripe()


@pytest.fixture
def client(sdk):
    return StripeClient(secret_key=None, webhook_secret=WEBHOOK_SECRET, sdk_client=sdk)


def test_requires_secret_key_without_sdk_client():
    with pytest.raises(RuntimeError):
        StripeClient(secret_key=None)


@pytest.mark.asyncio
async def test_create_intent_passes_idempotency_key_and_string_metadata(client, sdk):
    intent = await client.create_intent(
        2990, "BRL", {"payment_id": "p1", "owner_id": 42}, idempotency_key="intent-p1"
    )

    assert intent.external_id == "pi_123"
    assert intent.client_secret == "pi_123_secret_abc"
    assert intent.status == "requires_action"
    _, _, kwargs = sdk.calls[0]
    assert kwargs["params"]["amount"] == 2990
    assert kwargs["params"]["currency"] == "brl"
    assert kwargs["params"]["metadata"] == {"payment_id": "p1", "owner_id": "42"}
    assert kwargs["options"] == {"idempotency_key": "intent-p1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("succeeded", "succeeded"),
        ("processing", "pending"),
        ("requires_action", "requires_action"),
        ("canceled", "canceled"),
        ("something_new", "pending"),
    ],
)
async def test_retrieve_status_mapping(client, sdk, provider_status, expected):
    sdk.intent["status"] = provider_status
    status = await client.retrieve_status("pi_123")
    assert status.status == expected
    assert status.raw["id"] == "pi_123"


@pytest.mark.asyncio
async def test_declined_attempt_stays_open_for_retry(client, sdk):
    sdk.intent["last_payment_error"] = {"message": "Your card was declined."}

    status = await client.retrieve_status("pi_123")

    assert status.status == "requires_action"
    assert status.failure_reason == "Your card was declined."


@pytest.mark.asyncio
async def test_canceled_intent_is_terminal(client, sdk):
    sdk.intent.update(status="canceled", cancellation_reason="abandoned")

    status = await client.retrieve_status("pi_123")

    assert status.status == "canceled"
    assert status.failure_reason == "abandoned"


@pytest.mark.asyncio
async def test_capture_is_a_status_read(client, sdk):
    sdk.intent["status"] = "succeeded"
    assert (await client.capture("pi_123")).status == "succeeded"
    assert [c[0] for c in sdk.calls] == ["retrieve"]


@pytest.mark.asyncio
async def test_refund(client, sdk):
    refund = await client.refund("pi_123", 1000, "BRL", "requested", idempotency_key="r1")

    assert refund.refund_id == "re_1"
    _, _, kwargs = sdk.calls[0]
    assert kwargs["params"]["payment_intent"] == "pi_123"
    assert kwargs["params"]["amount"] == 1000
    assert kwargs["options"] == {"idempotency_key": "r1"}


@pytest.mark.asyncio
async def test_failed_refund_is_a_provider_error(client, sdk):
    sdk.refund_object = {"id": "re_2", "status": "failed", "failure_reason": "expired_or_canceled_card"}
    with pytest.raises(PaymentProviderError):
        await client.refund("pi_123", 1000, "BRL")


@pytest.mark.asyncio
async def test_connection_errors_are_recoverable(client, sdk):
    sdk.error = stripe.APIConnectionError("network down")
    with pytest.raises(PaymentRecoverableError):
        await client.retrieve_status("pi_123")


@pytest.mark.asyncio
async def test_card_errors_are_terminal(client, sdk):
    sdk.error = stripe.CardError("Your card was declined.", "card", "card_declined")
    with pytest.raises(PaymentProviderError) as exc:
        await client.create_intent(2990, "BRL", {})
    assert exc.value.provider_code == "card_declined"


@pytest.mark.asyncio
async def test_verify_webhook_signature(client):
    payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"})

    assert await client.verify_webhook_signature(payload.encode(), {"Stripe-Signature": _sign(payload)})
    assert not await client.verify_webhook_signature(
        payload.encode(), {"Stripe-Signature": _sign(payload, secret="whsec_other")}
    )
    assert not await client.verify_webhook_signature(
        payload.encode(), {"Stripe-Signature": _sign(payload, timestamp=int(time.time()) - 3600)}
    )
    assert not await client.verify_webhook_signature(payload.encode(), {"Stripe-Signature": "garbage"})
    assert not await client.verify_webhook_signature(payload.encode(), {})


@pytest.mark.asyncio
async def test_signature_requires_configured_secret(sdk):
    client = StripeClient(secret_key=None, sdk_client=sdk)
    payload = "{}"
    assert not await client.verify_webhook_signature(payload.encode(), {"stripe-signature": _sign(payload)})


def test_parse_payment_intent_event(client):
    body = json.dumps(
        {
            "id": "evt_1",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_123",
                    "object": "payment_intent",
                    "metadata": {"payment_id": "p1"},
                    "last_payment_error": {"message": "declined"},
                }
            },
        }
    ).encode()

    event = client.parse_webhook_event(body)

    assert event.type == "failed"
    assert event.external_id == "pi_123"
    assert event.payment_id == "p1"
    assert event.failure_reason == "declined"
    assert event.event_id == "evt_1"


def test_parse_checkout_session_event_references_intent(client):
    body = json.dumps(
        {
            "id": "evt_2",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "object": "checkout.session", "payment_intent": "pi_9"}},
        }
    ).encode()

    event = client.parse_webhook_event(body)

    assert event.type == "succeeded"
    assert event.external_id == "pi_9"


def test_parse_unknown_or_malformed_event(client):
    assert client.parse_webhook_event(b'{"type": "customer.created"}').type == "unhandled"
    assert client.parse_webhook_event(b"not json").type == "unhandled"
