import json

import httpx
import pytest
import pytest_asyncio

from api.dependencies import (
    get_gateway_registry,
    get_plan_catalog,
    get_uow_factory,
    get_user_directory,
)
from domain.payment.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.repositories.catalog_repository import SQLAlchemyUserDirectory
from main import create_app


PREFIX = "/api/v1/payments"
SIGNED = {"x-test-signature": "valid"}


@pytest_asyncio.fixture
async def api(registry, uow_factory, plan_catalog, session_factory, seed):
    app = create_app()
    app.state.gateways = registry
    app.dependency_overrides[get_gateway_registry] = lambda: registry
    app.dependency_overrides[get_uow_factory] = lambda: uow_factory
    app.dependency_overrides[get_plan_catalog] = lambda: plan_catalog
    app.dependency_overrides[get_user_directory] = lambda: SQLAlchemyUserDirectory(session_factory)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _intent(api, **overrides):
    payload = {"owner_id": "u1", "plan_id": "P1", "method": "card-gateway"}
    payload.update(overrides)
    response = await api.post(f"{PREFIX}/intent", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health_lists_gateways(api):
    response = await api.get("/health")
    assert response.status_code == 200
    assert sorted(response.json()["data"]["gateways"]) == ["paypal", "stripe"]


@pytest.mark.asyncio
async def test_request_id_is_echoed_or_generated(api):
    echoed = await api.get("/health", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"

    replaced = await api.get("/health", headers={"X-Request-ID": "bad id with spaces"})
    assert replaced.headers["X-Request-ID"] != "bad id with spaces"


@pytest.mark.asyncio
async def test_create_payment_record(api):
    response = await api.post(
        PREFIX, json={"owner_id": "u1", "amount": 1500, "currency": "usd", "method": "stripe"}
    )
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "pending"
    assert data["currency"] == "USD"


@pytest.mark.asyncio
async def test_intent_webhook_and_redelivery(api):
    intent = await _intent(api)
    payment = intent["payment"]
    assert payment["amount"] == 2990
    assert payment["external_reference"] == "pi_123"
    assert intent["client_secret"] == "pi_123_secret"

    body = json.dumps({"type": "succeeded", "external_id": "pi_123"})
    first = await api.post(f"{PREFIX}/webhooks/stripe", content=body, headers=SIGNED)
    second = await api.post(f"{PREFIX}/webhooks/stripe", content=body, headers=SIGNED)

    assert first.status_code == 200
    assert first.json()["data"]["result"] == "applied"
    assert second.status_code == 200
    assert second.json()["data"]["result"] == "already_applied"

    fetched = (await api.get(f"{PREFIX}/{payment['id']}")).json()["data"]
    assert fetched["status"] == "completed"

    subs = (await api.get(f"{PREFIX}/subscriptions/user/u1")).json()["data"]
    assert len(subs) == 1
    assert subs[0]["credits_remaining"] == 1000
    active = (await api.get(f"{PREFIX}/subscriptions/user/u1/active")).json()["data"]
    assert active["id"] == subs[0]["id"]


@pytest.mark.asyncio
async def test_invalid_webhook_signature_is_400(api):
    intent = await _intent(api)
    response = await api.post(
        f"{PREFIX}/webhooks/stripe",
        content=json.dumps({"type": "succeeded", "external_id": "pi_123"}),
        headers={"x-test-signature": "nope"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "PaymentSignatureError"
    fetched = (await api.get(f"{PREFIX}/{intent['payment']['id']}")).json()["data"]
    assert fetched["status"] == "pending"


@pytest.mark.asyncio
async def test_unknown_webhook_provider_is_404(api):
    response = await api.post(f"{PREFIX}/webhooks/pix", content="{}", headers=SIGNED)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_confirm_refund_and_conflicts(api):
    payment_id = (await _intent(api))["payment"]["id"]

    confirmed = await api.post(f"{PREFIX}/{payment_id}/confirm")
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["status"] == "completed"

    partial = await api.post(f"{PREFIX}/{payment_id}/refund", json={"amount": 1000})
    assert partial.status_code == 200
    assert partial.json()["data"]["refunded_amount"] == 1000

    too_much = await api.post(f"{PREFIX}/{payment_id}/refund", json={"amount": 5000})
    assert too_much.status_code == 409

    invalid = await api.post(f"{PREFIX}/{payment_id}/refund", json={"amount": 0})
    assert invalid.status_code == 400

    rest = await api.post(f"{PREFIX}/{payment_id}/refund")
    assert rest.status_code == 200
    assert rest.json()["data"]["status"] == "refunded"

    again = await api.post(f"{PREFIX}/{payment_id}/refund")
    assert again.status_code == 409

    cancel = await api.post(f"{PREFIX}/{payment_id}/cancel")
    assert cancel.status_code == 409

    refunds = (await api.get(f"{PREFIX}/{payment_id}/refunds")).json()["data"]
    assert [r["amount"] for r in refunds] == [1000, 1990]


@pytest.mark.asyncio
async def test_cancel_twice_is_409(api):
    payment_id = (await _intent(api))["payment"]["id"]
    assert (await api.post(f"{PREFIX}/{payment_id}/cancel")).status_code == 200
    assert (await api.post(f"{PREFIX}/{payment_id}/cancel")).status_code == 409


@pytest.mark.asyncio
async def test_gateway_errors_map_to_502_and_503(api, card_gateway):
    payment_id = (await _intent(api))["payment"]["id"]

    card_gateway.status_error = PaymentRecoverableError("timeout", provider="stripe")
    unavailable = await api.post(f"{PREFIX}/{payment_id}/confirm")
    assert unavailable.status_code == 503
    assert "Retry-After" in unavailable.headers

    card_gateway.status_error = PaymentProviderError("no such intent", provider="stripe")
    bad_gateway = await api.post(f"{PREFIX}/{payment_id}/confirm")
    assert bad_gateway.status_code == 502
    assert (await api.get(f"{PREFIX}/{payment_id}")).json()["data"]["status"] == "failed"


@pytest.mark.asyncio
async def test_not_found_and_validation(api):
    assert (await api.get(f"{PREFIX}/missing")).status_code == 404
    assert (await api.get(f"{PREFIX}/subscriptions/missing")).status_code == 404
    assert (await _post_intent_status(api, owner_id="ghost")) == 404
    assert (await _post_intent_status(api, plan_id="OLD")) == 404
    assert (await _post_intent_status(api, method="pix")) == 404
    assert (await _post_intent_status(api, plan_id=None)) == 422


async def _post_intent_status(api, **overrides):
    payload = {"owner_id": "u1", "plan_id": "P1", "method": "stripe"}
    payload.update(overrides)
    return (await api.post(f"{PREFIX}/intent", json=payload)).status_code


@pytest.mark.asyncio
async def test_list_user_payments_page(api):
    for amount in (100, 200, 300):
        await api.post(PREFIX, json={"owner_id": "u1", "amount": amount, "method": "stripe"})

    response = await api.get(f"{PREFIX}/user/u1", params={"limit": 2, "offset": 0})

    page = response.json()["data"]
    assert page["total"] == 3
    assert page["limit"] == 2
    assert len(page["items"]) == 2


@pytest.mark.asyncio
async def test_cancel_subscription_endpoint(api):
    payment_id = (await _intent(api))["payment"]["id"]
    await api.post(f"{PREFIX}/{payment_id}/confirm")
    sub_id = (await api.get(f"{PREFIX}/subscriptions/user/u1")).json()["data"][0]["id"]

    response = await api.post(f"{PREFIX}/subscriptions/{sub_id}/cancel", json={"reason": "admin_action"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "admin_action"
    assert (await api.get(f"{PREFIX}/subscriptions/user/u1/active")).json()["data"] is None


@pytest.mark.asyncio
async def test_validator_errors_return_422(api):
    missing = await api.post(f"{PREFIX}/intent", json={"owner_id": "u1", "method": "stripe"})
    bad_currency = await api.post(
        PREFIX, json={"owner_id": "u1", "amount": 100, "currency": "reais", "method": "stripe"}
    )

    assert missing.status_code == 422
    body = missing.json()
    assert body["error"]["type"] == "ValidationError"
    assert "either plan_id or amount is required" in body["message"]
    assert "either plan_id or amount is required" in body["error"]["details"]["errors"][0]["msg"]

    assert bad_currency.status_code == 422
    assert bad_currency.json()["error"]["field"] == "currency"
