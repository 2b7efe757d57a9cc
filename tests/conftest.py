"""Pytest bootstrap configuration.

Settings are read at import time, so the database URL is set before any application module is imported. Each test gets its own
file-backed SQLite database.
"""
import os
import tempfile

os.environ.setdefault(
    "DATABASE__URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(), 'bootstrap.db')}",
)

import asyncio
import functools
import json
from typing import Any, Mapping, Optional

import pytest
import pytest_asyncio

from application.dtos.payments import (
    CanonicalEvent,
    GatewayIntent,
    GatewayRefund,
    GatewayStatus,
)
from application.ports.payment_gateway import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.subscription_service import SubscriptionLifecycleManager
from application.services.webhook_ingestor import WebhookIngestor
from domain.payment.entity import PaymentMethod
from infrastructure.database import build_engine, build_session_factory, create_tables, drop_tables
from infrastructure.models import PlanModel, UserModel
from infrastructure.repositories.catalog_repository import (
    SQLAlchemyPlanCatalog,
    SQLAlchemyUserDirectory,
)
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


SIGNATURE_HEADER = "x-test-signature"
VALID_SIGNATURE = "valid"


class FakeGateway:
    """In-memory PaymentGateway recording calls; behaviour is set per test."""

    def __init__(
        self,
        *,
        provider: str = "stripe",
        method: PaymentMethod = PaymentMethod.STRIPE,
        two_phase: bool = False,
    ):
        self.provider = provider
        self.method = method
        self.two_phase = two_phase
        self.external_id = "pi_123"
        self.status = "succeeded"
        self.failure_reason: Optional[str] = None
        self.delay = 0.0
        self.intent_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.calls: list[tuple] = []
        self.closed = False

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def create_intent(self, amount_minor, currency, metadata, *, return_url=None, cancel_url=None, idempotency_key=None):
        self.calls.append(("create_intent", amount_minor, currency, dict(metadata), idempotency_key))
        if self.intent_error:
            raise self.intent_error
        return GatewayIntent(
            external_id=self.external_id,
            status="requires_action",
            client_secret=f"{self.external_id}_secret",
            approval_url=f"https://gateway.test/approve/{self.external_id}" if self.two_phase else None,
        )

    async def _status(self, name: str, external_id: str) -> GatewayStatus:
        self.calls.append((name, external_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.status_error:
            raise self.status_error
        return GatewayStatus(status=self.status, failure_reason=self.failure_reason, raw={"id": external_id})

    async def retrieve_status(self, external_id: str) -> GatewayStatus:
        return await self._status("retrieve_status", external_id)

    async def capture(self, external_id: str) -> GatewayStatus:
        return await self._status("capture", external_id)

    async def cancel(self, external_id: str) -> None:
        self.calls.append(("cancel", external_id))
        if self.cancel_error:
            raise self.cancel_error

    async def refund(self, external_id, amount_minor, currency, reason=None, *, idempotency_key=None):
        self.calls.append(("refund", external_id, amount_minor, idempotency_key))
        if self.refund_error:
            raise self.refund_error
        return GatewayRefund(refund_id=f"re_{self.count('refund')}", status="succeeded")

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        return lowered.get(SIGNATURE_HEADER) == VALID_SIGNATURE

    def parse_webhook_event(self, raw_payload: bytes) -> CanonicalEvent:
        data: dict[str, Any] = json.loads(raw_payload)
        return CanonicalEvent(**data)

    async def aclose(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield engine
    await drop_tables(engine)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow_factory(session_factory):
    return functools.partial(SQLAlchemyUnitOfWork, session_factory)


@pytest_asyncio.fixture
async def seed(session_factory):
    """Users u1/u2 and plans P1 (monthly, 2990 / 1000 credits) and P2 (annual)."""
    async with session_factory() as session:
        session.add_all(
            [
                UserModel(id="u1", email="u1@example.com", is_active=True),
                UserModel(id="u2", email="u2@example.com", is_active=True),
                UserModel(id="inactive", email="gone@example.com", is_active=False),
                PlanModel(
                    id="P1",
                    name="Pro",
                    slug="pro",
                    monthly_price=2990,
                    monthly_credits=1000,
                    billing_cycle="monthly",
                    currency="BRL",
                ),
                PlanModel(
                    id="P2",
                    name="Business",
                    slug="business",
                    monthly_price=9990,
                    annual_price=99900,
                    monthly_credits=5000,
                    billing_cycle="annual",
                    currency="BRL",
                ),
                PlanModel(
                    id="OLD",
                    name="Legacy",
                    slug="legacy",
                    monthly_price=990,
                    monthly_credits=100,
                    is_active=False,
                ),
            ]
        )
        await session.commit()


@pytest.fixture
def card_gateway():
    return FakeGateway()


@pytest.fixture
def wallet_gateway():
    return FakeGateway(provider="paypal", method=PaymentMethod.PAYPAL, two_phase=True)


@pytest.fixture
def registry(card_gateway, wallet_gateway):
    registry = GatewayRegistry()
    registry.register(card_gateway, "card-gateway")
    registry.register(wallet_gateway, "wallet-gateway")
    return registry


@pytest.fixture
def plan_catalog(session_factory):
    return SQLAlchemyPlanCatalog(session_factory)


@pytest.fixture
def subscriptions(uow_factory, plan_catalog):
    return SubscriptionLifecycleManager(uow_factory, plan_catalog)


@pytest.fixture
def payment_service(uow_factory, registry, plan_catalog, session_factory, subscriptions, seed):
    return PaymentService(
        uow_factory,
        registry,
        plans=plan_catalog,
        users=SQLAlchemyUserDirectory(session_factory),
        subscriptions=subscriptions,
    )


@pytest.fixture
def ingestor(uow_factory, registry, payment_service):
    return WebhookIngestor(uow_factory, registry, payment_service)
