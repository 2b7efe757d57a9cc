"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
Adapters are registered once at startup in a GatewayRegistry keyed by payment
method, so use-cases never branch on the provider name.
"""
from __future__ import annotations

from typing import Any, Iterator, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CanonicalEvent,
    GatewayIntent,
    GatewayRefund,
    GatewayStatus,
)
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import UnsupportedPaymentMethodException


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for third-party payment providers.

    Calls are bounded by a timeout. Timeouts, transport failures, rate limits
    and provider 5xx raise PaymentRecoverableError; declines and other 4xx
    raise PaymentProviderError.
    """

    provider: str
    method: PaymentMethod
    # Two-phase providers finalize funds with capture(); one-phase ones settle on their own
    two_phase: bool

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: dict[str, Any],
        *,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent: ...

    async def retrieve_status(self, external_id: str) -> GatewayStatus: ...

    async def capture(self, external_id: str) -> GatewayStatus: ...

    async def cancel(self, external_id: str) -> None: ...

    async def refund(
        self,
        external_id: str,
        amount_minor: int,
        currency: str,
        reason: Optional[str] = None,
        *,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund: ...

    async def verify_webhook_signature(self, raw_payload: bytes, headers: Mapping[str, str]) -> bool: ...

    def parse_webhook_event(self, raw_payload: bytes) -> CanonicalEvent: ...

    async def aclose(self) -> None: ...


class GatewayRegistry:
    """Adapter lookup keyed by payment method, with optional aliases."""

    def __init__(self) -> None:
        self._by_method: dict[PaymentMethod, PaymentGateway] = {}
        self._aliases: dict[str, PaymentMethod] = {}

    def register(self, gateway: PaymentGateway, *aliases: str) -> None:
        method = PaymentMethod(gateway.method)
        self._by_method[method] = gateway
        self._aliases[method.value] = method
        for alias in aliases:
            self._aliases[alias.lower()] = method

    def resolve(self, name: str | PaymentMethod) -> PaymentMethod:
        """Map a method name or alias to a registered PaymentMethod."""
        key = name.value if isinstance(name, PaymentMethod) else str(name).lower()
        method = self._aliases.get(key)
        if method is None or method not in self._by_method:
            raise UnsupportedPaymentMethodException(str(name))
        return method

    def get(self, name: str | PaymentMethod) -> PaymentGateway:
        return self._by_method[self.resolve(name)]

    def __iter__(self) -> Iterator[PaymentGateway]:
        return iter(self._by_method.values())

    async def aclose(self) -> None:
        """Close every registered adapter."""
        for gateway in self._by_method.values():
            await gateway.aclose()
