"""
Base payment client implementing shared concerns: http, retry, timeout,
logging and provider status mapping.

Concrete providers subclass and implement the PaymentGateway operations.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from domain.payment.entity import PaymentMethod
from domain.payment.exceptions import PaymentProviderError, PaymentRecoverableError
from shared.codes.payment_codes import CANONICAL_PENDING, PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient:
    provider: str = "base"
    method: PaymentMethod
    two_phase: bool = False

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 5.0, "read": 25.0, "write": 25.0, "total": 30.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            pool=self._timeouts_cfg["connect"],
        )

    @property
    def total_timeout(self) -> float:
        return float(self._timeouts_cfg["total"])

    @property
    def client(self) -> httpx.AsyncClient:
        # Created lazily on the running loop, closed by aclose() at shutdown
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Retry transport-level failures only; provider answers are never retried here."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one gateway operation under the total timeout, mapping transport errors."""
        try:
            return await asyncio.wait_for(fn(), timeout=self.total_timeout)
        except asyncio.TimeoutError as exc:
            self._log("gateway_timeout", operation=operation, timeout=self.total_timeout)
            raise PaymentRecoverableError(
                f"{self.provider} {operation} timed out", provider=self.provider, provider_code="timeout"
            ) from exc
        except httpx.TimeoutException as exc:
            self._log("gateway_timeout", operation=operation)
            raise PaymentRecoverableError(
                f"{self.provider} {operation} timed out", provider=self.provider, provider_code="timeout"
            ) from exc
        except httpx.TransportError as exc:
            self._log("gateway_transport_error", operation=operation, error=str(exc))
            raise PaymentRecoverableError(
                f"{self.provider} {operation} transport error: {exc}", provider=self.provider
            ) from exc

    def _raise_for_status(self, operation: str, response: httpx.Response) -> None:
        """429/5xx are retryable, other 4xx are terminal."""
        if response.is_success:
            return
        code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text[:500]}
        provider_code = None
        if isinstance(body, dict):
            provider_code = body.get("name") or body.get("error")
        message = f"{self.provider} {operation} failed with HTTP {code}"
        details = {"http_status": code, "body": body}
        if code == 429 or code >= 500:
            raise PaymentRecoverableError(message, provider=self.provider, provider_code=provider_code, details=details)
        raise PaymentProviderError(message, provider=self.provider, provider_code=provider_code, details=details)

    def _map_status(self, provider_status: Optional[str]) -> str:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        return mapping.get(provider_status or "", CANONICAL_PENDING)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
