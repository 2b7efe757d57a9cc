"""
Payments API routes.

Thin layer over the orchestrator and webhook ingestor: parse input, call the
use-case, unwrap the Outcome (REJECTED -> 409) and wrap the result in the
response envelope.
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request, status

from api.dependencies import get_payment_service, get_webhook_ingestor
from application.dtos.payments import (
    ConfirmPaymentRequest,
    CreatePaymentIntentRequest,
    CreatePaymentRequest,
    PaymentDTO,
    PaymentIntentDTO,
    RefundDTO,
    RefundPaymentRequest,
    WebhookReceipt,
)
from application.services.payment_service import PaymentService
from application.services.webhook_ingestor import WebhookIngestor
from core.config import settings
from core.response import OffsetPage, Response as ApiResponse, offset_page_response, success_response


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "",
    summary="Create payment record",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentDTO],
)
async def create_payment(
    payload: CreatePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.create_payment(payload)
    return success_response(data=PaymentDTO.from_entity(payment), message="Payment created")


@router.post(
    "/intent",
    summary="Create payment and gateway intent",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentIntentDTO],
)
async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    intent = await service.create_payment_intent(payload)
    return success_response(data=intent, message="Payment intent created")


@router.post(
    "/webhooks/{provider}",
    summary="Gateway webhook",
    response_model=ApiResponse[WebhookReceipt],
)
async def payments_webhook(
    provider: str,
    request: Request,
    ingestor: WebhookIngestor = Depends(get_webhook_ingestor),
):
    # Signature is computed over the exact bytes received
    raw_body = await request.body()
    receipt = await ingestor.ingest(provider, raw_body, dict(request.headers))
    return success_response(data=receipt, message="Webhook received")


@router.get(
    "/user/{user_id}",
    summary="List payments of a user",
    response_model=ApiResponse[OffsetPage[PaymentDTO]],
)
async def list_user_payments(
    user_id: str,
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = await service.list_user_payments(user_id, limit=limit, offset=offset)
    return offset_page_response(
        items=[PaymentDTO.from_entity(p) for p in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{payment_id}", summary="Get payment", response_model=ApiResponse[PaymentDTO])
async def get_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id)
    return success_response(data=PaymentDTO.from_entity(payment))


@router.post("/{payment_id}/confirm", summary="Confirm payment", response_model=ApiResponse[PaymentDTO])
async def confirm_payment(
    payment_id: str,
    payload: Optional[ConfirmPaymentRequest] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    external_data = payload.model_dump(exclude_none=True) if payload else None
    outcome = await service.confirm_payment(payment_id, external_data)
    return success_response(
        data=PaymentDTO.from_entity(outcome.unwrap()),
        message=f"Payment confirm {outcome.result.value}",
    )


@router.post("/{payment_id}/cancel", summary="Cancel payment", response_model=ApiResponse[PaymentDTO])
async def cancel_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    outcome = await service.cancel_payment(payment_id)
    return success_response(data=PaymentDTO.from_entity(outcome.unwrap()), message="Payment cancelled")


@router.post("/{payment_id}/refund", summary="Refund payment", response_model=ApiResponse[PaymentDTO])
async def refund_payment(
    payment_id: str,
    payload: Optional[RefundPaymentRequest] = Body(default=None),
    service: PaymentService = Depends(get_payment_service),
):
    payload = payload or RefundPaymentRequest()
    outcome = await service.create_refund(payment_id, amount=payload.amount, reason=payload.reason)
    return success_response(data=PaymentDTO.from_entity(outcome.unwrap()), message="Refund issued")


@router.get(
    "/{payment_id}/refunds",
    summary="List refunds of a payment",
    response_model=ApiResponse[List[RefundDTO]],
)
async def list_refunds(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    refunds = await service.list_refunds(payment_id)
    return success_response(data=[RefundDTO.from_entity(r) for r in refunds])
