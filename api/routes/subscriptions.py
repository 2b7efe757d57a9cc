"""
Subscription API routes (read and cancel; creation only happens through payments).
"""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from api.dependencies import get_subscription_manager
from application.dtos.subscriptions import CancelSubscriptionRequest, SubscriptionDTO
from application.services.subscription_service import SubscriptionLifecycleManager
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/payments/subscriptions", tags=["Subscriptions"])


@router.get(
    "/user/{user_id}",
    summary="List subscriptions of a user",
    response_model=ApiResponse[List[SubscriptionDTO]],
)
async def list_user_subscriptions(
    user_id: str,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    subscriptions = await manager.list_user_subscriptions(user_id)
    return success_response(data=[SubscriptionDTO.from_entity(s) for s in subscriptions])


@router.get(
    "/user/{user_id}/active",
    summary="Active subscription of a user",
    response_model=ApiResponse[Optional[SubscriptionDTO]],
)
async def get_active_subscription(
    user_id: str,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    subscription = await manager.get_active_subscription(user_id)
    return success_response(data=SubscriptionDTO.from_entity(subscription) if subscription else None)


@router.get(
    "/{subscription_id}",
    summary="Get subscription",
    response_model=ApiResponse[SubscriptionDTO],
)
async def get_subscription(
    subscription_id: str,
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    subscription = await manager.get_subscription(subscription_id)
    return success_response(data=SubscriptionDTO.from_entity(subscription))


@router.post(
    "/{subscription_id}/cancel",
    summary="Cancel subscription",
    response_model=ApiResponse[SubscriptionDTO],
)
async def cancel_subscription(
    subscription_id: str,
    payload: Optional[CancelSubscriptionRequest] = Body(default=None),
    manager: SubscriptionLifecycleManager = Depends(get_subscription_manager),
):
    payload = payload or CancelSubscriptionRequest()
    outcome = await manager.cancel_subscription(subscription_id, reason=payload.reason)
    return success_response(
        data=SubscriptionDTO.from_entity(outcome.unwrap()),
        message="Subscription cancelled",
    )
