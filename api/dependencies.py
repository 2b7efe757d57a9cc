"""
API依赖项 - 组装应用服务

网关注册表在应用启动时创建并挂在 app.state 上；其余协作者按请求构造。
"""
from typing import Callable

from fastapi import Depends, Request

from application.ports.catalog import PlanCatalog, UserDirectory
from application.ports.payment_gateway import GatewayRegistry
from application.services.payment_service import PaymentService
from application.services.subscription_service import SubscriptionLifecycleManager
from application.services.webhook_ingestor import WebhookIngestor
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.repositories.catalog_repository import (
    SQLAlchemyPlanCatalog,
    SQLAlchemyUserDirectory,
)
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


def get_gateway_registry(request: Request) -> GatewayRegistry:
    return request.app.state.gateways


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_plan_catalog() -> PlanCatalog:
    return SQLAlchemyPlanCatalog()


def get_user_directory() -> UserDirectory:
    return SQLAlchemyUserDirectory()


def get_subscription_manager(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    plans: PlanCatalog = Depends(get_plan_catalog),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(uow_factory=uow_factory, plans=plans)


def get_payment_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    plans: PlanCatalog = Depends(get_plan_catalog),
    users: UserDirectory = Depends(get_user_directory),
    subscriptions: SubscriptionLifecycleManager = Depends(get_subscription_manager),
) -> PaymentService:
    return PaymentService(
        uow_factory=uow_factory,
        gateways=gateways,
        plans=plans,
        users=users,
        subscriptions=subscriptions,
    )


def get_webhook_ingestor(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    payments: PaymentService = Depends(get_payment_service),
) -> WebhookIngestor:
    return WebhookIngestor(uow_factory=uow_factory, gateways=gateways, payments=payments)
