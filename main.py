"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import LoggingMiddleware, RequestIDMiddleware
from api.routes import payments as payments_routes
from api.routes import subscriptions as subscriptions_routes
from core.config import settings
from core.exceptions import register_exception_handlers
from core.logging_config import configure_logging, get_logger
from core.response import success_response
from infrastructure.database import create_tables
from infrastructure.external.payments import build_gateway_registry


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时建表仅用于开发/测试，生产使用 Alembic 迁移
    if settings.AUTO_CREATE_TABLES:
        await create_tables()
        logger.info("database_initialized", message="Database tables created")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create, use Alembic migrations (alembic upgrade head)",
        )

    # 网关适配器只创建一次，按引用注入到各用例
    if getattr(app.state, "gateways", None) is None:
        app.state.gateways = build_gateway_registry()

    yield

    await app.state.gateways.aclose()
    logger.info("application_shutdown", message="Application shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
        description="支付与订阅生命周期服务",
    )

    # 中间件注意顺序：后添加的先执行
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # 订阅路由先注册，避免被 /payments/{payment_id}/... 抢先匹配
    app.include_router(subscriptions_routes.router, prefix=settings.API_PREFIX)
    app.include_router(payments_routes.router, prefix=settings.API_PREFIX)

    @app.get("/health", tags=["Health"])
    async def health_check():
        """健康检查端点"""
        providers = [gateway.provider for gateway in getattr(app.state, "gateways", None) or []]
        return success_response(data={"status": "healthy", "gateways": providers})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info",
    )
